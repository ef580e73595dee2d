import asyncio

import httpx
import pytest

from rollout_engine.channels import RemoteChannel
from rollout_engine.config import RolloutConfig, check_ip_port
from rollout_engine.errors import ActionError, CommandError, LoadBalancerError
from rollout_engine.lb import LoadBalancer
from rollout_engine.models import Backend, PoolHealth, PoolStatus, Stage, Timeouts

BINARY = b"\x7fELF pretend this is the new web server"


class FakeLoadBalancer(LoadBalancer):
    """In-memory control plane that records every call"""

    def __init__(self, status=PoolStatus.FULL, backends=(), fail_remove=(), fail_add=(), missing_pool=False):
        self.health = PoolHealth(status=status, backends=list(backends))
        self.fail_remove = set(fail_remove)
        self.fail_add = set(fail_add)
        self.missing_pool = missing_pool
        self.calls = []
        self.pools = []

    def count(self, method):
        return len([c for c in self.calls if c[0] == method])

    async def pool_health(self, pattern):
        self.calls.append(("pool_health", pattern, None))
        if self.missing_pool:
            raise LoadBalancerError(f"no pool {pattern}")
        return self.health

    async def remove_backend(self, pattern, backend):
        self.calls.append(("remove_backend", pattern, backend))
        if backend.address in self.fail_remove:
            raise LoadBalancerError("remove refused")

    async def add_backend(self, pattern, backend):
        self.calls.append(("add_backend", pattern, backend))
        if backend.address in self.fail_add:
            raise LoadBalancerError("add refused")

    async def add_pool(self, pattern, pool_type, health_checks):
        self.calls.append(("add_pool", pattern, None))
        self.pools.append((pattern, pool_type, health_checks))
        self.missing_pool = False


class FakeChannel(RemoteChannel):
    """Pretends to be an endpoint with a running binary.

    Signals listed in survive are ignored by the pretend process.
    """

    def __init__(self, pids=(), pidof_status=None, survive=(), fail_copy=False, fail_start=False, run_error=None):
        self.pids = list(pids)
        self.run_error = run_error
        self.pidof_status = pidof_status
        self.survive = set(survive)
        self.fail_copy = fail_copy
        self.fail_start = fail_start
        self.commands = []
        self.copies = []
        self.started = []

    async def run(self, command):
        self.commands.append(command)
        if self.run_error is not None:
            raise self.run_error
        if command.startswith("pidof "):
            if self.pidof_status is not None:
                raise CommandError(command, self.pidof_status, "")
            if not self.pids:
                raise CommandError(command, 1, "")
            return " ".join(self.pids) + "\n"
        if command.startswith("kill "):
            signal = int(command.split()[1].lstrip("-"))
            if signal not in self.survive:
                self.pids = []
            return ""
        raise CommandError(command, 127, "sh: not found")

    async def start_detached(self, command):
        if self.fail_start:
            raise CommandError(command, 126, "permission denied")
        self.started.append(command)

    async def copy_file(self, src, dst, mode):
        if self.fail_copy:
            raise OSError(28, "No space left on device")
        self.copies.append((dst, mode, src.read()))


class FakeTargets:
    """Answers /healthz and /installedAt for every endpoint"""

    def __init__(self, installed_at="/opt/app/web", unhealthy=(), connect_errors=0):
        self.installed_at = installed_at
        self.unhealthy = set(unhealthy)
        self.connect_errors = connect_errors
        self.requests = []

    def handler(self, request):
        host = f"{request.url.host}:{request.url.port}"
        self.requests.append((host, request.url.path))
        if request.url.path == "/installedAt":
            return httpx.Response(200, text=self.installed_at)
        if request.url.path == "/healthz":
            if self.connect_errors:
                self.connect_errors -= 1
                raise httpx.ConnectError("connection refused", request=request)
            if host in self.unhealthy:
                return httpx.Response(200, text="starting")
            return httpx.Response(200, text="ok\n")
        return httpx.Response(404)

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class Tracker:
    def __init__(self):
        self.in_flight = 0
        self.max_in_flight = 0
        self.order = []

    def enter(self, endpoint):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.order.append(endpoint)

    def exit(self):
        self.in_flight -= 1


class StubAction:
    """Stands in for Action, counts how many are running at once"""

    def __init__(self, endpoint, tracker, fail_times=0, gate=None, delay=0.01, crash=None):
        self.endpoint = endpoint
        self.tracker = tracker
        self.fail_times = fail_times
        self.gate = gate
        self.crash = crash
        self.delay = delay
        self.runs = 0
        self.err = None

    def failure(self):
        return Stage.WAIT_HEALTHY.value if self.err else ""

    async def run(self, timeout_s=None):
        self.runs += 1
        self.tracker.enter(self.endpoint)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(self.delay)
            if self.crash is not None:
                raise self.crash
            if self.runs <= self.fail_times:
                self.err = ActionError(self.endpoint, Stage.WAIT_HEALTHY, "wait_healthy: not ok")
                raise self.err
            self.err = None
        finally:
            self.tracker.exit()


def pool_of(addresses):
    return [Backend(*check_ip_port(a)) for a in addresses]


def make_config(src, backends, **kwargs):
    kwargs.setdefault("dst", "/opt/app/web")
    return RolloutConfig(src=str(src), lb="127.0.0.1:9091", pattern="/", backends=list(backends), **kwargs)


@pytest.fixture
def src_binary(tmp_path):
    path = tmp_path / "web"
    path.write_bytes(BINARY)
    return path


@pytest.fixture
def fast_timeouts():
    return Timeouts(
        precondition_s=1.0,
        action_s=5.0,
        canary_cooldown_s=0.0,
        health_window_s=0.3,
        health_interval_s=0.01,
        term_wait_s=0.05,
        kill_wait_s=0.05,
        death_poll_interval_s=0.01,
    )
