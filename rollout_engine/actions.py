import asyncio
import posixpath

import httpx

from .channels import COMMAND_NOT_FOUND
from .config import check_ip_port
from .errors import ActionError, CommandError, LoadBalancerError, StageError
from .logger import get_logger
from .models import Backend, Stage, Timeouts

SIGTERM = 15
SIGKILL = 9

BINARY_MODE = 0o770


class Action:
    """Upgrades a single endpoint, one Stage at a time.

    Each stage handler returns the Stage to run next. When a handler fails the
    stage is remembered in failed_stage, so calling run() again picks up
    exactly where the last attempt stopped instead of starting over.

    An Action is only ever driven by one task at a time.
    """

    def __init__(self, endpoint, config, lb, channels, http_client, timeouts=None):
        ip, port = check_ip_port(endpoint)
        self.endpoint = endpoint
        self.backend = Backend(ip=ip, port=port)
        self.config = config
        self.lb = lb
        self.channel = channels(self.backend)
        self.http = http_client
        self.timeouts = timeouts if timeouts else Timeouts()
        self.dst = config.dst
        self.logger = get_logger("actions")

        self.started = False
        self.current_stage = None
        self.failed_stage = None
        self.err = None
        self._src = None

        self._handlers = {
            Stage.REMOVE_FROM_POOL: self._remove_from_pool,
            Stage.KILL_EXISTING: self._kill_existing,
            Stage.COPY_BINARY: self._copy_binary,
            Stage.START_BINARY: self._start_binary,
            Stage.WAIT_HEALTHY: self._wait_healthy,
            Stage.ADD_TO_POOL: self._add_to_pool,
        }

    def __repr__(self):
        return f"Action({self.endpoint!r}, failed_stage={self.failure() or None!r})"

    def failure(self):
        """Name of the stage the last failure happened in, "" if none"""
        if self.failed_stage is None:
            return ""
        return self.failed_stage.value

    @property
    def process_name(self):
        return posixpath.basename(self.dst)

    def _setup_failed(self, message):
        self.err = ActionError(self.endpoint, None, message)
        return self.err

    def _stage_failed(self, stage, message):
        self.failed_stage = stage
        self.err = ActionError(self.endpoint, stage, f"{stage.value}: {message}")
        return self.err

    async def run(self, timeout_s=None):
        """Run (or resume) the upgrade, raising ActionError if any stage fails"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s if timeout_s is not None else None

        # Reopened every run so a resumed COPY_BINARY always streams from the start
        try:
            src = open(self.config.src, "rb")
        except OSError as e:
            raise self._setup_failed(f"cannot open binary to copy({self.config.src}): {e}") from e

        with src:
            self._src = src
            try:
                if self.dst is None:
                    await self._discover_dst()
                await self._run_stages(loop, deadline)
            finally:
                self._src = None

        self.err = None
        self.logger.info(f"Endpoint {self.endpoint} upgraded")

    async def _run_stages(self, loop, deadline):
        stage = self.failed_stage if self.failed_stage else Stage.REMOVE_FROM_POOL
        self.started = True
        while stage is not Stage.DONE:
            self.current_stage = stage
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._stage_failed(stage, "deadline exceeded before stage started")

            self.logger.debug(f"{self.endpoint}: entering {stage.value}")
            try:
                stage = await asyncio.wait_for(self._handlers[stage](), timeout=remaining)
            except StageError as e:
                raise self._stage_failed(stage, str(e)) from e
            except asyncio.TimeoutError as e:
                raise self._stage_failed(stage, "deadline exceeded") from e
            except asyncio.CancelledError:
                self._stage_failed(stage, "cancelled")
                raise
            except Exception as e:
                raise self._stage_failed(stage, f"unexpected error: {e!r}") from e
        self.current_stage = Stage.DONE

    async def _discover_dst(self):
        """Ask the running binary where it is installed"""
        url = f"http://{self.endpoint}/installedAt"
        try:
            response = await self.http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._setup_failed(f"could not discover install path from {url}: {e}") from e

        path = response.text.strip()
        if not path:
            raise self._setup_failed(f"{url} returned nothing")
        self.dst = posixpath.normpath(path)
        self.logger.debug(f"{self.endpoint}: binary installed at {self.dst}")

    async def _remove_from_pool(self):
        try:
            await self.lb.remove_backend(self.config.pattern, self.backend)
        except LoadBalancerError as e:
            raise StageError(f"problem removing backend from pool: {e}") from e
        return Stage.KILL_EXISTING

    async def _kill_existing(self):
        pids = await self._find_pids()
        if not pids:
            return Stage.COPY_BINARY

        await self._signal(pids, SIGTERM)
        try:
            await asyncio.wait_for(self._wait_for_death(), timeout=self.timeouts.term_wait_s)
        except asyncio.TimeoutError:
            self.logger.warning(f"{self.endpoint}: pids {' '.join(pids)} survived SIGTERM, sending SIGKILL")
            await self._signal(pids, SIGKILL)
            try:
                await asyncio.wait_for(self._wait_for_death(), timeout=self.timeouts.kill_wait_s)
            except asyncio.TimeoutError as e:
                raise StageError(f"pids {' '.join(pids)} still alive after SIGKILL") from e
        return Stage.COPY_BINARY

    async def _find_pids(self):
        try:
            return await self.channel.find_process(self.process_name)
        except OSError as e:
            raise StageError(f"cannot look up pids of {self.process_name}: {e}") from e
        except CommandError as e:
            if e.exit_status == COMMAND_NOT_FOUND:
                raise StageError(f"cannot look up pids of {self.process_name}: {e}") from e
            # Any other lookup failure (pidof found nothing, exits 1) counts as no processes
            return []

    async def _signal(self, pids, signal):
        for pid in pids:
            try:
                await self.channel.run(f"kill -{signal} {pid}")
            except (CommandError, OSError) as e:
                raise StageError(f"failed to send signal {signal} to pid {pid}: {e}") from e

    async def _wait_for_death(self):
        while await self._find_pids():
            await asyncio.sleep(self.timeouts.death_poll_interval_s)

    async def _copy_binary(self):
        try:
            await self.channel.copy_file(self._src, self.dst, BINARY_MODE)
        except (CommandError, OSError) as e:
            raise StageError(f"failed to copy binary to {self.dst}: {e}") from e
        return Stage.START_BINARY

    async def _start_binary(self):
        try:
            await self.channel.start_detached(f"{self.dst} -port {self.backend.port}")
        except (CommandError, OSError) as e:
            raise StageError(f"failed to start binary after copy: {e}") from e
        return Stage.WAIT_HEALTHY

    async def _wait_healthy(self):
        url = f"http://{self.endpoint}/healthz"
        try:
            await asyncio.wait_for(self._poll_healthy(url), timeout=self.timeouts.health_window_s)
        except asyncio.TimeoutError as e:
            raise StageError(f"{url} was not healthy after {self.timeouts.health_window_s}s") from e
        return Stage.ADD_TO_POOL

    async def _poll_healthy(self, url):
        while True:
            try:
                response = await self.http.get(url)
            except httpx.HTTPError as e:
                self.logger.debug(f"{url}: {e}")
            else:
                if response.text.strip() == "ok":
                    return
            await asyncio.sleep(self.timeouts.health_interval_s)

    async def _add_to_pool(self):
        try:
            await self.lb.add_backend(self.config.pattern, self.backend)
        except LoadBalancerError as e:
            raise StageError(f"problem adding backend to pool: {e}") from e
        return Stage.DONE
