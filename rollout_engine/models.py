from dataclasses import dataclass, field
from enum import Enum


class Stage(str, Enum):
    """Steps an endpoint goes through, in the order they run."""
    REMOVE_FROM_POOL = "remove_from_pool"
    KILL_EXISTING = "kill_existing"
    COPY_BINARY = "copy_binary"
    START_BINARY = "start_binary"
    WAIT_HEALTHY = "wait_healthy"
    ADD_TO_POOL = "add_to_pool"
    DONE = "done"


class EndState(str, Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"  # Can still have failed endpoints within MaxFailures
    PRECONDITION_FAILURE = "precondition_failure"
    CANARY_FAILURE = "canary_failure"
    MAX_FAILURES_EXCEEDED = "max_failures_exceeded"


class PoolStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    EMPTY = "EMPTY"
    FULL = "FULL"
    DEGRADED = "DEGRADED"


class PoolType(str, Enum):
    P2C = "P2C"
    ROUND_ROBIN = "ROUND_ROBIN"


@dataclass(frozen=True)
class Backend:
    """An IP/port pair registered with the load balancer"""
    ip: str
    port: int

    @property
    def address(self):
        if ":" in self.ip:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"

    def to_dict(self):
        return {"ip": self.ip, "port": self.port}


@dataclass
class PoolHealth:
    status: PoolStatus
    backends: list = field(default_factory=list)  # Backend entries the LB reports


@dataclass
class StatusCheck:
    """Health check that GETs url_path and expects one of healthy_values as the body"""
    url_path: str
    healthy_values: list = field(default_factory=list)


@dataclass
class HealthChecks:
    checks: list = field(default_factory=list)
    interval_s: float = 5.0


@dataclass
class Timeouts:
    """How long the workflow is willing to wait on each kind of thing"""
    precondition_s: float = 30.0  # Load balancer pool health query
    action_s: float = 600.0  # Whole run of a single endpoint
    canary_cooldown_s: float = 60.0  # Pause after the canaries before the bulk phase
    health_window_s: float = 60.0  # Time a new binary has to report healthy
    health_interval_s: float = 1.0
    term_wait_s: float = 30.0  # Wait for death after SIGTERM
    kill_wait_s: float = 10.0  # Wait for death after SIGKILL
    death_poll_interval_s: float = 1.0


@dataclass
class WorkflowStatus:
    """Where a workflow ended up and which endpoints are failing"""
    end_state: EndState
    failures: list = field(default_factory=list)  # Actions with a recorded error

    def to_dict(self):
        return {
            "end_state": self.end_state.value,
            "failures": [
                {
                    "endpoint": action.endpoint,
                    "failed_stage": action.failure() or "during setup",
                    "error": str(action.err),
                }
                for action in self.failures
            ],
        }
