from .models import (
    Backend, Stage, EndState, PoolStatus, PoolType, PoolHealth,
    StatusCheck, HealthChecks, Timeouts, WorkflowStatus
)
from .config import RolloutConfig, check_ip_port, load_config
from .errors import (
    RolloutError, ConfigError, PreconditionError, CanaryError, ActionError,
    BudgetExceededError, RetryExhausted, LoadBalancerError, CommandError
)
from .lb import LoadBalancer, HTTPLoadBalancer
from .channels import RemoteChannel, LocalChannel, SSHChannel, channel_factory
from .actions import Action
from .engine import Workflow

__all__ = [
    "Backend", "Stage", "EndState", "PoolStatus", "PoolType", "PoolHealth",
    "StatusCheck", "HealthChecks", "Timeouts", "WorkflowStatus",
    "RolloutConfig", "check_ip_port", "load_config",
    "RolloutError", "ConfigError", "PreconditionError", "CanaryError", "ActionError",
    "BudgetExceededError", "RetryExhausted", "LoadBalancerError", "CommandError",
    "LoadBalancer", "HTTPLoadBalancer",
    "RemoteChannel", "LocalChannel", "SSHChannel", "channel_factory",
    "Action", "Workflow"
]
