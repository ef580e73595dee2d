class RolloutError(Exception):
    """Base class for everything the rollout engine raises on purpose."""


class ConfigError(RolloutError):
    """The rollout configuration is invalid. Nothing has been run."""


class PreconditionError(RolloutError):
    """The load balancer pool did not look the way the config says it should."""


class CanaryError(RolloutError):
    """A canary endpoint failed, the rest of the rollout was abandoned."""


class BudgetExceededError(RolloutError):
    """More bulk endpoints failed than MaxFailures allows."""


class LoadBalancerError(RolloutError):
    """A load balancer control plane call failed."""


class StageError(RolloutError):
    """Raised by a stage handler when its step could not be completed."""


class ActionError(RolloutError):
    """An endpoint failed to roll out.

    stage is None when the failure happened before any stage ran
    (opening the source binary, discovering the destination path).
    """

    def __init__(self, endpoint, stage, message):
        super().__init__(message)
        self.endpoint = endpoint
        self.stage = stage


class CommandError(RolloutError):
    """A command run over a remote channel exited non-zero."""

    def __init__(self, command, exit_status, output=""):
        super().__init__(f"command {command!r} exited with status {exit_status}: {output.strip()}")
        self.command = command
        self.exit_status = exit_status
        self.output = output


class RetryExhausted(RolloutError):
    """Failed endpoints were still failing after every retry pass."""

    def __init__(self, status, passes):
        super().__init__(f"{len(status.failures)} endpoints still failing after {passes} retry passes")
        self.status = status
        self.passes = passes
