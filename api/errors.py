"""Rollout error taxonomy."""

from typing import Optional


class RolloutError(Exception):
    """Base class for rollout control plane errors."""


class RolloutConfigError(RolloutError):
    """Malformed rollout configuration, rejected before provisioning starts."""


class ProvisioningError(RolloutError):
    """The provisioning collaborator failed to create or update an environment."""

    def __init__(self, environment: str, message: str):
        self.environment = environment
        super().__init__(f"Provisioning of '{environment}' failed: {message}")


class ValidationTimeout(RolloutError):
    """Health checks were exhausted without a successful probe.

    Carries the failed ValidationResult so the orchestrator can report it.
    """

    def __init__(self, environment: str, result):
        self.environment = environment
        self.result = result
        super().__init__(
            f"Environment '{environment}' not healthy after {result.attempts} attempt(s): "
            f"{result.last_error}"
        )


class CancellationRequested(RolloutError):
    """Cooperative cancellation was observed. Not a failure."""

    def __init__(self, attempts: int = 0, last_error: Optional[str] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Cancellation requested after {attempts} attempt(s)")


class InvalidStateTransition(RolloutError):
    """Promotion gate misuse: the request is not in a state that allows the action."""

    def __init__(self, request_id: str, state: str, action: str):
        self.request_id = request_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} promotion request {request_id} in state '{state}'")


class PromotionNotFoundError(RolloutError):
    """No promotion request with the given id."""


class CutoverError(RolloutError):
    """The DNS/traffic cut-over could not be applied."""


class RolloutConflictError(RolloutError):
    """A run for this rollout definition is already active."""


class RolloutNotFoundError(RolloutError):
    """No rollout definition or run with the given id."""
