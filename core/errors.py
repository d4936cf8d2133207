"""
core/errors.py -- Domain error taxonomy for Cardinal.

Every error the orchestrator, vault, store or hypervisor client raises on
purpose derives from CardinalError. api/main.py maps each family to an HTTP
status; anything outside the taxonomy is treated as an unexpected 500.

Errors are raised with `raise ... from exc` so the underlying cause
(requests exception, SQLAlchemy error) stays on __cause__ for logging.
"""


class CardinalError(RuntimeError):
    """Base class for all expected Cardinal failures."""


class ValidationError(CardinalError):
    """Caller input is malformed. Surfaced verbatim, never retried."""


class AuthenticationError(CardinalError):
    """Shared secret mismatch. Surfaced as a generic denial."""


# ---------------------------------------------------------------------------
# Credential vault
# ---------------------------------------------------------------------------


class EncryptionError(CardinalError):
    """Plaintext could not be sealed into an envelope."""


class DecryptionError(CardinalError):
    """Envelope is malformed or was sealed with a different key."""


# ---------------------------------------------------------------------------
# Hypervisor
# ---------------------------------------------------------------------------


class HypervisorError(CardinalError):
    """The hypervisor API rejected a call or returned an unusable payload."""


class HypervisorRequestError(HypervisorError):
    """A single API call failed (network, HTTP status, unparseable body).

    Polling loops treat this as transient and retry it.
    """


class CreationError(HypervisorError):
    """create_resource() failed at some step; __cause__ holds the reason."""


class TaskFailedError(HypervisorError):
    """An asynchronous hypervisor task stopped with a non-success exit status."""

    def __init__(self, task_ref: str, exit_status: str) -> None:
        super().__init__(f"Task {task_ref} failed with exit status: {exit_status}")
        self.task_ref = task_ref
        self.exit_status = exit_status


class TaskTimeoutError(HypervisorError):
    """A hypervisor task did not reach a terminal state before the deadline."""


class StartTimeoutError(HypervisorError):
    """A container did not report 'running' before the deadline."""


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class ProvisioningError(CardinalError):
    """The creation workflow failed; no record was persisted for it."""


class NotFoundError(CardinalError):
    """No container record exists for the requested ct_id."""


class NotReadyError(CardinalError):
    """The container exists but is not running, so no access is granted."""
