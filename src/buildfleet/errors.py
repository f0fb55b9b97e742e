"""Exception hierarchy for the worker.

Failures split into two families: those that end a single job (JobError and
subclasses, reported to the controller as a failed build) and those that
concern the worker itself (registration, persistence).
"""

from __future__ import annotations


class BuildFleetError(Exception):
    """Base class for all worker errors."""


class ControllerError(BuildFleetError):
    """The controller answered with an unexpected HTTP status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Controller returned {status_code}: {detail[:200]}")


class RegistrationError(BuildFleetError):
    """Registration failed after exhausting every attempt."""


class PersistenceError(BuildFleetError):
    """Worker identity could not be written to disk."""


class JobError(BuildFleetError):
    """A failure that ends the current job but not the worker."""


class VMLaunchError(JobError):
    """Cloning, starting or deleting the VM failed."""


class GuestScriptMissingError(JobError):
    """A guest script that must be shipped through the shared mount is missing."""


class VMReadyTimeout(JobError):
    """The controller never reported the VM as ready."""


class BuildTimeout(JobError):
    """The build exceeded its wall-clock budget."""


class VMProcessDied(JobError):
    """The VM process exited before the guest signalled completion."""

    def __init__(self, message: str = "VM process terminated unexpectedly") -> None:
        super().__init__(message)


class BuildCancelled(JobError):
    """The build was cancelled cooperatively (worker shutdown)."""


class ReportError(BuildFleetError):
    """A result could not be delivered to the controller."""
