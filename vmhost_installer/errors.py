"""
Error taxonomy.

Step actions raise these so the orchestrator can tell outcomes apart.
ValidationError means the operator typed something unusable and should be asked again.
DeviceNotFound and ActionFailure fail the current step without advancing state.
UserCancelled is an explicit decline, which is not a failure.
RebootRequired is not an error at all: it unwinds to the entrypoint after a reboot was issued.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class InstallerError(Exception):
    """Base class for all installer exceptions."""

    def __init__(self, message: str, *, step_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.step_id = step_id


class ValidationError(InstallerError):
    """Raised when operator input is rejected. Never persisted."""


class DeviceNotFound(InstallerError):
    """Raised when no identity field of a NIC role resolves to a live interface."""

    def __init__(self, role: str, identity: Any, *, step_id: Optional[str] = None) -> None:
        super().__init__(f"No live interface matches role {role} (recorded identity: {identity})", step_id=step_id)
        self.role = role
        self.identity = identity


class ActionFailure(InstallerError):
    """Raised when an external action returns non-zero."""

    def __init__(
        self,
        message: str,
        *,
        argv: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        step_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, step_id=step_id)
        self.argv = list(argv or [])
        self.returncode = returncode
        self.stderr = stderr


class UserCancelled(InstallerError):
    """Raised when the operator cancels a prompt mid-step."""


class RebootRequired(Exception):
    """Raised after a host reboot has been issued. The entrypoint exits cleanly on it."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Host reboot issued after step {step_id}")
        self.step_id = step_id
