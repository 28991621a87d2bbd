"""
Error classes for snaprest execution.

These error types classify failures at the orchestration boundary:
- ConfigurationError: Missing/invalid parameters or wrong server role
- ConnectivityError: A remote target could not be reached
- AllocationError: Existing repository slots could not be determined
- BackupError: The backup tool reported a failure
- SnapshotError: A snapshot create/describe/delete call failed

Collaborators raise these errors and attach the host they were talking to.
The StepRunner wraps anything raised by a step action in a StepError so the
user sees the step name, the target host, and the underlying message.
"""

from typing import Optional


class SnaprestError(Exception):
    """Base exception for snaprest."""

    def __init__(self, message: str, host: Optional[str] = None):
        self.host = host
        super().__init__(message)


class ConfigurationError(SnaprestError):
    """
    Configuration or prerequisite error - fatal.

    Examples:
    - Required setting missing (primary host, stanza)
    - Source server is not a replica
    - Scheduled run requested before setup ever completed
    """
    pass


class ConnectivityError(SnaprestError):
    """Remote target unreachable (ssh exit 255, connection refused)."""
    pass


class AllocationError(SnaprestError):
    """Cannot parse or determine existing repository slot assignments."""
    pass


class BackupError(SnaprestError):
    """The backup tool reported a failure."""
    pass


class SnapshotError(SnaprestError):
    """
    Snapshot create/describe/delete failed.

    Fatal when raised while creating a snapshot. Retention catches it per
    deletion and keeps going.
    """
    pass


class StepError(SnaprestError):
    """Raised by the StepRunner when a step action fails."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        host = getattr(cause, "host", None)
        target = f" on {host}" if host else ""
        super().__init__(f"Step '{step}' failed{target}: {cause}", host=host)
