"""Exception hierarchy for cursor-guard."""


class CursorGuardError(Exception):
    """Base class for all cursor-guard errors."""


class ProcessNotFound(CursorGuardError):
    """Process exited between enumeration and action."""

    def __init__(self, pid: int):
        super().__init__(f"Process {pid} not found")
        self.pid = pid


class PermissionDenied(CursorGuardError):
    """Signal delivery or deletion was not permitted."""

    def __init__(self, target: str, reason: str = ""):
        msg = f"Permission denied: {target}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)
        self.target = target


class TargetExecutableNotFound(CursorGuardError):
    """The application executable could not be located."""

    def __init__(self, searched: list[str], remediation: str):
        locations = ", ".join(searched) if searched else "nowhere"
        super().__init__(f"Application executable not found (searched: {locations})")
        self.searched = searched
        self.remediation = remediation


class PolicyMisconfiguration(CursorGuardError, ValueError):
    """Configuration value outside sane bounds."""


class AlreadyRunning(CursorGuardError):
    """Another watchdog instance holds the PID file."""

    def __init__(self, pid: int):
        super().__init__(f"Watchdog already running (PID {pid})")
        self.pid = pid
