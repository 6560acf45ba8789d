"""Custom exceptions for vmmeter."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    status = 500

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"error": str(self), "details": None}


class InvalidRequest(ManagerError):
    status = 400


class UnknownOS(InvalidRequest):
    def __init__(self, os_key: str, available: Sequence[str] = ()) -> None:
        self.os_key = os_key
        message = f"Unknown OS image '{os_key}'"
        if available:
            message += f". Available: {', '.join(sorted(available))}"
        super().__init__(message)


class NameConflict(ManagerError):
    status = 400

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"VM '{name}' already exists")


class NotFound(ManagerError):
    status = 404


class InvalidTransition(ManagerError):
    def __init__(self, name: str, current: str, target: str) -> None:
        super().__init__(f"VM '{name}' cannot move from {current} to {target}")


class StorageError(ManagerError):
    pass


class NoIsoToolAvailable(ManagerError):
    def __init__(self, tools: Sequence[str]) -> None:
        super().__init__(f"No ISO mastering tool found (tried: {', '.join(tools)})")


class DownloadFailed(ManagerError):
    def __init__(self, url: str, cause: str) -> None:
        self.url = url
        self.cause = cause
        super().__init__(f"Failed to download {url}: {cause}")

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"error": str(self), "details": self.cause}


class CommandFailed(ManagerError):
    """An external tool exited non-zero, timed out, or was missing."""

    def __init__(self, command: List[str], stderr: str, message: Optional[str] = None) -> None:
        self.command = list(command)
        self.stderr = (stderr or "").strip()
        if message is None:
            message = f"Command failed: {' '.join(self.command)}"
            if self.stderr:
                message += f": {self.stderr}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"error": str(self), "details": self.stderr or None}


class HypervisorCommandFailed(CommandFailed):
    pass


class DiskCreateFailed(CommandFailed):
    pass


class SeedIsoFailed(CommandFailed):
    pass


class VMActionFailed(HypervisorCommandFailed):
    def __init__(self, vm_name: str, action: str, command: List[str], stderr: str) -> None:
        self.vm_name = vm_name
        self.action = action
        super().__init__(command, stderr, message=f"Failed to {action} VM '{vm_name}': {(stderr or '').strip()}")
