from typing import Any, Dict, Optional

KIND_PREFIX = "fleetrun.tasks"


class FleetError(Exception):
    """Base error carrying a structured payload that results can reuse as-is."""

    def __init__(
        self,
        message: str,
        kind: str,
        details: Optional[Dict[str, Any]] = None,
        issue_code: str = "FLEET_ERROR",
    ):
        super().__init__(message)
        self.kind = kind
        self.details = details or {}
        self.issue_code = issue_code

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "msg": self.message,
            "details": dict(self.details),
            "issue_code": self.issue_code,
        }


class ConnectError(FleetError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, issue_code: str = "CONNECT_ERROR"):
        super().__init__(message, f"{KIND_PREFIX}/connect-error", details, issue_code)


class FileTransferError(FleetError):
    def __init__(self, message: str, issue_code: str = "COPY_ERROR", destination: Optional[str] = None):
        details = {"destination": destination} if destination is not None else {}
        super().__init__(message, f"{KIND_PREFIX}/copy-error", details, issue_code)
        self.destination = destination


class ProcessSpawnError(FleetError):
    def __init__(self, message: str, command: Any = None):
        details = {"command": command if isinstance(command, str) else " ".join(command or [])}
        super().__init__(message, f"{KIND_PREFIX}/spawn-error", details, "SPAWN_ERROR")


class ValidationError(FleetError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, f"{KIND_PREFIX}/validation-error", details, "VALIDATION_ERROR")
