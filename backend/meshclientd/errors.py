from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ErrorRecord:
    kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ClientError(Exception):
    """
    Base for every error that crosses the host boundary.

    `kind` is stable and safe to switch on; `message` is for humans.
    """

    kind = "ClientError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(kind=self.kind, message=self.message)


class ConfigError(ClientError):
    kind = "ConfigError"


class AgentConstructionError(ClientError):
    kind = "AgentConstructionError"


class InvalidStateError(ClientError):
    kind = "InvalidStateError"

    def __init__(self, message: str, variant: Optional[str] = None):
        super().__init__(message)
        self.variant = variant

    def to_record(self) -> ErrorRecord:
        if self.variant:
            return ErrorRecord(kind=self.kind, message=f"{self.variant}: {self.message}")
        return super().to_record()


class AgentRuntimeError(ClientError):
    # Reported to the host as "RuntimeError"; the class name avoids the builtin.
    kind = "RuntimeError"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail
