"""
Error types for the launcher.

Spawn failures are recovered inside the supervisor and turned into scheduled
restarts; listener failures are logged and leave supervision running.
"""

import errno
from enum import Enum
from pathlib import Path
from typing import Optional


class SpawnErrorKind(str, Enum):
    """Why a child process could not be spawned."""

    NOT_FOUND = "not_found"
    OS_REFUSED = "os_refused"


class KeepaliveError(Exception):
    """Base class for launcher errors."""


class SpawnError(KeepaliveError):
    """The supervised executable could not be started."""

    def __init__(self, kind: SpawnErrorKind, path: Path, message: str):
        super().__init__(message)
        self.kind = kind
        self.path = path

    @classmethod
    def from_os_error(cls, path: Path, exc: OSError) -> "SpawnError":
        """Classify an OSError raised while spawning."""
        if isinstance(exc, FileNotFoundError):
            return cls(SpawnErrorKind.NOT_FOUND, path, f"Executable not found: {exc}")
        return cls(SpawnErrorKind.OS_REFUSED, path, f"OS refused to spawn {path}: {exc}")


class ListenError(KeepaliveError):
    """The HTTP listener could not bind its port."""

    def __init__(self, host: str, port: int, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.host = host
        self.port = port
        self.code = code

    @classmethod
    def from_os_error(cls, host: str, port: int, exc: OSError) -> "ListenError":
        if exc.errno == errno.EACCES:
            message = f"Permission denied. Cannot bind to port {port}."
        elif exc.errno == errno.EADDRINUSE:
            message = f"Address {host}:{port} is already in use."
        else:
            message = f"Server error: {exc}"
        return cls(host, port, message, code=exc.errno)
