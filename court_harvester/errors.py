"""
Error taxonomy for the harvester.

Remote failures are classified once, at the gateway boundary, into an
ErrorKind. Everything downstream decides on `kind`, never on message text.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union


class ErrorKind(Enum):
    """Classification of a failed remote call."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    CLIENT = "client"
    QUOTA = "quota"
    DECODE = "decode"
    SHUTDOWN = "shutdown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER)


class HarvesterError(Exception):
    """Base exception for harvester errors."""


class ConfigError(HarvesterError):
    """Invalid or unreadable configuration."""


class CredentialError(HarvesterError):
    """No usable credential could be loaded."""


class RemoteError(HarvesterError):
    """A search request failed."""

    def __init__(self, kind: ErrorKind, status: Optional[int] = None, body: str = ""):
        self.kind = kind
        self.status = status
        self.body = body
        label = status if status is not None else kind.value.upper()
        detail = f": {body[:200]}" if body else ""
        super().__init__(f"[{label}] {kind.value} error{detail}")

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class QuotaExceeded(RemoteError):
    """The active credential is out of budget on the remote side."""

    def __init__(self, status: Optional[int] = 403, body: str = ""):
        super().__init__(ErrorKind.QUOTA, status, body)


class GatewayClosed(RemoteError):
    """Work was submitted to, or discarded by, a stopped gateway."""

    def __init__(self, body: str = "gateway is shut down"):
        super().__init__(ErrorKind.SHUTDOWN, None, body)


class KeysExhausted(HarvesterError):
    """
    Terminal signal: every credential in the pool is spent.
    Callers stop issuing queries and persist state; this is not a crash.
    """


class SnapshotCorrupted(HarvesterError):
    """A snapshot file exists but cannot be read back."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Snapshot {self.path} is unreadable: {reason}")
