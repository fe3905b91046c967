"""Error taxonomy shared by the change-event pipeline."""

from __future__ import annotations

from typing import Optional


class ChangeEventError(RuntimeError):
    """Base class for pipeline errors."""


class UnsupportedPlatform(ChangeEventError):
    """Raised when no capture binary exists for the current CPU architecture."""


class SpawnError(ChangeEventError):
    """Raised when the capture binary cannot be executed."""


class ChildExited(ChangeEventError):
    """Raised when the capture process dies while the pipeline is running."""

    def __init__(self, pid: int, returncode: Optional[int] = None) -> None:
        detail = f"exit status {returncode}" if returncode is not None else "gone"
        super().__init__(f"capture process {pid} exited unexpectedly ({detail})")
        self.pid = pid
        self.returncode = returncode


class ParseError(ChangeEventError):
    """Raised for records that are not valid change notifications."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class UnknownTransaction(ChangeEventError):
    """Raised when a change or commit references an xid with no open buffer."""

    def __init__(self, xid: int, action: str) -> None:
        super().__init__(f"no open transaction {xid} for action {action!r}")
        self.xid = xid
        self.action = action


class UnresolvedEntityKind(ChangeEventError):
    """Raised when an entity kind has no registered entity type."""


class ProtocolViolation(ChangeEventError):
    """Raised when the capture stream breaks its framing guarantees."""


class DuplicateTransaction(ProtocolViolation):
    """Raised when a begin arrives for an xid that already has a live buffer."""

    def __init__(self, xid: int) -> None:
        super().__init__(f"transaction {xid} is already open")
        self.xid = xid


class BufferDrained(ChangeEventError):
    """Raised when a transaction buffer is used after it was drained."""


__all__ = [
    "BufferDrained",
    "ChangeEventError",
    "ChildExited",
    "DuplicateTransaction",
    "ParseError",
    "ProtocolViolation",
    "SpawnError",
    "UnknownTransaction",
    "UnresolvedEntityKind",
    "UnsupportedPlatform",
]
