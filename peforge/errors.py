from __future__ import annotations

from typing import Any, Dict


class PeError(ValueError):
    """Base class for fatal PE decoding errors."""


class TruncatedData(PeError):
    def __init__(self, offset: int, width: int, length: int) -> None:
        self.offset = offset
        self.width = width
        self.length = length
        super().__init__(
            f"Read of {width} byte(s) at offset 0x{offset:X} exceeds buffer length {length}"
        )


class InvalidFormat(PeError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def diagnostic(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    """
    Non-fatal issue record (unresolved references, guardrail hits).
    Kept as a plain dict so it serializes unchanged into reports.
    """
    d = {"code": code, "message": message}
    d.update(extra)
    return d
