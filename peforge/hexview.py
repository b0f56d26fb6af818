from __future__ import annotations

from typing import Optional

from peforge.model import HexRow, HexView

ROW_WIDTH = 16
DEFAULT_VIEW_LENGTH = 256
MAX_VIEW_LENGTH = 4096


def hex_byte(b: Optional[int], *, absent: str = "  ") -> str:
    return absent if b is None else f"{b:02X}"


def printable(b: Optional[int]) -> str:
    return chr(b) if b is not None and 32 <= b < 127 else "."


def hex_view(data: bytes, offset: int = 0, length: Optional[int] = None) -> HexView:
    """
    16-byte rows of data starting at offset.
    length defaults to 256 and is capped at 4096; offset is clamped into the buffer.
    """
    safe_len = min(length or DEFAULT_VIEW_LENGTH, MAX_VIEW_LENGTH)
    safe_off = max(0, min(offset, len(data) - 1))
    end = min(safe_off + safe_len, len(data))
    chunk = data[safe_off:end]

    rows = []
    for i in range(0, len(chunk), ROW_WIDTH):
        rb = chunk[i : i + ROW_WIDTH]
        hexes = [hex_byte(b) for b in rb] + ["  "] * (ROW_WIDTH - len(rb))
        ascii_ = "".join(printable(b) for b in rb).ljust(ROW_WIDTH)
        rows.append(HexRow(offset=safe_off + i, hex=hexes, ascii=ascii_))

    return HexView(offset=safe_off, length=max(0, end - safe_off), file_size=len(data), rows=rows)
