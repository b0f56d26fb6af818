from __future__ import annotations

from typing import Optional, Union

from peforge.errors import TruncatedData

BytesLike = Union[bytes, bytearray, memoryview]


class ByteCursor:
    """
    Bounds-checked little-endian reads at absolute offsets.

    The cursor never reads past len(data), whatever a header field claims.
    """

    __slots__ = ("data",)

    def __init__(self, data: BytesLike) -> None:
        self.data = bytes(data)

    def __len__(self) -> int:
        return len(self.data)

    def fits(self, offset: int, width: int) -> bool:
        return offset >= 0 and width >= 0 and offset + width <= len(self.data)

    def read(self, offset: int, width: int) -> int:
        if not self.fits(offset, width):
            raise TruncatedData(offset, width, len(self.data))
        return int.from_bytes(self.data[offset : offset + width], "little", signed=False)

    def u8(self, offset: int) -> int:
        return self.read(offset, 1)

    def u16(self, offset: int) -> int:
        return self.read(offset, 2)

    def u32(self, offset: int) -> int:
        return self.read(offset, 4)

    def u64(self, offset: int) -> int:
        return self.read(offset, 8)

    def try_read(self, offset: int, width: int) -> Optional[int]:
        if not self.fits(offset, width):
            return None
        return self.read(offset, width)

    def bytes_at(self, offset: int, size: int) -> bytes:
        if not self.fits(offset, size):
            raise TruncatedData(offset, size, len(self.data))
        return self.data[offset : offset + size]

    def c_string(self, offset: int, *, max_len: int = 512) -> Optional[str]:
        """
        NUL-terminated ASCII string at offset.
        A string running into the buffer end (or max_len) is returned as read.
        """
        if offset < 0 or offset >= len(self.data):
            return None
        end = min(len(self.data), offset + max_len)
        chunk = self.data[offset:end]
        nul = chunk.find(b"\x00")
        if nul != -1:
            chunk = chunk[:nul]
        return chunk.decode("ascii", errors="replace")
