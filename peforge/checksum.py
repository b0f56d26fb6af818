"""
PE image checksum (the CheckSum field of the optional header).

The loader's algorithm: treat the CheckSum field as zero, add the image as
little-endian 16-bit words with end-around carry at 32 bits, fold the
result to 16 bits, then add the file length.
"""

from __future__ import annotations

import logging
import sys
from array import array
from typing import Tuple

from peforge.cursor import BytesLike, ByteCursor
from peforge.headers import locate_fields
from peforge.model import ChecksumResult

logger = logging.getLogger(__name__)

_MASK32 = 0xFFFFFFFF


def _word_sum(data: bytes) -> int:
    """Plain (unfolded) sum of little-endian 16-bit words, odd tail zero-padded."""
    if len(data) % 2:
        data = data + b"\x00"
    words = array("H")
    words.frombytes(data)
    if sys.byteorder != "little":
        words.byteswap()
    return sum(words)


def _fold_carry32(total: int) -> int:
    """
    Result of adding the words one at a time and folding any carry beyond
    32 bits back into the low 32 bits after each addition.

    End-around-carry addition is addition modulo 2**32 - 1; starting from 0
    with non-negative words the running value only returns to 0 when every
    word is 0, otherwise it stays in [1, 2**32 - 1].
    """
    if total == 0:
        return 0
    return (total - 1) % _MASK32 + 1


def compute_checksum(data: BytesLike, checksum_offset: int) -> int:
    buf = bytearray(data)
    buf[checksum_offset : checksum_offset + 4] = b"\x00\x00\x00\x00"

    s = _fold_carry32(_word_sum(bytes(buf)))
    s = (s & 0xFFFF) + (s >> 16)
    s = (s + (s >> 16)) & 0xFFFF
    return (s + len(buf)) & _MASK32


def recalculate_checksum(data: BytesLike) -> Tuple[bytes, ChecksumResult]:
    """Return a copy of data with a freshly computed CheckSum field."""
    cur = ByteCursor(data)
    offsets = locate_fields(cur)
    # The field itself must be writable.
    old = cur.u32(offsets.checksum)

    new = compute_checksum(cur.data, offsets.checksum)
    buf = bytearray(cur.data)
    buf[offsets.checksum : offsets.checksum + 4] = new.to_bytes(4, "little")

    logger.debug("Checksum 0x%08X -> 0x%08X", old, new)
    return bytes(buf), ChecksumResult(old=old, new=new)
