from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any, Dict, List, Tuple

from peforge.cursor import ByteCursor
from peforge.errors import diagnostic
from peforge.model import HeaderSet, Section
from peforge.tables import PeLimits

logger = logging.getLogger(__name__)

SECTION_HEADER_SIZE = 40

IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

SECTION_FLAG_TABLE: Tuple[Tuple[str, int], ...] = (
    ("CODE", 0x00000020),
    ("INITIALIZED_DATA", 0x00000040),
    ("UNINITIALIZED_DATA", 0x00000080),
    ("DISCARDABLE", 0x02000000),
    ("NOT_CACHED", 0x04000000),
    ("NOT_PAGED", 0x08000000),
    ("SHARED", 0x10000000),
    ("EXECUTE", IMAGE_SCN_MEM_EXECUTE),
    ("READ", IMAGE_SCN_MEM_READ),
    ("WRITE", IMAGE_SCN_MEM_WRITE),
)


def shannon_entropy(blob: bytes) -> float:
    if not blob:
        return 0.0
    n = len(blob)
    ent = 0.0
    for c in Counter(blob).values():
        p = c / n
        ent -= p * math.log2(p)
    return float(ent)


def section_entropy(data: bytes, raw_ptr: int, raw_size: int) -> float:
    """Entropy of the raw section bytes, clipped to the buffer."""
    if raw_size <= 0 or raw_ptr >= len(data):
        return 0.0
    end = min(len(data), raw_ptr + raw_size)
    return round(shannon_entropy(data[raw_ptr:end]), 6)


def permissions(characteristics: int) -> str:
    r = "R" if characteristics & IMAGE_SCN_MEM_READ else "-"
    w = "W" if characteristics & IMAGE_SCN_MEM_WRITE else "-"
    x = "X" if characteristics & IMAGE_SCN_MEM_EXECUTE else "-"
    return r + w + x


def section_flags(characteristics: int) -> List[str]:
    return [name for name, bit in SECTION_FLAG_TABLE if characteristics & bit]


def section_name(raw: bytes) -> str:
    # 8 bytes, NUL-padded, not necessarily NUL-terminated
    return raw.split(b"\x00", 1)[0].decode("latin-1")


def decode_sections(
    cur: ByteCursor,
    headers: HeaderSet,
    limits: PeLimits = PeLimits(),
) -> Tuple[List[Section], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    sections: List[Section] = []

    sect_off = headers.section_table_offset
    declared = headers.coff.number_of_sections
    count = declared
    if declared > limits.max_sections:
        errors.append(
            diagnostic(
                "E_PE_SECTION_COUNT_CLAMPED",
                f"Section count too large; clamped to max_sections={limits.max_sections}.",
                number_of_sections=declared,
                max_sections=limits.max_sections,
            )
        )
        count = limits.max_sections

    # Entropy is computed over at most max_section_entropy_bytes in total.
    entropy_budget = limits.max_section_entropy_bytes
    budget_reported = False

    for i in range(count):
        sh_off = sect_off + i * SECTION_HEADER_SIZE
        if not cur.fits(sh_off, SECTION_HEADER_SIZE):
            errors.append(
                diagnostic(
                    "E_PE_SECTION_HEADER_TRUNCATED",
                    "Section header truncated.",
                    section_index=i,
                    sh_off=sh_off,
                )
            )
            break

        raw_size = cur.u32(sh_off + 16)
        raw_ptr = cur.u32(sh_off + 20)
        chars = cur.u32(sh_off + 36)

        span = max(0, min(len(cur), raw_ptr + raw_size) - raw_ptr)
        if span > entropy_budget:
            if not budget_reported:
                errors.append(
                    diagnostic(
                        "E_PE_SECTION_ENTROPY_BUDGET_EXCEEDED",
                        f"Section entropy skipped past max_section_entropy_bytes={limits.max_section_entropy_bytes}.",
                        section_index=i,
                        max_section_entropy_bytes=limits.max_section_entropy_bytes,
                    )
                )
                budget_reported = True
            entropy = 0.0
        else:
            entropy = section_entropy(cur.data, raw_ptr, raw_size)
            entropy_budget -= span

        sections.append(
            Section(
                index=i + 1,
                name=section_name(cur.bytes_at(sh_off, 8)),
                virtual_size=cur.u32(sh_off + 8),
                virtual_address=cur.u32(sh_off + 12),
                raw_size=raw_size,
                raw_ptr=raw_ptr,
                characteristics=chars,
                characteristics_flags=section_flags(chars),
                permissions=permissions(chars),
                entropy=entropy,
            )
        )

    logger.debug("Decoded %d/%d section header(s)", len(sections), declared)
    return sections, errors
