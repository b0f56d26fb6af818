from __future__ import annotations

from typing import Optional, Sequence

from peforge.model import Section


def _contains(section: Section, rva: int) -> bool:
    span = max(section.virtual_size, section.raw_size)
    return section.virtual_address <= rva < section.virtual_address + span


def section_for_rva(rva: int, sections: Sequence[Section]) -> Optional[Section]:
    """First section (file order) whose virtual span contains rva."""
    for s in sections:
        if _contains(s, rva):
            return s
    return None


def resolve_rva(rva: int, sections: Sequence[Section]) -> Optional[int]:
    """
    Map an RVA to a file offset. None means the reference cannot be
    followed; callers must never read it as offset 0.
    """
    s = section_for_rva(rva, sections)
    if s is None:
        return None
    return s.raw_ptr + (rva - s.virtual_address)
