from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, NamedTuple, Optional

from peforge.cursor import BytesLike, ByteCursor
from peforge.headers import (
    IMAGE_DLLCHARACTERISTICS_APPCONTAINER,
    IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE,
    IMAGE_DLLCHARACTERISTICS_FORCE_INTEGRITY,
    IMAGE_DLLCHARACTERISTICS_GUARD_CF,
    IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA,
    IMAGE_DLLCHARACTERISTICS_NO_SEH,
    IMAGE_DLLCHARACTERISTICS_NX_COMPAT,
    IMAGE_DLLCHARACTERISTICS_TERMINAL_SERVER_AWARE,
    IMAGE_FILE_LARGE_ADDRESS_AWARE,
    locate_fields,
)
from peforge.model import FlagChangeRecord, HeaderSet

logger = logging.getLogger(__name__)


class PeFlag(str, Enum):
    LAA = "laa"
    ASLR = "aslr"
    DEP = "dep"
    CFG = "cfg"
    HIGH_ENTROPY_VA = "high_entropy_va"
    FORCE_INTEGRITY = "force_integrity"
    NO_SEH = "no_seh"
    APP_CONTAINER = "app_container"
    TERMINAL_SERVER_AWARE = "terminal_server_aware"


class FlagBit(NamedTuple):
    name: str
    header: str  # "coff" or "dll"
    bit: int


FLAG_BITS: Dict[PeFlag, FlagBit] = {
    PeFlag.LAA: FlagBit("LARGE_ADDRESS_AWARE", "coff", IMAGE_FILE_LARGE_ADDRESS_AWARE),
    PeFlag.ASLR: FlagBit("DYNAMIC_BASE", "dll", IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE),
    PeFlag.DEP: FlagBit("NX_COMPAT", "dll", IMAGE_DLLCHARACTERISTICS_NX_COMPAT),
    PeFlag.CFG: FlagBit("GUARD_CF", "dll", IMAGE_DLLCHARACTERISTICS_GUARD_CF),
    PeFlag.HIGH_ENTROPY_VA: FlagBit("HIGH_ENTROPY_VA", "dll", IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA),
    PeFlag.FORCE_INTEGRITY: FlagBit("FORCE_INTEGRITY", "dll", IMAGE_DLLCHARACTERISTICS_FORCE_INTEGRITY),
    PeFlag.NO_SEH: FlagBit("NO_SEH", "dll", IMAGE_DLLCHARACTERISTICS_NO_SEH),
    PeFlag.APP_CONTAINER: FlagBit("APPCONTAINER", "dll", IMAGE_DLLCHARACTERISTICS_APPCONTAINER),
    PeFlag.TERMINAL_SERVER_AWARE: FlagBit(
        "TERMINAL_SERVER_AWARE", "dll", IMAGE_DLLCHARACTERISTICS_TERMINAL_SERVER_AWARE
    ),
}


def _normalize(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


_FLAG_LOOKUP: Dict[str, PeFlag] = {_normalize(f.value): f for f in PeFlag}


def parse_flag(key: object) -> Optional[PeFlag]:
    """
    Accepts PeFlag members and string ids in any case with or without
    separators ("high_entropy_va", "highEntropyVA"). Unknown ids yield None.
    """
    if isinstance(key, PeFlag):
        return key
    if not isinstance(key, str):
        return None
    return _FLAG_LOOKUP.get(_normalize(key))


def normalize_request(requested: Mapping[object, Optional[bool]]) -> Dict[PeFlag, bool]:
    """Drop unknown ids and unset (None) values, keeping request order."""
    out: Dict[PeFlag, bool] = {}
    for key, value in requested.items():
        flag = parse_flag(key)
        if flag is None:
            logger.debug("Ignoring unknown flag id %r", key)
            continue
        if value is None:
            continue
        out[flag] = bool(value)
    return out


def read_flags(headers: HeaderSet) -> Dict[str, bool]:
    """Current state of every patchable flag, keyed by flag id."""
    values = {"coff": headers.coff.characteristics, "dll": headers.optional.dll_characteristics}
    return {f.value: bool(values[fb.header] & fb.bit) for f, fb in FLAG_BITS.items()}


@dataclass(frozen=True)
class FlagPatch:
    data: bytes
    changes: List[FlagChangeRecord] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(c.changed for c in self.changes)


def apply_flag_changes(data: BytesLike, requested: Mapping[object, Optional[bool]]) -> FlagPatch:
    """
    Set or clear the requested flag bits on a private copy of data.

    One record per requested known flag; changed=False marks a request that
    already matched. Bits that were not requested are never touched.
    """
    cur = ByteCursor(data)
    offsets = locate_fields(cur)
    field_offsets = {"coff": offsets.characteristics, "dll": offsets.dll_characteristics}

    buf = bytearray(cur.data)
    records: List[FlagChangeRecord] = []

    for flag, desired in normalize_request(requested).items():
        fb = FLAG_BITS[flag]
        off = field_offsets[fb.header]
        current = int.from_bytes(buf[off : off + 2], "little")
        is_set = bool(current & fb.bit)

        if is_set != desired:
            new_value = (current | fb.bit) if desired else (current & ~fb.bit & 0xFFFF)
            buf[off : off + 2] = new_value.to_bytes(2, "little")
            logger.info("%s: %s -> %s", fb.name, is_set, desired)

        records.append(
            FlagChangeRecord(
                flag=flag.value,
                name=fb.name,
                old_value=is_set,
                new_value=desired,
                changed=is_set != desired,
            )
        )

    return FlagPatch(data=bytes(buf), changes=records)
