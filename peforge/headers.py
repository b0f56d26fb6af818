from __future__ import annotations

import logging
from typing import Any, Dict, List, NamedTuple, Tuple, Union

from peforge.cursor import BytesLike, ByteCursor
from peforge.errors import InvalidFormat, diagnostic
from peforge.model import CoffHeader, DataDirectory, DosHeader, FlagState, HeaderSet, OptionalHeader

logger = logging.getLogger(__name__)

DOS_MAGIC = 0x5A4D  # "MZ"
PE_SIGNATURE = 0x00004550  # "PE\0\0"
E_LFANEW_OFFSET = 0x3C
MIN_DOS_HEADER_SIZE = 64

COFF_HEADER_SIZE = 20
PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B

MAX_DATA_DIRECTORIES = 16
DATA_DIRECTORY_SIZE = 8

# Data directory indices
DIR_EXPORT = 0
DIR_IMPORT = 1
DIR_COM_DESCRIPTOR = 14

DATA_DIRECTORY_NAMES = (
    "Export Table",
    "Import Table",
    "Resource Table",
    "Exception Table",
    "Certificate Table",
    "Base Relocation Table",
    "Debug",
    "Architecture",
    "Global Ptr",
    "TLS Table",
    "Load Config Table",
    "Bound Import",
    "IAT",
    "Delay Import Descriptor",
    "COM Descriptor",
    "Reserved",
)

# COFF characteristics
IMAGE_FILE_LARGE_ADDRESS_AWARE = 0x0020
IMAGE_FILE_DLL = 0x2000

# DLL characteristics
IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA = 0x0020
IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE = 0x0040
IMAGE_DLLCHARACTERISTICS_FORCE_INTEGRITY = 0x0080
IMAGE_DLLCHARACTERISTICS_NX_COMPAT = 0x0100
IMAGE_DLLCHARACTERISTICS_NO_SEH = 0x0400
IMAGE_DLLCHARACTERISTICS_APPCONTAINER = 0x1000
IMAGE_DLLCHARACTERISTICS_GUARD_CF = 0x4000
IMAGE_DLLCHARACTERISTICS_TERMINAL_SERVER_AWARE = 0x8000

# (name, bit, description)
COFF_FLAG_TABLE: Tuple[Tuple[str, int, str], ...] = (
    ("RELOCS_STRIPPED", 0x0001, "Relocation info stripped"),
    ("EXECUTABLE_IMAGE", 0x0002, "File is executable"),
    ("LINE_NUMS_STRIPPED", 0x0004, "Line numbers stripped"),
    ("LOCAL_SYMS_STRIPPED", 0x0008, "Local symbols stripped"),
    ("LARGE_ADDRESS_AWARE", 0x0020, "App can handle >2GB addresses"),
    ("32BIT_MACHINE", 0x0100, "Machine is based on 32-bit-word architecture"),
    ("DEBUG_STRIPPED", 0x0200, "Debugging info stripped"),
    ("SYSTEM", 0x1000, "System file"),
    ("DLL", 0x2000, "File is a DLL"),
)

DLL_FLAG_TABLE: Tuple[Tuple[str, int, str], ...] = (
    ("HIGH_ENTROPY_VA", 0x0020, "Image can handle a high entropy 64-bit virtual address space"),
    ("DYNAMIC_BASE", 0x0040, "Relocatable at load time (ASLR)"),
    ("FORCE_INTEGRITY", 0x0080, "Code integrity checks enforced"),
    ("NX_COMPAT", 0x0100, "Compatible with Data Execution Prevention (DEP)"),
    ("NO_ISOLATION", 0x0200, "Image understands isolation and doesn't want it"),
    ("NO_SEH", 0x0400, "Image does not use SEH"),
    ("NO_BIND", 0x0800, "Do not bind this image"),
    ("APPCONTAINER", 0x1000, "Image should execute in an AppContainer"),
    ("WDM_DRIVER", 0x2000, "Driver uses WDM model"),
    ("GUARD_CF", 0x4000, "Image supports Control Flow Guard"),
    ("TERMINAL_SERVER_AWARE", 0x8000, "Terminal Server aware"),
)

MACHINE_NAMES: Dict[int, str] = {
    0x014C: "x86",
    0x8664: "x64",
    0xAA64: "ARM64",
    0x01C0: "ARM",
    0x01C4: "ARMv7",
    0x0200: "IA64",
}

SUBSYSTEM_NAMES: Dict[int, str] = {
    1: "Native",
    2: "GUI",
    3: "CUI",
    5: "OS/2 CUI",
    7: "POSIX CUI",
    9: "Windows CE GUI",
    10: "EFI Application",
    11: "EFI Boot Service Driver",
    12: "EFI Runtime Driver",
    13: "EFI ROM",
    14: "Xbox",
    16: "Windows Boot Application",
}


def flag_states(value: int, table: Tuple[Tuple[str, int, str], ...]) -> List[FlagState]:
    return [FlagState(name=n, bit=b, enabled=bool(value & b), description=d) for n, b, d in table]


def machine_name(machine: int) -> str:
    return MACHINE_NAMES.get(machine, "Unknown")


def subsystem_name(subsystem: int) -> str:
    return SUBSYSTEM_NAMES.get(subsystem, "Unknown")


def verify_signatures(cur: ByteCursor) -> int:
    """
    Validate DOS/PE signatures in order and return e_lfanew.
    Raises InvalidFormat at the first failing step.
    """
    if len(cur) < MIN_DOS_HEADER_SIZE:
        raise InvalidFormat("File too small")
    if cur.u16(0) != DOS_MAGIC:
        raise InvalidFormat("Invalid DOS magic")
    e_lfanew = cur.u32(E_LFANEW_OFFSET)
    if e_lfanew + 4 > len(cur):
        raise InvalidFormat("PE offset out of bounds")
    if cur.u32(e_lfanew) != PE_SIGNATURE:
        raise InvalidFormat("Invalid PE signature")
    return e_lfanew


def _decode_coff(cur: ByteCursor, off: int) -> CoffHeader:
    characteristics = cur.u16(off + 18)
    return CoffHeader(
        machine=cur.u16(off + 0),
        number_of_sections=cur.u16(off + 2),
        time_date_stamp=cur.u32(off + 4),
        pointer_to_symbol_table=cur.u32(off + 8),
        number_of_symbols=cur.u32(off + 12),
        size_of_optional_header=cur.u16(off + 16),
        characteristics=characteristics,
        characteristics_flags=flag_states(characteristics, COFF_FLAG_TABLE),
    )


def _decode_optional(cur: ByteCursor, off: int) -> OptionalHeader:
    magic = cur.u16(off)
    if magic == PE32_MAGIC:
        is_plus = False
    elif magic == PE32P_MAGIC:
        is_plus = True
    else:
        raise InvalidFormat(f"Unknown optional header magic 0x{magic:04X}")

    # Stack/heap reserve-commit widen to 8 bytes on PE32+.
    w = 8 if is_plus else 4
    dll_characteristics = cur.u16(off + 70)

    return OptionalHeader(
        magic=magic,
        format="PE32+" if is_plus else "PE32",
        linker_version=f"{cur.u8(off + 2)}.{cur.u8(off + 3)}",
        address_of_entry_point=cur.u32(off + 16),
        base_of_code=cur.u32(off + 20),
        base_of_data=None if is_plus else cur.u32(off + 24),
        image_base=cur.u64(off + 24) if is_plus else cur.u32(off + 28),
        section_alignment=cur.u32(off + 32),
        file_alignment=cur.u32(off + 36),
        size_of_image=cur.u32(off + 56),
        size_of_headers=cur.u32(off + 60),
        checksum=cur.u32(off + 64),
        subsystem=cur.u16(off + 68),
        dll_characteristics=dll_characteristics,
        dll_characteristics_flags=flag_states(dll_characteristics, DLL_FLAG_TABLE),
        size_of_stack_reserve=cur.read(off + 72, w),
        size_of_stack_commit=cur.read(off + 72 + w, w),
        size_of_heap_reserve=cur.read(off + 72 + 2 * w, w),
        size_of_heap_commit=cur.read(off + 72 + 3 * w, w),
        loader_flags=cur.u32(off + 72 + 4 * w),
        number_of_rva_and_sizes=cur.u32(off + 76 + 4 * w),
    )


def _decode_data_directories(
    cur: ByteCursor, opt_off: int, optional: OptionalHeader
) -> Tuple[List[DataDirectory], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    dirs: List[DataDirectory] = []

    dd_off = opt_off + (112 if optional.is_pe32_plus else 96)
    count = min(MAX_DATA_DIRECTORIES, optional.number_of_rva_and_sizes)

    for i in range(count):
        off = dd_off + i * DATA_DIRECTORY_SIZE
        if not cur.fits(off, DATA_DIRECTORY_SIZE):
            errors.append(
                diagnostic(
                    "E_PE_DATA_DIRECTORY_TRUNCATED",
                    "Data directory array truncated by end of file.",
                    index=i,
                    declared=optional.number_of_rva_and_sizes,
                )
            )
            break
        dirs.append(
            DataDirectory(
                index=i,
                name=DATA_DIRECTORY_NAMES[i],
                virtual_address=cur.u32(off),
                size=cur.u32(off + 4),
            )
        )
    return dirs, errors


def decode_headers(data: Union[BytesLike, ByteCursor]) -> HeaderSet:
    cur = data if isinstance(data, ByteCursor) else ByteCursor(data)
    e_lfanew = verify_signatures(cur)

    coff = _decode_coff(cur, e_lfanew + 4)
    opt_off = e_lfanew + 4 + COFF_HEADER_SIZE
    optional = _decode_optional(cur, opt_off)
    dirs, errors = _decode_data_directories(cur, opt_off, optional)

    logger.debug(
        "Decoded %s headers: machine=0x%04X sections=%d directories=%d",
        optional.format,
        coff.machine,
        coff.number_of_sections,
        len(dirs),
    )
    return HeaderSet(
        dos=DosHeader(e_lfanew=e_lfanew),
        coff=coff,
        optional=optional,
        data_directories=dirs,
        diagnostics=errors,
    )


class FieldOffsets(NamedTuple):
    """Absolute offsets of the mutable header fields."""

    magic: int
    characteristics: int
    dll_characteristics: int
    checksum: int


def locate_fields(data: Union[BytesLike, ByteCursor]) -> FieldOffsets:
    """
    Validate signatures and the optional header magic, and locate the fields
    the patcher writes. Needs only the bytes up to DllCharacteristics, so it
    works on images too short for a full header decode.
    """
    cur = data if isinstance(data, ByteCursor) else ByteCursor(data)
    e_lfanew = verify_signatures(cur)
    opt_off = e_lfanew + 4 + COFF_HEADER_SIZE
    magic = cur.u16(opt_off)
    if magic not in (PE32_MAGIC, PE32P_MAGIC):
        raise InvalidFormat(f"Unknown optional header magic 0x{magic:04X}")
    offsets = FieldOffsets(
        magic=magic,
        characteristics=e_lfanew + 4 + 18,
        dll_characteristics=opt_off + 70,
        checksum=opt_off + 64,
    )
    # Both words must be readable before anything is written.
    cur.u16(offsets.characteristics)
    cur.u16(offsets.dll_characteristics)
    return offsets
