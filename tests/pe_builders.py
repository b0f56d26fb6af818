"""
Synthetic PE images for the tests.

Layout (both formats): DOS header with e_lfanew=0x80, headers up to 0x400,
.text at RVA 0x1000 / file 0x400, .rdata at RVA 0x2000 / file 0x600 holding
the import and export tables.
"""

from __future__ import annotations

import struct
from typing import Optional, Sequence, Tuple, Union

E_LFANEW = 0x80
TEXT_RVA = 0x1000
TEXT_RAW = 0x400
TEXT_SIZE = 0x200
RDATA_RVA = 0x2000
RDATA_RAW = 0x600
FILE_ALIGN = 0x200

# (name, hint) or ordinal
ImportSpec = Tuple[str, Sequence[Union[int, Tuple[str, int], str]]]
# (name or None, function rva) or (name or None, "OTHER.Func") for forwarders
ExportSpec = Tuple[Optional[str], Union[int, str]]


class _RData:
    def __init__(self, reserve: int = 0):
        self.buf = bytearray(reserve)

    def put(self, blob: bytes) -> int:
        if len(self.buf) % 2:
            self.buf += b"\x00"
        rva = RDATA_RVA + len(self.buf)
        self.buf += blob
        return rva

    def write_at(self, rva: int, blob: bytes) -> None:
        off = rva - RDATA_RVA
        self.buf[off : off + len(blob)] = blob


def _import_tables(
    rd: _RData, imports: Sequence[ImportSpec], pe32_plus: bool, use_lookup: bool, share_thunks: bool
) -> Tuple[int, int]:
    desc_rva = rd.put(b"\x00" * (20 * (len(imports) + 1)))
    entry_fmt = "<Q" if pe32_plus else "<I"
    ordinal_flag = 0x8000000000000000 if pe32_plus else 0x80000000
    shared: Optional[Tuple[int, int]] = None

    for i, (dll, funcs) in enumerate(imports):
        name_rva = rd.put(dll.encode("ascii") + b"\x00")
        if shared is not None:
            # every later descriptor reuses the first thunk arrays
            ilt_rva, iat_rva = shared
            rd.write_at(desc_rva + i * 20, struct.pack("<IIIII", ilt_rva if use_lookup else 0, 0, 0, name_rva, iat_rva))
            continue
        thunks = []
        for f in funcs:
            if isinstance(f, int):
                thunks.append(ordinal_flag | f)
                continue
            fname, hint = (f, 0) if isinstance(f, str) else f
            thunks.append(rd.put(struct.pack("<H", hint) + fname.encode("ascii") + b"\x00"))
        table = b"".join(struct.pack(entry_fmt, t) for t in thunks) + struct.pack(entry_fmt, 0)
        ilt_rva = rd.put(table)
        iat_rva = rd.put(table)
        if share_thunks:
            shared = (ilt_rva, iat_rva)
        rd.write_at(
            desc_rva + i * 20,
            struct.pack("<IIIII", ilt_rva if use_lookup else 0, 0, 0, name_rva, iat_rva),
        )
    return desc_rva, 20 * (len(imports) + 1)


def _export_tables(rd: _RData, dll_name: str, exports: Sequence[ExportSpec], base: int) -> Tuple[int, int]:
    dir_rva = rd.put(b"\x00" * 40)
    name_rva = rd.put(dll_name.encode("ascii") + b"\x00")

    func_rvas = []
    for _, target in exports:
        if isinstance(target, str):
            func_rvas.append(rd.put(target.encode("ascii") + b"\x00"))
        else:
            func_rvas.append(target)
    funcs_rva = rd.put(b"".join(struct.pack("<I", r) for r in func_rvas))

    named = [(name, slot) for slot, (name, _) in enumerate(exports) if name]
    name_ptrs = [rd.put(name.encode("ascii") + b"\x00") for name, _ in named]
    names_rva = rd.put(b"".join(struct.pack("<I", p) for p in name_ptrs))
    ords_rva = rd.put(b"".join(struct.pack("<H", slot) for _, slot in named))

    rd.write_at(
        dir_rva,
        struct.pack(
            "<IIHHIIIIIII",
            0,  # Characteristics
            0,  # TimeDateStamp
            0,
            0,
            name_rva,
            base,
            len(exports),
            len(named),
            funcs_rva,
            names_rva,
            ords_rva,
        ),
    )
    return dir_rva, RDATA_RVA + len(rd.buf) - dir_rva


def build_pe(
    *,
    pe32_plus: bool = False,
    machine: Optional[int] = None,
    characteristics: int = 0x0102,
    dll_characteristics: int = 0,
    checksum: int = 0,
    subsystem: int = 3,
    image_base: Optional[int] = None,
    number_of_rva_and_sizes: int = 16,
    imports: Optional[Sequence[ImportSpec]] = None,
    import_lookup: bool = True,
    share_thunks: bool = False,
    exports: Optional[Sequence[ExportSpec]] = None,
    export_name: str = "test.dll",
    export_base: int = 1,
    text: Optional[bytes] = None,
    com_descriptor: bool = False,
) -> bytes:
    if machine is None:
        machine = 0x8664 if pe32_plus else 0x014C
    if image_base is None:
        image_base = 0x140000000 if pe32_plus else 0x400000

    rd = _RData()
    import_dir = _import_tables(rd, imports, pe32_plus, import_lookup, share_thunks) if imports is not None else (0, 0)
    export_dir = _export_tables(rd, export_name, exports, export_base) if exports is not None else (0, 0)
    if not rd.buf:
        rd.buf += b"\x00" * 16
    rdata_raw_size = -(-len(rd.buf) // FILE_ALIGN) * FILE_ALIGN
    rdata_vsize = len(rd.buf)

    size_opt = 0xF0 if pe32_plus else 0xE0
    opt = bytearray(size_opt)
    struct.pack_into("<H", opt, 0, 0x20B if pe32_plus else 0x10B)
    opt[2], opt[3] = 14, 0
    struct.pack_into("<I", opt, 4, TEXT_SIZE)
    struct.pack_into("<I", opt, 16, TEXT_RVA)  # AddressOfEntryPoint
    struct.pack_into("<I", opt, 20, TEXT_RVA)  # BaseOfCode
    if pe32_plus:
        struct.pack_into("<Q", opt, 24, image_base)
    else:
        struct.pack_into("<I", opt, 24, RDATA_RVA)  # BaseOfData
        struct.pack_into("<I", opt, 28, image_base)
    struct.pack_into("<I", opt, 32, 0x1000)  # SectionAlignment
    struct.pack_into("<I", opt, 36, FILE_ALIGN)
    struct.pack_into("<I", opt, 56, 0x3000)  # SizeOfImage
    struct.pack_into("<I", opt, 60, TEXT_RAW)  # SizeOfHeaders
    struct.pack_into("<I", opt, 64, checksum)
    struct.pack_into("<H", opt, 68, subsystem)
    struct.pack_into("<H", opt, 70, dll_characteristics)
    if pe32_plus:
        struct.pack_into("<QQQQ", opt, 72, 0x100000, 0x1000, 0x100000, 0x1000)
        struct.pack_into("<I", opt, 108, number_of_rva_and_sizes)
        dd_off = 112
    else:
        struct.pack_into("<IIII", opt, 72, 0x100000, 0x1000, 0x100000, 0x1000)
        struct.pack_into("<I", opt, 92, number_of_rva_and_sizes)
        dd_off = 96
    directories = {0: export_dir, 1: import_dir}
    if com_descriptor:
        directories[14] = (RDATA_RVA, 0x48)
    for idx, (rva, size) in directories.items():
        if idx < number_of_rva_and_sizes:
            struct.pack_into("<II", opt, dd_off + idx * 8, rva, size)

    coff = struct.pack("<HHIIIHH", machine, 2, 0x5F3759DF, 0, 0, size_opt, characteristics)

    def section(name: bytes, va: int, vsize: int, raw_ptr: int, raw_size: int, chars: int) -> bytes:
        sh = bytearray(40)
        sh[0:8] = name.ljust(8, b"\x00")
        struct.pack_into("<IIII", sh, 8, vsize, va, raw_size, raw_ptr)
        struct.pack_into("<I", sh, 36, chars)
        return bytes(sh)

    dos = bytearray(E_LFANEW)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, E_LFANEW)

    blob = bytearray(dos)
    blob += b"PE\x00\x00" + coff + bytes(opt)
    blob += section(b".text", TEXT_RVA, TEXT_SIZE, TEXT_RAW, TEXT_SIZE, 0x60000020)
    blob += section(b".rdata", RDATA_RVA, rdata_vsize, RDATA_RAW, rdata_raw_size, 0x40000040)
    blob += b"\x00" * (TEXT_RAW - len(blob))

    body = (text if text is not None else b"\xCC" * TEXT_SIZE)[:TEXT_SIZE]
    blob += body.ljust(TEXT_SIZE, b"\x00")
    blob += bytes(rd.buf).ljust(rdata_raw_size, b"\x00")
    return bytes(blob)


def minimal_header(characteristics: int = 0x0102, dll_characteristics: int = 0, *, pe32_plus: bool = False) -> bytes:
    """Headers only, cut right after DllCharacteristics; enough for patching."""
    opt_off = E_LFANEW + 24
    buf = bytearray(opt_off + 72)
    buf[0:2] = b"MZ"
    struct.pack_into("<I", buf, 0x3C, E_LFANEW)
    buf[E_LFANEW : E_LFANEW + 4] = b"PE\x00\x00"
    struct.pack_into("<H", buf, E_LFANEW + 4, 0x8664 if pe32_plus else 0x014C)
    struct.pack_into("<H", buf, E_LFANEW + 4 + 18, characteristics)
    struct.pack_into("<H", buf, opt_off, 0x20B if pe32_plus else 0x10B)
    struct.pack_into("<H", buf, opt_off + 70, dll_characteristics)
    return bytes(buf)


def reference_checksum(data: bytes, checksum_offset: int) -> int:
    """Word-by-word loop with a carry fold after every addition."""
    buf = bytearray(data)
    buf[checksum_offset : checksum_offset + 4] = b"\x00" * 4
    if len(buf) % 2:
        buf += b"\x00"
    s = 0
    for i in range(0, len(buf), 2):
        s += buf[i] | (buf[i + 1] << 8)
        s = (s & 0xFFFFFFFF) + (s >> 32)
    s = (s & 0xFFFF) + (s >> 16)
    s = (s + (s >> 16)) & 0xFFFF
    return s + len(data)


def u16_at(data: bytes, off: int) -> int:
    return struct.unpack_from("<H", data, off)[0]


def u32_at(data: bytes, off: int) -> int:
    return struct.unpack_from("<I", data, off)[0]


CHARACTERISTICS_OFF = E_LFANEW + 4 + 18
CHECKSUM_OFF = E_LFANEW + 24 + 64
DLL_CHARACTERISTICS_OFF = E_LFANEW + 24 + 70
