from __future__ import annotations

import struct

import pytest

from pe_builders import E_LFANEW, build_pe, minimal_header
from peforge.errors import InvalidFormat, TruncatedData
from peforge.headers import decode_headers, locate_fields


def test_decode_pe32_headers():
    h = decode_headers(build_pe(characteristics=0x0102, dll_characteristics=0x8140))

    assert h.dos.e_lfanew == E_LFANEW
    assert h.coff.machine == 0x014C
    assert h.coff.number_of_sections == 2
    assert h.coff.characteristics == 0x0102
    assert h.optional.format == "PE32"
    assert h.optional.is_pe32_plus is False
    assert h.optional.image_base == 0x400000
    assert h.optional.base_of_data == 0x2000
    assert h.optional.address_of_entry_point == 0x1000
    assert h.optional.dll_characteristics == 0x8140
    assert h.optional.number_of_rva_and_sizes == 16
    assert len(h.data_directories) == 16


def test_decode_pe32_plus_reads_64bit_image_base():
    h = decode_headers(build_pe(pe32_plus=True, image_base=0x1_4000_0000))
    assert h.optional.format == "PE32+"
    assert h.optional.image_base == 0x1_4000_0000
    assert h.optional.base_of_data is None
    assert h.optional.size_of_stack_reserve == 0x100000
    assert h.coff.machine == 0x8664


def test_flag_states_are_decoded():
    h = decode_headers(build_pe(characteristics=0x0122, dll_characteristics=0x0140))
    coff = {f.name: f.enabled for f in h.coff.characteristics_flags}
    dll = {f.name: f.enabled for f in h.optional.dll_characteristics_flags}
    assert coff["LARGE_ADDRESS_AWARE"] is True
    assert coff["DLL"] is False
    assert dll["DYNAMIC_BASE"] is True
    assert dll["NX_COMPAT"] is True
    assert dll["GUARD_CF"] is False


def test_data_directory_count_is_capped_at_16():
    h = decode_headers(build_pe(number_of_rva_and_sizes=0x100))
    assert len(h.data_directories) == 16


def test_fewer_data_directories_are_respected():
    h = decode_headers(build_pe(number_of_rva_and_sizes=2))
    assert [d.index for d in h.data_directories] == [0, 1]
    assert h.directory(14) is None


def test_field_offsets_match_layout():
    data = build_pe()
    offs = locate_fields(data)
    assert offs.characteristics == E_LFANEW + 22
    assert offs.checksum == E_LFANEW + 24 + 64
    assert offs.dll_characteristics == E_LFANEW + 24 + 70
    assert decode_headers(data).section_table_offset == E_LFANEW + 24 + 0xE0


def test_section_table_follows_pe32_plus_optional_header():
    h = decode_headers(build_pe(pe32_plus=True))
    assert h.section_table_offset == E_LFANEW + 24 + 0xF0


@pytest.mark.parametrize(
    "data, reason",
    [
        (b"MZ" + b"\x00" * 10, "File too small"),
        (b"ZM" + b"\x00" * 200, "Invalid DOS magic"),
    ],
)
def test_invalid_format_reasons(data, reason):
    with pytest.raises(InvalidFormat) as exc:
        decode_headers(data)
    assert exc.value.reason == reason


def test_pe_offset_out_of_bounds():
    buf = bytearray(build_pe())
    struct.pack_into("<I", buf, 0x3C, len(buf))
    with pytest.raises(InvalidFormat, match="PE offset out of bounds"):
        decode_headers(bytes(buf))


def test_bad_pe_signature():
    buf = bytearray(build_pe())
    buf[E_LFANEW : E_LFANEW + 4] = b"NE\x00\x00"
    with pytest.raises(InvalidFormat, match="Invalid PE signature"):
        decode_headers(bytes(buf))


def test_unknown_optional_magic():
    buf = bytearray(build_pe())
    struct.pack_into("<H", buf, E_LFANEW + 24, 0x0107)
    with pytest.raises(InvalidFormat, match="magic"):
        decode_headers(bytes(buf))


def test_truncated_optional_header_raises():
    with pytest.raises(TruncatedData):
        decode_headers(minimal_header())


def test_locate_fields_works_on_short_headers():
    offs = locate_fields(minimal_header())
    assert offs.magic == 0x10B
    assert offs.characteristics == E_LFANEW + 22
    assert offs.dll_characteristics == E_LFANEW + 24 + 70
    assert offs.checksum == E_LFANEW + 24 + 64
