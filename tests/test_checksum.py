from __future__ import annotations

import struct

import pytest

from pe_builders import CHECKSUM_OFF, build_pe, minimal_header, reference_checksum, u32_at
from peforge.checksum import compute_checksum, recalculate_checksum


def test_all_zero_buffer_checksum_is_its_length():
    assert compute_checksum(b"\x00" * 1024, CHECKSUM_OFF) == 1024


def test_matches_word_by_word_reference():
    data = build_pe(imports=[("KERNEL32.dll", ["ExitProcess"])], text=bytes(range(256)) * 2)
    assert compute_checksum(data, CHECKSUM_OFF) == reference_checksum(data, CHECKSUM_OFF)


def test_carry_heavy_buffer_matches_reference():
    data = bytearray(build_pe(text=b"\xFF" * 0x200))
    data += b"\xFF" * 0x2001  # odd length
    assert compute_checksum(bytes(data), CHECKSUM_OFF) == reference_checksum(bytes(data), CHECKSUM_OFF)


def test_existing_checksum_field_is_ignored():
    a = build_pe(checksum=0)
    b = build_pe(checksum=0xDEADBEEF)
    assert compute_checksum(a, CHECKSUM_OFF) == compute_checksum(b, CHECKSUM_OFF)


def test_recalculate_writes_field_and_reports_old_value():
    data = build_pe(checksum=0x1234)
    new_data, result = recalculate_checksum(data)

    assert result.old == 0x1234
    assert result.new == reference_checksum(data, CHECKSUM_OFF)
    assert result.changed is True
    assert u32_at(new_data, CHECKSUM_OFF) == result.new
    assert len(new_data) == len(data)
    # only the checksum field differs
    assert new_data[:CHECKSUM_OFF] == data[:CHECKSUM_OFF]
    assert new_data[CHECKSUM_OFF + 4 :] == data[CHECKSUM_OFF + 4 :]


@pytest.mark.parametrize("pe32_plus", [False, True])
def test_recalculate_is_idempotent(pe32_plus):
    once, _ = recalculate_checksum(build_pe(pe32_plus=pe32_plus, imports=[("KERNEL32.dll", ["ExitProcess"])]))
    twice, result = recalculate_checksum(once)
    assert twice == once
    assert result.changed is False


def test_minimal_header_checksum():
    data = minimal_header()
    new_data, result = recalculate_checksum(data)
    assert struct.unpack_from("<I", new_data, CHECKSUM_OFF)[0] == result.new
    assert result.new == reference_checksum(data, CHECKSUM_OFF)


def test_pe32_plus_checksum_matches_reference():
    data = build_pe(pe32_plus=True, checksum=0xCAFEBABE, text=bytes(range(256)) * 2)
    new_data, result = recalculate_checksum(data)
    assert result.old == 0xCAFEBABE
    assert result.new == reference_checksum(data, CHECKSUM_OFF)
    assert u32_at(new_data, CHECKSUM_OFF) == result.new
