from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from peforge.headers import FieldOffsets
from peforge.hexview import ROW_WIDTH, hex_byte, printable
from peforge.model import ByteChange, ByteDiff, DiffBlock, DiffRow

# Changed rows closer than this merge into one display block.
BLOCK_MERGE_DISTANCE = 32

_CHUNK = 4096


def field_labels(offsets: FieldOffsets) -> Dict[int, str]:
    labels: Dict[int, str] = {}
    for i in range(2):
        labels[offsets.characteristics + i] = "COFF Characteristics"
        labels[offsets.dll_characteristics + i] = "DLL Characteristics"
    for i in range(4):
        labels[offsets.checksum + i] = "PE Checksum"
    return labels


def _byte_at(data: bytes, i: int) -> Optional[int]:
    return data[i] if i < len(data) else None


def changed_offsets(original: bytes, mutated: bytes) -> List[int]:
    """Offsets where the buffers differ, including positions past either end."""
    out: List[int] = []
    common = min(len(original), len(mutated))
    for start in range(0, common, _CHUNK):
        end = min(start + _CHUNK, common)
        if original[start:end] == mutated[start:end]:
            continue
        out.extend(i for i in range(start, end) if original[i] != mutated[i])
    out.extend(range(common, max(len(original), len(mutated))))
    return out


def _diff_row(row: int, original: bytes, mutated: bytes, changed: set) -> DiffRow:
    olds = [_byte_at(original, row + i) for i in range(ROW_WIDTH)]
    news = [_byte_at(mutated, row + i) for i in range(ROW_WIDTH)]
    return DiffRow(
        offset=row,
        old_hex=[hex_byte(b) for b in olds],
        new_hex=[hex_byte(b) for b in news],
        old_ascii="".join(printable(b) for b in olds),
        new_ascii="".join(printable(b) for b in news),
        changed=[(row + i) in changed for i in range(ROW_WIDTH)],
    )


def group_blocks(offsets: List[int], original: bytes, mutated: bytes) -> List[DiffBlock]:
    if not offsets:
        return []

    changed = set(offsets)
    by_row: Dict[int, List[int]] = {}
    for o in offsets:
        by_row.setdefault(o - o % ROW_WIDTH, []).append(o)

    blocks: List[DiffBlock] = []
    start = last = None
    rows: List[DiffRow] = []
    block_offsets: List[int] = []

    for row in sorted(by_row):
        if last is not None and row > last + BLOCK_MERGE_DISTANCE:
            blocks.append(DiffBlock(start_row=start, last_row=last, rows=rows, changed_offsets=block_offsets))
            start, rows, block_offsets = None, [], []
        if start is None:
            start = row
        last = row
        rows.append(_diff_row(row, original, mutated, changed))
        block_offsets.extend(by_row[row])

    blocks.append(DiffBlock(start_row=start, last_row=last, rows=rows, changed_offsets=block_offsets))
    return blocks


def diff_bytes(
    original: bytes,
    mutated: bytes,
    *,
    labels: Optional[Mapping[int, str]] = None,
) -> ByteDiff:
    offsets = changed_offsets(original, mutated)
    labels = labels or {}
    changes = [
        ByteChange(
            offset=o,
            old=_byte_at(original, o),
            new=_byte_at(mutated, o),
            label=labels.get(o),
        )
        for o in offsets
    ]
    return ByteDiff(changes=changes, blocks=group_blocks(offsets, original, mutated))
