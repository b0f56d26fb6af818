from __future__ import annotations

from typing import List

from peforge.model import BatchSummary


def batch_text_report(summary: BatchSummary) -> str:
    """Plain-text batch report, one block per file."""
    lines: List[str] = [
        "PE Forge batch report",
        f"Generated: {summary.timestamp_utc}",
        "",
        f"Total files: {summary.total}",
        f"Succeeded:   {summary.succeeded}",
        f"Failed:      {summary.failed}",
        "",
    ]
    for r in summary.results:
        lines.append(f"[{'OK' if r.success else 'FAILED'}] {r.file}")
        if r.error:
            lines.append(f"    error: {r.error}")
        for c in r.changes:
            if c.changed:
                lines.append(f"    {c.name}: {c.old_value} -> {c.new_value}")
        if r.checksum is not None and r.checksum.changed:
            lines.append(f"    checksum: 0x{r.checksum.old:08X} -> 0x{r.checksum.new:08X}")
        if r.backup_path:
            lines.append(f"    backup: {r.backup_path}")
    return "\n".join(lines) + "\n"
