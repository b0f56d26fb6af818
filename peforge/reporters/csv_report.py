from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict

from peforge.model import BatchSummary

FIELDNAMES = [
    "file",
    "success",
    "error",
    "saved_path",
    "backup_path",
    "format",
    "machine",
    "changed_flags",
    "checksum_old",
    "checksum_new",
    "laa",
    "aslr",
    "dep",
    "cfg",
    "high_entropy_va",
]


def _get(d: Dict[str, Any], path: str, default):
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _flag(v: Any) -> str:
    if v is None or v == "":
        return ""
    return "true" if v else "false"


def write_batch_csv(path: Path, summary: BatchSummary) -> None:
    rows = []
    for result in summary.results:
        r = result.model_dump()
        checksum = r.get("checksum") or {}
        rows.append(
            {
                "file": r.get("file", ""),
                "success": _flag(r.get("success", False)),
                "error": r.get("error") or "",
                "saved_path": r.get("saved_path") or "",
                "backup_path": r.get("backup_path") or "",
                "format": _get(r, "summary.format", ""),
                "machine": _get(r, "summary.machine", ""),
                "changed_flags": ";".join(c["name"] for c in r.get("changes", []) if c.get("changed")),
                "checksum_old": f"0x{checksum['old']:08X}" if checksum else "",
                "checksum_new": f"0x{checksum['new']:08X}" if checksum else "",
                "laa": _flag(_get(r, "confirmed_flags.laa", "")),
                "aslr": _flag(_get(r, "confirmed_flags.aslr", "")),
                "dep": _flag(_get(r, "confirmed_flags.dep", "")),
                "cfg": _flag(_get(r, "confirmed_flags.cfg", "")),
                "high_entropy_va": _flag(_get(r, "confirmed_flags.high_entropy_va", "")),
            }
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()
        writer.writerows(rows)
