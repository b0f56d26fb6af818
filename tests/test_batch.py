from __future__ import annotations

import csv
from pathlib import Path

from pe_builders import CHARACTERISTICS_OFF, build_pe, u16_at
from peforge.batch import BatchOptions, find_pe_files, process_file, run_batch
from peforge.reporters.csv_report import write_batch_csv
from peforge.reporters.text_report import batch_text_report


def _populate(d: Path) -> None:
    (d / "good.exe").write_bytes(build_pe(characteristics=0x0102))
    (d / "bad.dll").write_bytes(b"not a pe at all" * 10)
    (d / "notes.txt").write_text("hello", encoding="utf-8")
    (d / ".hidden.exe").write_bytes(build_pe())
    sub = d / "sub"
    sub.mkdir()
    (sub / "inner.SYS").write_bytes(build_pe())


def test_find_pe_files(tmp_path: Path):
    _populate(tmp_path)
    assert [p.name for p in find_pe_files(tmp_path)] == ["bad.dll", "good.exe"]
    assert [p.name for p in find_pe_files(tmp_path, recursive=True)] == ["bad.dll", "good.exe", "inner.SYS"]


def test_failures_do_not_abort_batch(tmp_path: Path):
    _populate(tmp_path)
    summary = run_batch(find_pe_files(tmp_path), {"laa": True})

    assert summary.total == 2
    assert summary.succeeded == 1
    assert summary.failed == 1

    bad, good = summary.results
    assert bad.success is False
    assert "InvalidFormat" in bad.error
    assert good.success is True
    assert good.confirmed_flags["laa"] is True
    assert good.backup_path.endswith("good.backup.exe")
    assert u16_at((tmp_path / "good.exe").read_bytes(), CHARACTERISTICS_OFF) == 0x0122
    assert (tmp_path / "good.backup.exe").read_bytes() == build_pe(characteristics=0x0102)


def test_output_dir_leaves_originals_alone(tmp_path: Path):
    src = tmp_path / "in"
    src.mkdir()
    original = build_pe()
    (src / "a.exe").write_bytes(original)
    out = tmp_path / "out"

    result = process_file(src / "a.exe", {"dep": True}, BatchOptions(output_dir=out, create_backup=False))

    assert result.success is True
    assert (src / "a.exe").read_bytes() == original
    assert result.saved_path == str(out / "a.exe")
    assert result.backup_path is None


def test_missing_file_is_recorded(tmp_path: Path):
    result = process_file(tmp_path / "gone.exe", {"laa": True})
    assert result.success is False
    assert result.error


def test_reports(tmp_path: Path):
    _populate(tmp_path)
    summary = run_batch(find_pe_files(tmp_path), {"laa": True}, BatchOptions(create_backup=False))

    text = batch_text_report(summary)
    assert "Total files: 2" in text
    assert "[FAILED]" in text
    assert "LARGE_ADDRESS_AWARE: False -> True" in text

    csv_path = tmp_path / "report" / "summary.csv"
    write_batch_csv(csv_path, summary)
    with csv_path.open(encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["success"] for r in rows] == ["false", "true"]
    assert rows[1]["changed_flags"] == "LARGE_ADDRESS_AWARE"
    assert rows[1]["laa"] == "true"
    assert rows[0]["laa"] == ""
