from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from peforge.model import BatchSummary, ByteDiff, HexView, PeAnalysis

console = Console()


def _yes_no(v: bool) -> str:
    return "[green]yes[/green]" if v else "[red]no[/red]"


def render_analysis(analysis: PeAnalysis) -> None:
    s = analysis.summary
    f = analysis.file

    t = Table(title=f"PE Forge: {f.name}")
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    t.add_row("size", f"{f.size_formatted} ({f.size} bytes)")
    t.add_row("format", s.format)
    t.add_row("machine", s.machine)
    t.add_row("subsystem", s.subsystem)
    t.add_row("image_base", f"0x{s.image_base:X}")
    t.add_row("entry_point", f"0x{s.entry_point:08X} ({s.entry_point_section or '-'})")
    t.add_row("dll", _yes_no(s.is_dll))
    t.add_row(".NET", _yes_no(s.is_dot_net))
    t.add_row("LAA", _yes_no(s.is_laa))
    t.add_row("ASLR", _yes_no(s.is_aslr))
    t.add_row("DEP", _yes_no(s.is_dep))
    t.add_row("CFG", _yes_no(s.is_cfg))
    t.add_row("HighEntropyVA", _yes_no(s.is_high_entropy_va))
    t.add_row("sha256", f.hashes.sha256)
    t.add_row("md5", f.hashes.md5)
    console.print(t)

    st = Table(title="Sections")
    for col in ("#", "Name", "VirtAddr", "VirtSize", "RawSize", "Perm", "Entropy"):
        st.add_column(col)
    for sec in analysis.sections:
        st.add_row(
            str(sec.index),
            sec.name,
            f"0x{sec.virtual_address:08X}",
            f"0x{sec.virtual_size:X}",
            f"0x{sec.raw_size:X}",
            sec.permissions,
            f"{sec.entropy:.3f}",
        )
    console.print(st)

    console.print(
        f"Imports: {s.import_count} DLL(s), {s.total_imported_functions} function(s)  "
        f"Exports: {s.export_count}"
    )
    if analysis.diagnostics:
        console.print(f"[yellow]{len(analysis.diagnostics)} diagnostic(s)[/yellow]")
        for d in analysis.diagnostics:
            console.print(f"  [yellow]{d.get('code')}[/yellow] {d.get('message')}")


def render_patch(report: dict, saved_path: Optional[str] = None, backup_path: Optional[str] = None) -> None:
    t = Table(title="Flag changes")
    t.add_column("Flag")
    t.add_column("Old")
    t.add_column("New")
    t.add_column("Changed")
    for c in report.get("changes", []):
        t.add_row(c["name"], str(c["old_value"]), str(c["new_value"]), _yes_no(c["changed"]))
    console.print(t)

    cs = report.get("checksum")
    if cs:
        console.print(f"Checksum: 0x{cs['old']:08X} -> 0x{cs['new']:08X}")
    if not report.get("verified", True):
        console.print("[red]Warning: re-parse did not confirm every flag change[/red]")
    if backup_path:
        console.print(f"[green]Backup written:[/green] {backup_path}")
    if saved_path:
        console.print(f"[green]Saved:[/green] {saved_path}")


def render_diff(diff: ByteDiff) -> None:
    if not diff.is_modified:
        console.print("No differences.")
        return

    console.print(f"{diff.total_changed_bytes} byte(s) changed in {len(diff.blocks)} block(s)")
    for change in diff.changes:
        old = "--" if change.old is None else f"{change.old:02X}"
        new = "--" if change.new is None else f"{change.new:02X}"
        label = f"  ({change.label})" if change.label else ""
        console.print(f"  {change.offset_hex}: {old} -> {new}{label}")

    for block in diff.blocks:
        console.print(f"\n[bold]Block 0x{block.start_row:08X} - 0x{block.last_row + 15:08X}[/bold]")
        for row in block.rows:
            old = Text(f"{row.offset:08X}  ")
            new = Text(f"{row.offset:08X}  ")
            for h_old, h_new, changed in zip(row.old_hex, row.new_hex, row.changed):
                style = "bold red" if changed else ""
                old.append(h_old + " ", style=style)
                new.append(h_new + " ", style="bold green" if changed else "")
            old.append(f" {row.old_ascii}")
            new.append(f" {row.new_ascii}")
            console.print(Text("- ") + old)
            console.print(Text("+ ") + new)


def render_hex(view: HexView) -> None:
    for row in view.rows:
        console.print(f"{row.offset:08X}  {' '.join(row.hex)}  {row.ascii}", markup=False, highlight=False)


def render_batch(summary: BatchSummary) -> None:
    t = Table(title="Batch results")
    t.add_column("File", overflow="fold")
    t.add_column("Status")
    t.add_column("Changes")
    t.add_column("Detail", overflow="fold")
    for r in summary.results:
        changed = [c.name for c in r.changes if c.changed]
        status = "[green]OK[/green]" if r.success else "[red]FAILED[/red]"
        t.add_row(r.file_name, status, ", ".join(changed) or "-", r.error or r.saved_path or "")
    console.print(t)
    console.print(f"Processed {summary.total}: {summary.succeeded} succeeded, {summary.failed} failed")
