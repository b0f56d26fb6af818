from __future__ import annotations

import json
from importlib import metadata
from pathlib import Path
from typing import Dict, NoReturn, Optional

import typer

from peforge.batch import BatchOptions, find_pe_files, run_batch
from peforge.config import AppConfig, load_config
from peforge.diff import diff_bytes, field_labels
from peforge.errors import PeError
from peforge.headers import locate_fields
from peforge.hexview import DEFAULT_VIEW_LENGTH, hex_view
from peforge.log import configure_logging
from peforge.pe import analyze_pe_bytes
from peforge.reporters.console import render_analysis, render_batch, render_diff, render_hex, render_patch
from peforge.reporters.csv_report import write_batch_csv
from peforge.reporters.json_report import write_json
from peforge.reporters.text_report import batch_text_report
from peforge.session import patch_image
from peforge.storage import read_image, save_image

app = typer.Typer(add_completion=False)


def version_callback(value: bool):
    if value:
        try:
            v = metadata.version("peforge")
        except metadata.PackageNotFoundError:
            v = "0.1.0-dev"
        typer.echo(f"peforge version: {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
):
    """
    Inspect and patch the security flags of Windows PE images.
    """
    configure_logging(log_level)


def _fail(msg: str) -> NoReturn:
    typer.secho(msg, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _read(path: str, cfg: AppConfig) -> bytes:
    p = Path(path).expanduser()
    if not p.is_file():
        raise typer.BadParameter(f"File does not exist: {p}")
    return read_image(p, max_bytes=cfg.limits.max_file_size_bytes)


def _flag_request(
    laa: Optional[bool],
    aslr: Optional[bool],
    dep: Optional[bool],
    cfg: Optional[bool],
    high_entropy_va: Optional[bool],
) -> Dict[str, Optional[bool]]:
    return {"laa": laa, "aslr": aslr, "dep": dep, "cfg": cfg, "high_entropy_va": high_entropy_va}


LAA_OPT = typer.Option(None, "--laa/--no-laa", help="Set or clear LARGE_ADDRESS_AWARE.")
ASLR_OPT = typer.Option(None, "--aslr/--no-aslr", help="Set or clear DYNAMIC_BASE.")
DEP_OPT = typer.Option(None, "--dep/--no-dep", help="Set or clear NX_COMPAT.")
CFG_OPT = typer.Option(None, "--cfg/--no-cfg", help="Set or clear GUARD_CF.")
HEVA_OPT = typer.Option(None, "--high-entropy-va/--no-high-entropy-va", help="Set or clear HIGH_ENTROPY_VA.")


@app.command()
def analyze(
    path: str = typer.Argument(..., help="PE file to analyze."),
    as_json: bool = typer.Option(False, "--json", help="Print the full analysis as JSON."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Read-only analysis: headers, sections, imports, exports."""
    cfg = load_config(config)
    try:
        data = _read(path, cfg)
        analysis = analyze_pe_bytes(
            data, name=Path(path).name, path=str(path), limits=cfg.limits.to_pe_limits()
        )
    except (PeError, OSError) as e:
        _fail(f"Error analyzing {path}: {type(e).__name__}: {e}")

    if as_json:
        typer.echo(json.dumps(analysis.model_dump(), indent=2, ensure_ascii=False))
    else:
        render_analysis(analysis)


@app.command()
def patch(
    path: str = typer.Argument(..., help="PE file to patch."),
    laa: Optional[bool] = LAA_OPT,
    aslr: Optional[bool] = ASLR_OPT,
    dep: Optional[bool] = DEP_OPT,
    cfg_flag: Optional[bool] = CFG_OPT,
    high_entropy_va: Optional[bool] = HEVA_OPT,
    no_checksum: bool = typer.Option(False, "--no-checksum", help="Leave the PE checksum untouched."),
    output: str = typer.Option(None, "--output", "-o", help="Write here instead of in place."),
    no_backup: bool = typer.Option(False, "--no-backup", help="Do not back up the file being overwritten."),
    show_diff: bool = typer.Option(False, "--diff", help="Show the byte diff."),
    as_json: bool = typer.Option(False, "--json", help="Print the patch report as JSON."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Set or clear security flags and save the result."""
    cfg = load_config(config)
    flags = _flag_request(laa, aslr, dep, cfg_flag, high_entropy_va)
    target = Path(output).expanduser() if output else Path(path).expanduser()

    try:
        data = _read(path, cfg)
        outcome = patch_image(
            data,
            flags,
            recalc_checksum=cfg.patch.recalc_checksum and not no_checksum,
            include_diff=show_diff or as_json,
            name=Path(path).name,
            path=str(path),
            limits=cfg.limits.to_pe_limits(),
        )
        saved = save_image(target, outcome.data, backup=cfg.patch.create_backup and not no_backup)
    except (PeError, OSError) as e:
        _fail(f"Error patching {path}: {type(e).__name__}: {e}")

    report = outcome.to_report()
    report["saved_path"] = str(saved.saved_path)
    report["backup_path"] = str(saved.backup_path) if saved.backup_path else None

    if as_json:
        typer.echo(json.dumps(report, indent=2, ensure_ascii=False))
    else:
        render_patch(report, report["saved_path"], report["backup_path"])
        if show_diff and outcome.diff is not None:
            render_diff(outcome.diff)

    if not outcome.verified:
        raise typer.Exit(code=1)


@app.command()
def diff(
    original: str = typer.Argument(..., help="Original file."),
    modified: str = typer.Argument(..., help="Modified file."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Byte-level comparison of two files."""
    cfg = load_config(config)
    try:
        old = _read(original, cfg)
        new = _read(modified, cfg)
    except OSError as e:
        _fail(f"Error reading input: {type(e).__name__}: {e}")

    try:
        labels = field_labels(locate_fields(new))
    except PeError:
        labels = {}
    render_diff(diff_bytes(old, new, labels=labels))


@app.command()
def hexdump(
    path: str = typer.Argument(..., help="File to dump."),
    offset: int = typer.Option(0, "--offset", help="Start offset (decimal or 0x-prefixed hex).", parser=lambda s: int(str(s), 0)),
    length: int = typer.Option(DEFAULT_VIEW_LENGTH, "--length", help="Bytes to show (max 4096)."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Hex view of a region of a file."""
    cfg = load_config(config)
    try:
        data = _read(path, cfg)
    except OSError as e:
        _fail(f"Error reading {path}: {type(e).__name__}: {e}")
    render_hex(hex_view(data, offset, length))


@app.command()
def batch(
    directory: str = typer.Argument(..., help="Directory of PE files."),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Recurse into subdirectories."),
    laa: Optional[bool] = LAA_OPT,
    aslr: Optional[bool] = ASLR_OPT,
    dep: Optional[bool] = DEP_OPT,
    cfg_flag: Optional[bool] = CFG_OPT,
    high_entropy_va: Optional[bool] = HEVA_OPT,
    no_checksum: bool = typer.Option(False, "--no-checksum", help="Leave PE checksums untouched."),
    no_backup: bool = typer.Option(False, "--no-backup", help="Do not back up patched files."),
    output_dir: str = typer.Option(None, "--output-dir", help="Write patched copies here."),
    report: str = typer.Option(None, "--report", help="Write a plain-text report."),
    csv_path: str = typer.Option(None, "--csv", help="Write a CSV summary."),
    json_path: str = typer.Option(None, "--json", help="Write the full batch summary as JSON."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Patch every PE file in a directory."""
    cfg = load_config(config)
    d = Path(directory).expanduser().resolve()
    if not d.is_dir():
        raise typer.BadParameter(f"Not a directory: {d}")

    files = find_pe_files(d, recursive=recursive or cfg.batch.recursive, extensions=cfg.batch.extensions)
    if not files:
        typer.echo("No PE files found.")
        return

    typer.echo(f"Found {len(files)} files.")
    options = BatchOptions(
        recalc_checksum=cfg.patch.recalc_checksum and not no_checksum,
        create_backup=cfg.patch.create_backup and not no_backup,
        output_dir=Path(output_dir).expanduser() if output_dir else None,
        max_file_size_bytes=cfg.limits.max_file_size_bytes,
        limits=cfg.limits.to_pe_limits(),
    )
    summary = run_batch(files, _flag_request(laa, aslr, dep, cfg_flag, high_entropy_va), options)

    render_batch(summary)
    if report:
        p = Path(report)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(batch_text_report(summary), encoding="utf-8")
    if csv_path:
        write_batch_csv(Path(csv_path), summary)
    if json_path:
        write_json(Path(json_path), summary.model_dump())

    if summary.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
