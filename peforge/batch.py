from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from peforge.errors import PeError
from peforge.model import BatchSummary, FileResult
from peforge.session import patch_image
from peforge.storage import read_image, save_image
from peforge.tables import PeLimits

logger = logging.getLogger(__name__)

PE_EXTENSIONS = (".exe", ".dll", ".sys", ".ocx")


@dataclass(frozen=True)
class BatchOptions:
    recalc_checksum: bool = True
    create_backup: bool = True
    output_dir: Optional[Path] = None
    max_file_size_bytes: int = 200_000_000
    limits: PeLimits = field(default_factory=PeLimits)


def find_pe_files(
    directory: Path,
    *,
    recursive: bool = False,
    extensions: Iterable[str] = PE_EXTENSIONS,
) -> List[Path]:
    """Candidate PE files by extension, sorted; hidden files are skipped."""
    exts = {e.lower() for e in extensions}
    pattern = "**/*" if recursive else "*"
    return sorted(
        p
        for p in Path(directory).glob(pattern)
        if p.is_file() and not p.name.startswith(".") and p.suffix.lower() in exts
    )


def process_file(
    path: Path,
    flags: Mapping[object, Optional[bool]],
    options: BatchOptions = BatchOptions(),
) -> FileResult:
    result = FileResult(file=str(path), file_name=path.name)
    try:
        data = read_image(path, max_bytes=options.max_file_size_bytes)
        outcome = patch_image(
            data,
            flags,
            recalc_checksum=options.recalc_checksum,
            include_diff=False,
            name=path.name,
            path=str(path),
            limits=options.limits,
        )

        target = path
        if options.output_dir is not None:
            target = Path(options.output_dir) / path.name
            if target.resolve() != path.resolve():
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)

        saved = save_image(target, outcome.data, backup=options.create_backup)

        result.success = outcome.verified
        if not outcome.verified:
            result.error = "Flag changes did not read back after re-parse"
        result.saved_path = str(saved.saved_path)
        result.backup_path = str(saved.backup_path) if saved.backup_path else None
        result.changes = outcome.changes
        result.checksum = outcome.checksum
        result.confirmed_flags = outcome.confirmed_flags
        result.summary = outcome.analysis.summary
    except (PeError, OSError) as e:
        logger.warning("Failed to process %s: %s", path, e)
        result.success = False
        result.error = f"{type(e).__name__}: {e}"
    return result


def run_batch(
    paths: Sequence[Path],
    flags: Mapping[object, Optional[bool]],
    options: BatchOptions = BatchOptions(),
) -> BatchSummary:
    """
    Patch every path independently. A file that fails is recorded and the
    batch moves on.
    """
    logger.info("Starting batch of %d file(s)", len(paths))
    results = [process_file(Path(p), flags, options) for p in paths]
    succeeded = sum(1 for r in results if r.success)
    logger.info("Batch complete: %d ok, %d failed", succeeded, len(results) - succeeded)
    return BatchSummary(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )
