from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveResult:
    saved_path: Path
    backup_path: Optional[Path] = None


def read_image(path: Path, *, max_bytes: int) -> bytes:
    """Whole-file read; images over max_bytes are refused rather than truncated."""
    size = path.stat().st_size
    if size > max_bytes:
        raise OSError(f"File too large ({size} bytes > {max_bytes}): {path}")
    return path.read_bytes()


def backup_path_for(path: Path) -> Path:
    """
    First free name of the form app.backup.exe, app.backup1.exe, app.backup2.exe, ...
    """
    stem, ext = path.stem, path.suffix
    candidate = path.with_name(f"{stem}.backup{ext}")
    n = 1
    while candidate.exists():
        candidate = path.with_name(f"{stem}.backup{n}{ext}")
        n += 1
    return candidate


def save_image(path: Path, data: bytes, *, backup: bool = True) -> SaveResult:
    backup_path: Optional[Path] = None
    if backup and path.exists():
        backup_path = backup_path_for(path)
        shutil.copy2(path, backup_path)
        logger.info("Backup written: %s", backup_path)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info("Saved %s (%d bytes)", path, len(data))
    return SaveResult(saved_path=path, backup_path=backup_path)
