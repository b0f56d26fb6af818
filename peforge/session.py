from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from peforge.checksum import recalculate_checksum
from peforge.diff import diff_bytes, field_labels
from peforge.errors import PeError
from peforge.hashes import content_hashes
from peforge.headers import locate_fields
from peforge.hexview import hex_view
from peforge.model import ByteDiff, ChecksumResult, ContentHashes, FlagChangeRecord, HexView, PeAnalysis
from peforge.patcher import apply_flag_changes, read_flags
from peforge.pe import analyze_pe_bytes
from peforge.tables import PeLimits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatchOutcome:
    data: bytes
    changes: List[FlagChangeRecord]
    checksum: Optional[ChecksumResult]
    diff: Optional[ByteDiff]
    hashes: ContentHashes
    analysis: PeAnalysis
    confirmed_flags: Dict[str, bool] = field(default_factory=dict)
    verified: bool = True

    def to_report(self) -> Dict[str, Any]:
        """Serializable view (the new buffer itself is left out)."""
        return {
            "changes": [c.model_dump() for c in self.changes],
            "checksum": self.checksum.model_dump() if self.checksum else None,
            "diff": self.diff.model_dump() if self.diff else None,
            "hashes": self.hashes.model_dump(),
            "confirmed_flags": dict(self.confirmed_flags),
            "verified": self.verified,
            "summary": self.analysis.summary.model_dump(),
        }


def patch_image(
    data: bytes,
    flags: Mapping[object, Optional[bool]],
    *,
    recalc_checksum: bool = True,
    baseline: Optional[bytes] = None,
    include_diff: bool = True,
    name: str = "unknown",
    path: str = "",
    limits: PeLimits = PeLimits(),
) -> PatchOutcome:
    """
    patch -> checksum -> diff -> re-parse.

    The re-parse is what reports the resulting flag state; a changed flag
    that does not read back marks the outcome as unverified.
    """
    patch = apply_flag_changes(data, flags)
    new_data = patch.data

    checksum: Optional[ChecksumResult] = None
    if recalc_checksum:
        new_data, checksum = recalculate_checksum(new_data)

    diff: Optional[ByteDiff] = None
    if include_diff:
        original = data if baseline is None else baseline
        diff = diff_bytes(original, new_data, labels=field_labels(locate_fields(new_data)))

    analysis = analyze_pe_bytes(new_data, name=name, path=path, limits=limits)
    confirmed = read_flags(analysis.headers)

    verified = True
    for rec in patch.changes:
        if confirmed.get(rec.flag) != rec.new_value:
            logger.error("%s did not read back as %s after patching", rec.name, rec.new_value)
            verified = False

    return PatchOutcome(
        data=new_data,
        changes=patch.changes,
        checksum=checksum,
        diff=diff,
        hashes=content_hashes(new_data),
        analysis=analysis,
        confirmed_flags=confirmed,
        verified=verified,
    )


class PeSession:
    """
    Editing state for one file: the untouched original image and the
    current image, replaced wholesale by every patch.
    """

    def __init__(self, data: bytes, *, name: str = "unknown", path: str = "", limits: PeLimits = PeLimits()):
        self.original = bytes(data)
        self.current = self.original
        self.name = name
        self.path = path
        self.limits = limits

    @classmethod
    def open(cls, path: Path, *, limits: PeLimits = PeLimits()) -> "PeSession":
        path = Path(path)
        return cls(path.read_bytes(), name=path.name, path=str(path), limits=limits)

    @property
    def is_modified(self) -> bool:
        return self.current != self.original

    def analyze(self) -> PeAnalysis:
        return analyze_pe_bytes(self.current, name=self.name, path=self.path, limits=self.limits)

    def apply_patch(
        self,
        flags: Mapping[object, Optional[bool]],
        *,
        recalc_checksum: bool = True,
        include_diff: bool = True,
    ) -> PatchOutcome:
        outcome = patch_image(
            self.current,
            flags,
            recalc_checksum=recalc_checksum,
            baseline=self.original,
            include_diff=include_diff,
            name=self.name,
            path=self.path,
            limits=self.limits,
        )
        # Only replaced once the whole pipeline succeeded.
        self.current = outcome.data
        return outcome

    def reset(self) -> PeAnalysis:
        self.current = self.original
        return self.analyze()

    def diff(self) -> ByteDiff:
        try:
            labels = field_labels(locate_fields(self.current))
        except PeError:
            labels = {}
        return diff_bytes(self.original, self.current, labels=labels)

    def hex_view(self, offset: int = 0, length: Optional[int] = None) -> HexView:
        return hex_view(self.current, offset, length)
