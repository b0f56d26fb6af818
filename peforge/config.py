from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from peforge.tables import PeLimits


class Limits(BaseModel):
    max_file_size_bytes: int = 200_000_000

    max_sections: int = 96
    max_section_entropy_bytes: int = 10_000_000
    max_import_libraries: int = 256
    max_functions_per_library: int = 2048
    max_total_imported_functions: int = 65536
    max_exports: int = 65536
    max_name_len: int = 512

    def to_pe_limits(self) -> PeLimits:
        return PeLimits(
            max_sections=self.max_sections,
            max_section_entropy_bytes=self.max_section_entropy_bytes,
            max_import_libraries=self.max_import_libraries,
            max_functions_per_library=self.max_functions_per_library,
            max_total_imported_functions=self.max_total_imported_functions,
            max_exports=self.max_exports,
            max_name_len=self.max_name_len,
        )


class PatchCfg(BaseModel):
    recalc_checksum: bool = True
    create_backup: bool = True


class BatchCfg(BaseModel):
    extensions: List[str] = Field(default_factory=lambda: [".exe", ".dll", ".sys", ".ocx"])
    recursive: bool = False


class LoggingCfg(BaseModel):
    level: str = "WARNING"


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    limits: Limits = Limits()
    patch: PatchCfg = PatchCfg()
    batch: BatchCfg = BatchCfg()
    logging: LoggingCfg = LoggingCfg()


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return AppConfig.model_validate(data or {})


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()
