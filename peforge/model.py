from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """
    UTC timestamp in ISO-8601 with 'Z' suffix, seconds precision.
    Example: 2026-01-08T17:12:34Z
    """
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class FlagState(_Frozen):
    name: str
    bit: int
    enabled: bool
    description: str = ""


class DosHeader(_Frozen):
    e_lfanew: int


class CoffHeader(_Frozen):
    machine: int
    number_of_sections: int
    time_date_stamp: int
    pointer_to_symbol_table: int
    number_of_symbols: int
    size_of_optional_header: int
    characteristics: int
    characteristics_flags: List[FlagState] = Field(default_factory=list)


class OptionalHeader(_Frozen):
    magic: int
    format: Literal["PE32", "PE32+"]
    linker_version: str
    address_of_entry_point: int
    base_of_code: int
    base_of_data: Optional[int] = None  # PE32 only
    image_base: int
    section_alignment: int
    file_alignment: int
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    dll_characteristics_flags: List[FlagState] = Field(default_factory=list)
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int

    @property
    def is_pe32_plus(self) -> bool:
        return self.format == "PE32+"


class DataDirectory(_Frozen):
    index: int
    name: str
    virtual_address: int
    size: int

    @property
    def present(self) -> bool:
        return self.virtual_address != 0 and self.size != 0


class HeaderSet(_Frozen):
    dos: DosHeader
    coff: CoffHeader
    optional: OptionalHeader
    data_directories: List[DataDirectory] = Field(default_factory=list)
    diagnostics: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def section_table_offset(self) -> int:
        # optional header starts after the 4-byte signature and the 20-byte COFF header
        return self.dos.e_lfanew + 24 + self.coff.size_of_optional_header

    def directory(self, index: int) -> Optional[DataDirectory]:
        for d in self.data_directories:
            if d.index == index:
                return d
        return None


class Section(_Frozen):
    index: int  # 1-based, file order
    name: str
    virtual_address: int
    virtual_size: int
    raw_size: int
    raw_ptr: int
    characteristics: int
    characteristics_flags: List[str] = Field(default_factory=list)
    permissions: str = "---"
    entropy: float = 0.0


class ImportByOrdinal(_Frozen):
    kind: Literal["ordinal"] = "ordinal"
    ordinal: int


class ImportByName(_Frozen):
    kind: Literal["name"] = "name"
    name: str
    hint: int


ImportedFunction = Annotated[Union[ImportByOrdinal, ImportByName], Field(discriminator="kind")]


class ImportedLibrary(_Frozen):
    dll_name: Optional[str]
    functions: List[ImportedFunction] = Field(default_factory=list)

    @property
    def function_count(self) -> int:
        return len(self.functions)


class ExportedFunction(_Frozen):
    ordinal: int
    rva: int
    name: Optional[str] = None
    is_forwarded: bool = False
    forwarder: Optional[str] = None


class ExportTable(_Frozen):
    dll_name: Optional[str] = None
    ordinal_base: int = 0
    functions: List[ExportedFunction] = Field(default_factory=list)


class ContentHashes(_Frozen):
    md5: str
    sha1: str
    sha256: str


class FileInfo(_Frozen):
    name: str = "unknown"
    path: str = ""
    size: int
    size_formatted: str
    hashes: ContentHashes


class Summary(_Frozen):
    format: Literal["PE32", "PE32+"]
    machine: str
    subsystem: str
    is_dll: bool
    is_laa: bool
    is_aslr: bool
    is_dep: bool
    is_cfg: bool
    is_high_entropy_va: bool
    is_dot_net: bool
    entry_point: int
    entry_point_section: Optional[str] = None
    image_base: int
    section_count: int
    import_count: int
    total_imported_functions: int
    export_count: int


class PeAnalysis(_Frozen):
    schema_version: str = "1.0"
    file: FileInfo
    summary: Summary
    headers: HeaderSet
    sections: List[Section] = Field(default_factory=list)
    imports: List[ImportedLibrary] = Field(default_factory=list)
    exports: ExportTable = Field(default_factory=ExportTable)
    diagnostics: List[Dict[str, Any]] = Field(default_factory=list)


class FlagChangeRecord(_Frozen):
    flag: str
    name: str
    old_value: bool
    new_value: bool
    changed: bool


class ChecksumResult(_Frozen):
    old: int
    new: int

    @property
    def changed(self) -> bool:
        return self.old != self.new


class ByteChange(_Frozen):
    offset: int
    old: Optional[int]  # None: past the end of the original
    new: Optional[int]  # None: past the end of the mutated buffer
    label: Optional[str] = None

    @property
    def offset_hex(self) -> str:
        return f"0x{self.offset:08X}"


class DiffRow(_Frozen):
    offset: int
    old_hex: List[str]
    new_hex: List[str]
    old_ascii: str
    new_ascii: str
    changed: List[bool]

    @property
    def has_changes(self) -> bool:
        return any(self.changed)


class DiffBlock(_Frozen):
    start_row: int
    last_row: int
    rows: List[DiffRow] = Field(default_factory=list)
    changed_offsets: List[int] = Field(default_factory=list)


class ByteDiff(_Frozen):
    changes: List[ByteChange] = Field(default_factory=list)
    blocks: List[DiffBlock] = Field(default_factory=list)

    @property
    def total_changed_bytes(self) -> int:
        return len(self.changes)

    @property
    def is_modified(self) -> bool:
        return bool(self.changes)


class HexRow(_Frozen):
    offset: int
    hex: List[str]
    ascii: str


class HexView(_Frozen):
    offset: int
    length: int
    file_size: int
    rows: List[HexRow] = Field(default_factory=list)


class FileResult(BaseModel):
    file: str
    file_name: str
    success: bool = False
    error: Optional[str] = None
    saved_path: Optional[str] = None
    backup_path: Optional[str] = None
    changes: List[FlagChangeRecord] = Field(default_factory=list)
    checksum: Optional[ChecksumResult] = None
    confirmed_flags: Dict[str, bool] = Field(default_factory=dict)
    summary: Optional[Summary] = None


class BatchSummary(BaseModel):
    schema_version: str = "1.0"
    timestamp_utc: str = Field(default_factory=utc_now_iso)
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[FileResult] = Field(default_factory=list)
