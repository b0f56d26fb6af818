from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from peforge.cursor import BytesLike, ByteCursor
from peforge.headers import (
    DIR_COM_DESCRIPTOR,
    IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE,
    IMAGE_DLLCHARACTERISTICS_GUARD_CF,
    IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA,
    IMAGE_DLLCHARACTERISTICS_NX_COMPAT,
    IMAGE_FILE_DLL,
    IMAGE_FILE_LARGE_ADDRESS_AWARE,
    decode_headers,
    machine_name,
    subsystem_name,
)
from peforge.hashes import content_hashes, format_size
from peforge.model import (
    ExportTable,
    FileInfo,
    HeaderSet,
    ImportedLibrary,
    PeAnalysis,
    Section,
    Summary,
)
from peforge.rva import section_for_rva
from peforge.sections import decode_sections
from peforge.tables import PeLimits, walk_exports, walk_imports

logger = logging.getLogger(__name__)

__all__ = ["PeLimits", "analyze_pe_bytes", "build_summary"]


def build_summary(
    headers: HeaderSet,
    sections: Sequence[Section],
    imports: Sequence[ImportedLibrary],
    exports: ExportTable,
) -> Summary:
    chars = headers.coff.characteristics
    dll_chars = headers.optional.dll_characteristics
    aep = headers.optional.address_of_entry_point

    ep_section = section_for_rva(aep, sections) if aep else None
    com = headers.directory(DIR_COM_DESCRIPTOR)

    return Summary(
        format=headers.optional.format,
        machine=machine_name(headers.coff.machine),
        subsystem=subsystem_name(headers.optional.subsystem),
        is_dll=bool(chars & IMAGE_FILE_DLL),
        is_laa=bool(chars & IMAGE_FILE_LARGE_ADDRESS_AWARE),
        is_aslr=bool(dll_chars & IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE),
        is_dep=bool(dll_chars & IMAGE_DLLCHARACTERISTICS_NX_COMPAT),
        is_cfg=bool(dll_chars & IMAGE_DLLCHARACTERISTICS_GUARD_CF),
        is_high_entropy_va=bool(dll_chars & IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA),
        is_dot_net=bool(com is not None and com.present),
        entry_point=aep,
        entry_point_section=ep_section.name if ep_section is not None else None,
        image_base=headers.optional.image_base,
        section_count=len(sections),
        import_count=len(imports),
        total_imported_functions=sum(lib.function_count for lib in imports),
        export_count=len(exports.functions),
    )


def analyze_pe_bytes(
    data: BytesLike,
    *,
    name: str = "unknown",
    path: str = "",
    limits: PeLimits = PeLimits(),
) -> PeAnalysis:
    """
    Full read-only analysis of one PE image.

    InvalidFormat / TruncatedData propagate and no partial analysis is
    returned. Unresolvable references inside the tables are reported in
    `diagnostics` instead.
    """
    cur = ByteCursor(data)
    diagnostics: List[Dict[str, Any]] = []

    headers = decode_headers(cur)
    diagnostics.extend(headers.diagnostics)

    sections, sect_errs = decode_sections(cur, headers, limits)
    diagnostics.extend(sect_errs)

    imports, imp_errs = walk_imports(cur, headers, sections, limits)
    diagnostics.extend(imp_errs)

    exports, exp_errs = walk_exports(cur, headers, sections, limits)
    diagnostics.extend(exp_errs)

    if diagnostics:
        logger.debug("%s: %d diagnostic(s)", name, len(diagnostics))

    return PeAnalysis(
        file=FileInfo(
            name=name,
            path=path,
            size=len(cur),
            size_formatted=format_size(len(cur)),
            hashes=content_hashes(cur.data),
        ),
        summary=build_summary(headers, sections, imports, exports),
        headers=headers,
        sections=sections,
        imports=imports,
        exports=exports,
        diagnostics=diagnostics,
    )
