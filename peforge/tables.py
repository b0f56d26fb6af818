from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from peforge.cursor import ByteCursor
from peforge.errors import diagnostic
from peforge.headers import DIR_EXPORT, DIR_IMPORT
from peforge.model import (
    ExportedFunction,
    ExportTable,
    HeaderSet,
    ImportByName,
    ImportByOrdinal,
    ImportedFunction,
    ImportedLibrary,
    Section,
)
from peforge.rva import resolve_rva

logger = logging.getLogger(__name__)

IMPORT_DESCRIPTOR_SIZE = 20
EXPORT_DIRECTORY_SIZE = 40

ORDINAL_FLAG32 = 0x80000000
ORDINAL_FLAG64 = 0x8000000000000000
HINT_NAME_RVA_MASK = 0x7FFFFFFF


@dataclass(frozen=True)
class PeLimits:
    # Guardrails on top of the bounds-derived loop termination.
    max_sections: int = 96
    max_section_entropy_bytes: int = 10_000_000
    max_import_libraries: int = 256
    max_functions_per_library: int = 2048
    max_total_imported_functions: int = 65536
    max_exports: int = 65536
    max_name_len: int = 512


def _walk_thunks(
    cur: ByteCursor,
    *,
    thunk_off: int,
    is_pe32_plus: bool,
    sections: Sequence[Section],
    dll_name: Optional[str],
    limits: PeLimits,
    budget: int,
) -> Tuple[List[ImportedFunction], List[Dict[str, Any]], int]:
    """
    Walk one thunk array. Returns the functions, the diagnostics and the
    number of entries consumed (the terminator is not counted). `budget` is
    what is left of max_total_imported_functions.
    """
    errors: List[Dict[str, Any]] = []
    funcs: List[ImportedFunction] = []

    entry_size = 8 if is_pe32_plus else 4
    ordinal_flag = ORDINAL_FLAG64 if is_pe32_plus else ORDINAL_FLAG32

    # Every iteration advances by entry_size, so the buffer length bounds the walk.
    idx = 0
    while True:
        ent_off = thunk_off + idx * entry_size
        if not cur.fits(ent_off, entry_size):
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_THUNK_TRUNCATED",
                    "Import thunk table runs past end of file.",
                    dll=dll_name,
                    thunk_off=thunk_off,
                )
            )
            break
        if idx >= budget:
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_TOO_MANY_FUNCTIONS_TOTAL",
                    "Imported function count across all DLLs exceeded "
                    f"max_total_imported_functions={limits.max_total_imported_functions}.",
                    dll=dll_name,
                    max_total_imported_functions=limits.max_total_imported_functions,
                )
            )
            break
        if idx >= limits.max_functions_per_library:
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_TOO_MANY_FUNCTIONS",
                    f"Imported function count exceeded max_functions_per_library={limits.max_functions_per_library}.",
                    dll=dll_name,
                )
            )
            break

        val = cur.read(ent_off, entry_size)
        if val == 0:
            break
        idx += 1

        if val & ordinal_flag:
            funcs.append(ImportByOrdinal(ordinal=val & 0xFFFF))
            continue

        ibn_rva = val & HINT_NAME_RVA_MASK
        ibn_off = resolve_rva(ibn_rva, sections)
        if ibn_off is None or not cur.fits(ibn_off, 3):
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_BY_NAME_UNRESOLVED",
                    "IMAGE_IMPORT_BY_NAME RVA could not be followed.",
                    dll=dll_name,
                    ibn_rva=ibn_rva,
                )
            )
            continue

        funcs.append(
            ImportByName(
                hint=cur.u16(ibn_off),
                name=cur.c_string(ibn_off + 2, max_len=limits.max_name_len) or "",
            )
        )

    return funcs, errors, idx


def walk_imports(
    cur: ByteCursor,
    headers: HeaderSet,
    sections: Sequence[Section],
    limits: PeLimits = PeLimits(),
) -> Tuple[List[ImportedLibrary], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    imports: List[ImportedLibrary] = []

    directory = headers.directory(DIR_IMPORT)
    if directory is None or not directory.present:
        return imports, errors

    base_off = resolve_rva(directory.virtual_address, sections)
    if base_off is None:
        return imports, [
            diagnostic(
                "E_PE_IMPORT_RVA_UNRESOLVED",
                "Import directory RVA could not be mapped to a file offset.",
                import_rva=directory.virtual_address,
            )
        ]

    is_pe32_plus = headers.optional.is_pe32_plus
    desc_off = base_off
    total = 0

    while True:
        if not cur.fits(desc_off, IMPORT_DESCRIPTOR_SIZE):
            # Running into the end of the file terminates the table like a sentinel.
            break
        if len(imports) >= limits.max_import_libraries:
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_TOO_MANY_DLLS",
                    f"Import DLL count exceeded max_import_libraries={limits.max_import_libraries}.",
                    max_import_libraries=limits.max_import_libraries,
                )
            )
            break

        lookup_rva = cur.u32(desc_off + 0)
        name_rva = cur.u32(desc_off + 12)
        first_thunk = cur.u32(desc_off + 16)
        desc_off += IMPORT_DESCRIPTOR_SIZE

        if lookup_rva == 0 and name_rva == 0:
            break

        dll_name: Optional[str] = None
        name_off = resolve_rva(name_rva, sections)
        if name_off is not None:
            dll_name = cur.c_string(name_off, max_len=limits.max_name_len)
        if dll_name is None:
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_DLL_NAME_UNRESOLVED",
                    "Import DLL name RVA could not be followed.",
                    name_rva=name_rva,
                )
            )

        # The address table is read first; the lookup table only when FirstThunk is 0.
        thunk_rva = first_thunk or lookup_rva
        thunk_off = resolve_rva(thunk_rva, sections)
        if thunk_off is None:
            errors.append(
                diagnostic(
                    "E_PE_IMPORT_THUNK_UNRESOLVED",
                    "Import thunk RVA could not be mapped.",
                    thunk_rva=thunk_rva,
                    dll=dll_name,
                )
            )
            funcs: List[ImportedFunction] = []
        else:
            funcs, thunk_errs, consumed = _walk_thunks(
                cur,
                thunk_off=thunk_off,
                is_pe32_plus=is_pe32_plus,
                sections=sections,
                dll_name=dll_name,
                limits=limits,
                budget=limits.max_total_imported_functions - total,
            )
            errors.extend(thunk_errs)
            total += consumed

        imports.append(ImportedLibrary(dll_name=dll_name, functions=funcs))
        if total >= limits.max_total_imported_functions:
            # _walk_thunks has already reported the exhausted budget.
            break

    logger.debug("Walked %d import descriptor(s), %d thunk(s)", len(imports), total)
    return imports, errors


def _export_names(
    cur: ByteCursor,
    *,
    sections: Sequence[Section],
    num_names: int,
    num_slots: int,
    names_rva: int,
    limits: PeLimits,
) -> Tuple[Dict[int, str], List[Dict[str, Any]]]:
    """
    Names for the first NumberOfNames address-table slots: slot i takes the
    string behind name pointer i. Slots whose pointer cannot be followed
    stay unnamed.
    """
    errors: List[Dict[str, Any]] = []
    by_slot: Dict[int, str] = {}
    count = min(num_names, num_slots)
    if not count:
        return by_slot, errors

    names_off = resolve_rva(names_rva, sections)
    if names_off is None:
        errors.append(
            diagnostic(
                "E_PE_EXPORT_NAME_TABLES_UNRESOLVED",
                "Export name pointer table could not be mapped.",
                names_rva=names_rva,
            )
        )
        return by_slot, errors

    for i in range(count):
        ptr_rva = cur.try_read(names_off + i * 4, 4)
        if ptr_rva is None:
            errors.append(diagnostic("E_PE_EXPORT_NAME_TABLES_TRUNCATED", "Export name pointer table truncated.", index=i))
            break
        ptr_off = resolve_rva(ptr_rva, sections)
        name = cur.c_string(ptr_off, max_len=limits.max_name_len) if ptr_off is not None else None
        if name is None:
            errors.append(diagnostic("E_PE_EXPORT_NAME_UNRESOLVED", "Export name RVA could not be followed.", name_rva=ptr_rva))
            continue
        by_slot[i] = name
    return by_slot, errors


def walk_exports(
    cur: ByteCursor,
    headers: HeaderSet,
    sections: Sequence[Section],
    limits: PeLimits = PeLimits(),
) -> Tuple[ExportTable, List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    directory = headers.directory(DIR_EXPORT)
    if directory is None or not directory.present:
        return ExportTable(), errors

    base_off = resolve_rva(directory.virtual_address, sections)
    if base_off is None:
        return ExportTable(), [
            diagnostic(
                "E_PE_EXPORT_RVA_UNRESOLVED",
                "Export directory RVA could not be mapped to a file offset.",
                export_rva=directory.virtual_address,
            )
        ]
    if not cur.fits(base_off, EXPORT_DIRECTORY_SIZE):
        return ExportTable(), [
            diagnostic("E_PE_EXPORT_DIR_TRUNCATED", "Export directory truncated.", export_off=base_off)
        ]

    name_rva = cur.u32(base_off + 12)
    ordinal_base = cur.u32(base_off + 16)
    num_funcs = cur.u32(base_off + 20)
    num_names = cur.u32(base_off + 24)
    functions_rva = cur.u32(base_off + 28)
    names_rva = cur.u32(base_off + 32)

    dll_name: Optional[str] = None
    name_off = resolve_rva(name_rva, sections)
    if name_off is not None:
        dll_name = cur.c_string(name_off, max_len=limits.max_name_len)
    if dll_name is None:
        errors.append(diagnostic("E_PE_EXPORT_DLL_NAME_UNRESOLVED", "Export DLL name RVA could not be followed.", name_rva=name_rva))

    functions: List[ExportedFunction] = []
    funcs_off = resolve_rva(functions_rva, sections)
    if funcs_off is None:
        if num_funcs:
            errors.append(
                diagnostic(
                    "E_PE_EXPORT_ADDRESS_TABLE_UNRESOLVED",
                    "Export address table RVA could not be mapped.",
                    functions_rva=functions_rva,
                )
            )
        return ExportTable(dll_name=dll_name, ordinal_base=ordinal_base), errors

    # Slots are bounded by what the file can actually hold.
    available = max(0, (len(cur) - funcs_off) // 4)
    num_slots = min(num_funcs, available)
    if num_slots < num_funcs:
        errors.append(
            diagnostic(
                "E_PE_EXPORT_ADDRESS_TABLE_TRUNCATED",
                "Export address table runs past end of file.",
                declared=num_funcs,
                readable=num_slots,
            )
        )
    if num_slots > limits.max_exports:
        errors.append(
            diagnostic(
                "E_PE_EXPORT_TOO_MANY_FUNCTIONS",
                f"Export count exceeded max_exports={limits.max_exports}.",
                declared=num_funcs,
            )
        )
        num_slots = limits.max_exports

    names, name_errs = _export_names(
        cur,
        sections=sections,
        num_names=num_names,
        num_slots=num_slots,
        names_rva=names_rva,
        limits=limits,
    )
    errors.extend(name_errs)

    dir_start = directory.virtual_address
    dir_end = directory.virtual_address + directory.size

    for slot in range(num_slots):
        func_rva = cur.u32(funcs_off + slot * 4)
        if func_rva == 0:
            continue

        is_forwarded = dir_start <= func_rva < dir_end
        forwarder: Optional[str] = None
        if is_forwarded:
            fwd_off = resolve_rva(func_rva, sections)
            if fwd_off is not None:
                forwarder = cur.c_string(fwd_off, max_len=limits.max_name_len)
            if forwarder is None:
                errors.append(diagnostic("E_PE_EXPORT_FORWARDER_UNRESOLVED", "Forwarder string could not be read.", rva=func_rva))

        functions.append(
            ExportedFunction(
                ordinal=ordinal_base + slot,
                rva=func_rva,
                name=names.get(slot),
                is_forwarded=is_forwarded,
                forwarder=forwarder,
            )
        )

    logger.debug("Walked %d export(s) from %s", len(functions), dll_name)
    return ExportTable(dll_name=dll_name, ordinal_base=ordinal_base, functions=functions), errors
