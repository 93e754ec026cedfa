"""
jsr_subroutines — JSR/RET Subroutine Analysis for JVM Bytecode Verification
===========================================================================

This package partitions a JVM method body into *subroutines*, the regions
entered by ``jsr``/``jsr_w`` and left by ``ret``, plus the *top level*, and
enforces the structural constraints a bytecode verifier relies on before
it does any type inference.

Core modules
------------
instructions
    Minimal decoded instruction model: opcodes, handles, exception handlers.
listing
    Jasmin-like text listings assembled with a parsimonious grammar.
successors
    Intra-subroutine successor relation.
subroutines
    ``Subroutine`` regions and the validated ``Subroutines`` table.
recursion
    Rejection of recursive (or slot-reusing) nested subroutine calls.
errors
    Structured error codes, structural violations, internal assertions.
diagnostics
    Serialisable diagnostics for rejected methods.

Quick start
-----------
>>> from jsr_subroutines import parse_listing, build_subroutines
>>> method = parse_listing('''
...         jsr Fin
...         return
... Fin:    astore_1
...         ret 1
... ''')
>>> subs = build_subroutines(method)
>>> [s.local_variable for s in subs.subroutines]
[1]

Package layout
--------------
::

    jsr_subroutines/
    ├── __init__.py            ← this file
    ├── instructions.py
    ├── listing.py
    ├── successors.py
    ├── subroutines.py
    ├── recursion.py
    ├── errors.py
    └── diagnostics.py
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__license__ = "GPL-3.0-or-later"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "ErrorCode",
        "ErrorCodes",
        "StructuralCodeConstraintError",
        "SharedInstructionError",
        "MissingRetError",
        "MultipleRetError",
        "RetSlotMismatchError",
        "ProtectedSubroutineError",
        "RecursiveSubroutineCallError",
        "InvalidSubroutineEntryError",
        "AssertionViolatedError",
        "ListingError",
    ],
    "diagnostics": [
        "Diagnostic",
        "DiagnosticSeverity",
        "BytecodeLocation",
    ],
    "instructions": [
        "OpKind",
        "Opcode",
        "OPCODES",
        "opcode",
        "Instruction",
        "InstructionHandle",
        "InstructionList",
        "ExceptionHandler",
        "MethodCode",
    ],
    "listing": [
        "parse_listing",
        "format_listing",
    ],
    "successors": [
        "successors_of",
    ],
    "recursion": [
        "check_no_recursive_calls",
    ],
    "subroutines": [
        "SubroutineConfig",
        "Subroutine",
        "Subroutines",
        "build_subroutines",
        "check_subroutines",
        "subroutine_summary",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"jsr_subroutines: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(
                f"jsr_subroutines.{module_rel_name} does not export '{name}'"
            )
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)
    _log.debug("loaded %s (%d names)", fq_name, len(names))


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names

# ---------------------------------------------------------------------------
# Package-level utilities
# ---------------------------------------------------------------------------

def list_submodules() -> List[str]:
    """Return the names of all submodules in the package."""
    return sorted(_CORE_MODULES)


def package_info() -> dict:
    """Return a dict of metadata about the package, for logging."""
    return {
        "package": __name__,
        "version": __version__,
        "python": sys.version,
        "loaded_submodules": [
            m for m in list_submodules() if f"{__name__}.{m}" in sys.modules
        ],
        "all_exports": list(__all__),
    }


__all__ += ["list_submodules", "package_info", "__version__"]

# ---------------------------------------------------------------------------
# TYPE_CHECKING block
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        ErrorCode as ErrorCode,
        ErrorCodes as ErrorCodes,
        StructuralCodeConstraintError as StructuralCodeConstraintError,
        SharedInstructionError as SharedInstructionError,
        MissingRetError as MissingRetError,
        MultipleRetError as MultipleRetError,
        RetSlotMismatchError as RetSlotMismatchError,
        ProtectedSubroutineError as ProtectedSubroutineError,
        RecursiveSubroutineCallError as RecursiveSubroutineCallError,
        InvalidSubroutineEntryError as InvalidSubroutineEntryError,
        AssertionViolatedError as AssertionViolatedError,
        ListingError as ListingError,
    )
    from .diagnostics import (
        Diagnostic as Diagnostic,
        DiagnosticSeverity as DiagnosticSeverity,
        BytecodeLocation as BytecodeLocation,
    )
    from .instructions import (
        OpKind as OpKind,
        Opcode as Opcode,
        OPCODES as OPCODES,
        opcode as opcode,
        Instruction as Instruction,
        InstructionHandle as InstructionHandle,
        InstructionList as InstructionList,
        ExceptionHandler as ExceptionHandler,
        MethodCode as MethodCode,
    )
    from .listing import (
        parse_listing as parse_listing,
        format_listing as format_listing,
    )
    from .successors import successors_of as successors_of
    from .recursion import check_no_recursive_calls as check_no_recursive_calls
    from .subroutines import (
        SubroutineConfig as SubroutineConfig,
        Subroutine as Subroutine,
        Subroutines as Subroutines,
        build_subroutines as build_subroutines,
        check_subroutines as check_subroutines,
        subroutine_summary as subroutine_summary,
    )
