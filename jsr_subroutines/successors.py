"""
jsr_subroutines.successors
==========================

Intra-subroutine successor relation.

:func:`successors_of` answers "which instructions may run right after this
one *without leaving the current region*".  It differs from an ordinary CFG
successor function in two places:

* ``ret``, ``*return`` and ``athrow`` end the region: no successors.
  (``athrow`` may only reach top-level handlers, because subroutines must
  not be protected by exception handlers.)
* ``jsr``/``jsr_w`` continue at their *physical* successor, the return
  point.  The jump target starts a different region and is only reached by
  seeding that region's traversal directly.

A missing physical successor (code falling off the end of the method) is
omitted rather than reported; flow off the end is a different verifier
pass's concern.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .instructions import InstructionHandle, OpKind

_TERMINAL_KINDS = frozenset({OpKind.RET, OpKind.RETURN, OpKind.THROW})


def _present(*handles: Optional[InstructionHandle]) -> Tuple[InstructionHandle, ...]:
    return tuple(h for h in handles if h is not None)


def successors_of(handle: InstructionHandle) -> Tuple[InstructionHandle, ...]:
    """Return the successors of *handle* within its own region.

    For switches the default target comes first, followed by the case
    targets in table order.  Duplicates are not removed.
    """
    ins = handle.instruction
    kind = ins.kind

    if kind in _TERMINAL_KINDS:
        return ()

    if kind is OpKind.JSR:
        return _present(handle.next)

    if kind is OpKind.GOTO:
        return _present(ins.target)

    if kind is OpKind.SWITCH:
        return _present(ins.target, *ins.targets)

    if kind is OpKind.BRANCH:
        return _present(handle.next, ins.target)

    return _present(handle.next)
