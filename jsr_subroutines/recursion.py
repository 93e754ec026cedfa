"""
jsr_subroutines.recursion
=========================

Check that no subroutine is entered while a subroutine already on the
current call path uses the same return-address slot.

The walk is over the region call graph (``Subroutine.sub_subs()``), not
over instructions.  Starting at the top level with no slots in use, each
callee's ``ret`` slot is pushed before descending and popped afterwards,
so siblings may reuse a slot.  A slot seen twice on one path means the
return address stored first would be overwritten; this rules out direct
recursion, mutual recursion through intermediaries, and plain slot reuse
by a nested subroutine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List

from .errors import RecursiveSubroutineCallError

if TYPE_CHECKING:
    from .subroutines import Subroutine

logger = logging.getLogger(__name__)


def check_no_recursive_calls(top_level: "Subroutine", method: str = "") -> None:
    """Raise :class:`RecursiveSubroutineCallError` on a slot clash.

    Parameters
    ----------
    top_level : Subroutine
        The top-level region of a table whose regions are fully built.
    method : str
        Method name, for diagnostics.
    """
    in_use: Dict[int, "Subroutine"] = {}
    path: List["Subroutine"] = [top_level]

    def visit(sub: "Subroutine") -> None:
        for callee in sorted(sub.sub_subs(), key=_entry_position):
            slot = _ret_slot(callee)
            holder = in_use.get(slot)
            if holder is not None:
                involved = [callee, holder, sub]
                raise RecursiveSubroutineCallError(
                    f"Subroutine with local variable {callee.local_variable}, "
                    f"JSRs {_positions(callee)}, RET {callee.leaving_ret.position} "
                    f"is called by a subroutine which uses the same local variable "
                    f"index as itself; maybe even a recursive call? "
                    f"Call path: {' -> '.join(_label(s) for s in path + [callee])}",
                    instructions=_unique([callee.leaving_ret, holder.leaving_ret]),
                    subroutines=_unique(involved),
                    method=method,
                )
            in_use[slot] = callee
            path.append(callee)
            visit(callee)
            path.pop()
            del in_use[slot]

    visit(top_level)
    logger.debug("no recursive subroutine calls in %s", method or "<method>")


def _ret_slot(sub: "Subroutine") -> int:
    index = sub.leaving_ret.instruction.index
    assert index is not None
    return index


def _entry_position(sub: "Subroutine") -> int:
    return sub.entry.position


def _positions(sub: "Subroutine") -> List[int]:
    return sorted(h.position for h in sub.entering_jsr_instructions)


def _label(sub: "Subroutine") -> str:
    if sub.is_top_level:
        return "top-level"
    return f"sub@{sub.entry.position}"


def _unique(items: List) -> List:
    return list(dict.fromkeys(items))
