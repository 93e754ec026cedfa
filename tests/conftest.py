# tests/conftest.py
"""Shared builders and fixtures for the subroutine analysis tests."""

from typing import Iterable, List, Sequence, Tuple, Union

import pytest

from jsr_subroutines import (
    Instruction,
    InstructionList,
    MethodCode,
    build_subroutines,
    parse_listing,
)


def make_method(
    instructions: Sequence[Union[Instruction, str]],
    handlers: Iterable[Tuple] = (),
    name: str = "m",
) -> MethodCode:
    """Build a MethodCode from instructions (bare mnemonics allowed).

    *handlers* are ``(start, end, handler[, catch_type])`` position tuples.
    """
    il = InstructionList(
        [i if isinstance(i, Instruction) else Instruction(i) for i in instructions]
    )
    method = MethodCode(name, il)
    for h in handlers:
        method.add_handler(*h)
    return method


def positions(handles) -> List[int]:
    """Sorted positions of an iterable of handles."""
    return sorted(h.position for h in handles)


STRAIGHT_LINE = """
        iconst_0
        istore_1
Loop:   iinc 1 1
        iload_1
        bipush 10
        if_icmplt Loop
        return
"""

SINGLE_SUBROUTINE = """
        jsr Sub
        return
Sub:    astore_3
        ret 3
"""

TRY_FINALLY = """
Start:  iconst_1
        istore_1
End:    jsr Fin
        return
Handler:
        astore_2
        jsr Fin
        aload_2
        athrow
Fin:    astore_3
        iinc 1 1
        ret 3
.catch all from Start to End using Handler
"""

NESTED = """
        jsr X
        return
X:      astore_1
        jsr Y
        ret 1
Y:      astore_2
        lstore 4
        ret 2
"""


@pytest.fixture
def straight_line():
    return parse_listing(STRAIGHT_LINE, name="straight")


@pytest.fixture
def single_subroutine():
    return parse_listing(SINGLE_SUBROUTINE, name="single")


@pytest.fixture
def try_finally():
    return parse_listing(TRY_FINALLY, name="tryFinally")


@pytest.fixture
def nested():
    return parse_listing(NESTED, name="nested")


@pytest.fixture
def nested_table(nested):
    return build_subroutines(nested)
