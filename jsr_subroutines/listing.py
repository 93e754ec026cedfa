"""
jsr_subroutines.listing
=======================

Assemble a Jasmin-like text listing into a :class:`MethodCode`.

Example::

            iconst_0
            istore_1
    Start:  jsr Fin            ; call the subroutine
    End:    return
    Fin:    astore_2
            iinc 1 1
            ret 2
    Handler:
            athrow
    .catch all from Start to End using Handler

Rules
-----
- one statement per line, optional ``label:`` prefix, ``;`` starts a comment;
- ``jsr``/``goto``/``if*`` take one target: a label or an absolute position;
- loads, stores and ``ret`` take a slot unless the mnemonic encodes it;
  ``iinc`` takes a slot and an increment;
- ``tableswitch``/``lookupswitch`` take ``key:Label`` pairs and exactly one
  ``default:Label``;
- ``.catch <type|all> from <L1> to <L2> using <H>`` declares a handler
  protecting ``L1`` through ``L2`` inclusive.

Parsing uses a parsimonious PEG grammar; operand interpretation happens
afterwards, once all labels are known.  Every failure is reported as a
:class:`~jsr_subroutines.errors.ListingError` with a 1-based line number.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import Node, NodeVisitor

from .errors import ErrorCodes, ListingError
from .instructions import (
    Instruction,
    InstructionList,
    MethodCode,
    OpKind,
    Opcode,
    opcode,
)

logger = logging.getLogger(__name__)


LISTING_GRAMMAR = Grammar(r'''
    listing     = line*
    line        = hspace statement? hspace comment? "\n"

    statement   = catch / labeled / label / instruction
    labeled     = label hspace instruction
    catch       = ".catch" catch_arg+
    catch_arg   = hspace1 operand
    label       = name ":"
    instruction = name operand_arg*
    operand_arg = hspace1 operand

    operand     = ~r"[^\s;]+"
    name        = ~r"[A-Za-z_$][\w$]*"
    comment     = ~r";[^\n]*"
    hspace      = ~r"[ \t]*"
    hspace1     = ~r"[ \t]+"
''')


# ---------------------------------------------------------------------------
# Parse-tree items
# ---------------------------------------------------------------------------

@dataclass
class _Label:
    name: str
    line: int


@dataclass
class _Op:
    name: str
    operands: List[str]
    line: int


@dataclass
class _Catch:
    operands: List[str]
    line: int


_Item = Union[_Label, _Op, _Catch]


def _line_of(node: Node) -> int:
    return node.full_text.count("\n", 0, node.start) + 1


class _ListingVisitor(NodeVisitor):
    """Turns the parse tree into a flat list of labels, ops and catches."""

    unwrapped_exceptions = (ListingError,)

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_listing(self, node, visited_children) -> List[_Item]:
        items: List[_Item] = []
        for line_items in visited_children:
            items.extend(line_items)
        return items

    def visit_line(self, node, visited_children) -> List[_Item]:
        _, statement, _, _, _ = visited_children
        if not isinstance(statement, list):
            return []
        return statement[0]

    def visit_statement(self, node, visited_children) -> List[_Item]:
        child = visited_children[0]
        return child if isinstance(child, list) else [child]

    def visit_labeled(self, node, visited_children) -> List[_Item]:
        label, _, instruction = visited_children
        return [label, instruction]

    def visit_catch(self, node, visited_children) -> _Catch:
        _, args = visited_children
        return _Catch(list(args), _line_of(node))

    def visit_catch_arg(self, node, visited_children) -> str:
        return visited_children[1]

    def visit_label(self, node, visited_children) -> _Label:
        return _Label(visited_children[0], _line_of(node))

    def visit_instruction(self, node, visited_children) -> _Op:
        name, args = visited_children
        operands = list(args) if isinstance(args, list) else []
        return _Op(name, operands, _line_of(node))

    def visit_operand_arg(self, node, visited_children) -> str:
        return visited_children[1]

    def visit_operand(self, node, visited_children) -> str:
        return node.text

    def visit_name(self, node, visited_children) -> str:
        return node.text


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

_INT_RE = re.compile(r"^[+-]?\d+$")


def _int(token: str, line: int, what: str) -> int:
    if not _INT_RE.match(token):
        raise ListingError(f"expected {what}, got {token!r}", line)
    return int(token)


class _Assembler:
    def __init__(self, items: List[_Item], name: str) -> None:
        self.items = items
        self.name = name
        self.labels: Dict[str, int] = {}
        self.ops: List[_Op] = []
        self.catches: List[_Catch] = []

    def assemble(self) -> MethodCode:
        for item in self.items:
            if isinstance(item, _Label):
                if item.name in self.labels:
                    raise ListingError(f"duplicate label {item.name!r}", item.line)
                self.labels[item.name] = len(self.ops)
            elif isinstance(item, _Op):
                self.ops.append(item)
            else:
                self.catches.append(item)
        if not self.ops:
            raise ListingError("listing contains no instructions")

        instructions = [self._instruction(op) for op in self.ops]
        try:
            method = MethodCode(self.name, InstructionList(instructions))
        except ValueError as exc:
            raise ListingError(str(exc)) from exc

        for catch in self.catches:
            self._handler(method, catch)
        logger.debug(
            "assembled %s: %d instructions, %d handlers",
            self.name, len(method.instructions), len(method.handlers),
        )
        return method

    def _target(self, token: str, line: int) -> int:
        if _INT_RE.match(token):
            return int(token)
        if token not in self.labels:
            raise ListingError(f"undefined label {token!r}", line)
        return self.labels[token]

    def _instruction(self, op: _Op) -> Instruction:
        try:
            code = opcode(op.name)
        except KeyError:
            raise ListingError(f"unknown opcode {op.name!r}", op.line) from None
        try:
            return self._build(code, op)
        except ValueError as exc:
            if isinstance(exc, ListingError):
                raise
            raise ListingError(str(exc), op.line) from exc

    def _build(self, code: Opcode, op: _Op) -> Instruction:
        args = op.operands
        kind = code.kind

        if kind in (OpKind.JSR, OpKind.GOTO, OpKind.BRANCH):
            self._arity(op, 1)
            return Instruction(code, target=self._target(args[0], op.line))

        if kind is OpKind.SWITCH:
            return self._switch(code, op)

        if kind is OpKind.IINC:
            self._arity(op, 2)
            return Instruction(
                code,
                index=_int(args[0], op.line, "a local slot"),
                operands=(_int(args[1], op.line, "an increment"),),
            )

        if code.accesses_local:
            if code.implicit_slot is not None:
                self._arity(op, 0)
                return Instruction(code)
            self._arity(op, 1)
            return Instruction(code, index=_int(args[0], op.line, "a local slot"))

        return Instruction(code, operands=tuple(_constant(a) for a in args))

    def _switch(self, code: Opcode, op: _Op) -> Instruction:
        keys: List[int] = []
        targets: List[int] = []
        default: Optional[int] = None
        for arg in op.operands:
            key, sep, label = arg.partition(":")
            if not sep or not label:
                raise ListingError(f"switch case {arg!r} is not key:Label", op.line)
            if key == "default":
                if default is not None:
                    raise ListingError("switch has more than one default", op.line)
                default = self._target(label, op.line)
                continue
            keys.append(_int(key, op.line, "a switch key"))
            targets.append(self._target(label, op.line))
        if default is None:
            raise ListingError(f"{code.name} needs a default:Label case", op.line)
        return Instruction(code, target=default, targets=targets, keys=keys)

    def _handler(self, method: MethodCode, catch: _Catch) -> None:
        args = catch.operands
        if (
            len(args) != 7
            or args[1] != "from"
            or args[3] != "to"
            or args[5] != "using"
        ):
            raise ListingError(
                ".catch expects '<type|all> from L1 to L2 using H'", catch.line
            )
        catch_type = None if args[0] == "all" else args[0]
        start, end, handler = (
            self._target(args[i], catch.line) for i in (2, 4, 6)
        )
        count = len(method.instructions)
        for pos in (start, end, handler):
            if not 0 <= pos < count:
                raise ListingError(
                    f".catch refers to position {pos}, outside 0..{count - 1}",
                    catch.line,
                )
        try:
            method.add_handler(start, end, handler, catch_type)
        except ValueError as exc:
            raise ListingError(str(exc), catch.line) from exc

    @staticmethod
    def _arity(op: _Op, expected: int) -> None:
        if len(op.operands) != expected:
            raise ListingError(
                f"{op.name} takes {expected} operand(s), got {len(op.operands)}",
                op.line,
            )


def _constant(token: str) -> Any:
    return int(token) if _INT_RE.match(token) else token


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_listing(text: str, name: str = "<method>") -> MethodCode:
    """Assemble *text* into a :class:`MethodCode` called *name*.

    Raises
    ------
    ListingError
        On a syntax error, an unknown mnemonic, a bad operand, an undefined
        or duplicate label, or an empty listing.
    """
    source = text.replace("\r\n", "\n").replace("\r", "\n")
    if not source.endswith("\n"):
        source += "\n"
    try:
        tree = LISTING_GRAMMAR.parse(source)
    except ParseError as exc:
        raise ListingError(
            f"syntax error near {source[exc.pos:exc.pos + 20]!r}",
            exc.line(),
            ErrorCodes.LISTING_SYNTAX,
        ) from exc
    try:
        items = _ListingVisitor().visit(tree)
    except VisitationError as exc:
        raise ListingError(str(exc), code=ErrorCodes.LISTING_SYNTAX) from exc
    return _Assembler(items, name).assemble()


def format_listing(method: MethodCode) -> str:
    """Render *method* back as listing text, labelling targets ``L<pos>``."""
    targeted = set()
    for h in method.instructions:
        ins = h.instruction
        if ins.opcode.has_target:
            targeted.add(ins.target.position)
            targeted.update(t.position for t in ins.targets)
    for eh in method.handlers:
        targeted.update((eh.start.position, eh.end.position, eh.handler.position))

    lines: List[str] = []
    for h in method.instructions:
        ins = h.instruction
        prefix = f"L{h.position}:" if h.position in targeted else ""
        lines.append(f"{prefix:<8}{_format_instruction(ins)}".rstrip())
    for eh in method.handlers:
        lines.append(
            f".catch {eh.catch_type or 'all'} from L{eh.start.position} "
            f"to L{eh.end.position} using L{eh.handler.position}"
        )
    return "\n".join(lines) + "\n"


def _format_instruction(ins: Instruction) -> str:
    parts: List[str] = [ins.name]
    if ins.is_switch:
        keys: Tuple[int, ...] = ins.keys or tuple(range(len(ins.targets)))
        parts.extend(f"{k}:L{t.position}" for k, t in zip(keys, ins.targets))
        parts.append(f"default:L{ins.target.position}")
    elif ins.opcode.has_target:
        parts.append(f"L{ins.target.position}")
    else:
        if ins.index is not None and ins.opcode.implicit_slot is None:
            parts.append(str(ins.index))
        parts.extend(str(op) for op in ins.operands)
    return " ".join(parts)
