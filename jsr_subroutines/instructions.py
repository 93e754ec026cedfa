"""
jsr_subroutines.instructions
============================

A small, already-decoded model of a JVM method body: the instruction graph
the subroutine analysis walks.

This is *not* a class-file decoder.  Instructions are built either
programmatically or from a text listing (see :mod:`jsr_subroutines.listing`);
every instruction is wrapped in an :class:`InstructionHandle` that carries
its position and its physical ``next`` / ``prev`` links.  Branch targets
point at handles, never at raw offsets, once the list is built.

Public API
----------
    OpKind            - coarse classification of an opcode
    Opcode            - static description of one JVM mnemonic
    OPCODES           - mnemonic -> Opcode for opcodes 0..201
    opcode            - look up an Opcode by mnemonic
    Instruction       - opcode + operands
    InstructionHandle - an instruction at a position in a method
    InstructionList   - ordered, linked handles
    ExceptionHandler  - protected range + handler entry
    MethodCode        - a named method body (instructions + handlers)

Typical usage::

    from jsr_subroutines.instructions import Instruction, InstructionList, MethodCode

    il = InstructionList([
        Instruction("jsr", target=2),
        Instruction("return"),
        Instruction("astore", index=1),
        Instruction("ret", index=1),
    ])
    method = MethodCode("run", il)
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)


# ---------------------------------------------------------------------------
# Opcode kinds
# ---------------------------------------------------------------------------

class OpKind(enum.Enum):
    """Classification of an opcode, as far as subroutine analysis cares."""

    JSR = "jsr"              # jsr, jsr_w
    RET = "ret"
    GOTO = "goto"            # goto, goto_w
    BRANCH = "branch"        # if<cond>, if_icmp<cond>, if_acmp<cond>, ifnull, ifnonnull
    SWITCH = "switch"        # tableswitch, lookupswitch
    RETURN = "return"        # ireturn .. return
    THROW = "throw"          # athrow
    LOAD = "load"            # <t>load, <t>load_<n>
    STORE = "store"          # <t>store, <t>store_<n>
    IINC = "iinc"
    OTHER = "other"


_LOCAL_KINDS = frozenset({OpKind.LOAD, OpKind.STORE, OpKind.IINC, OpKind.RET})
_TARGET_KINDS = frozenset({OpKind.JSR, OpKind.GOTO, OpKind.BRANCH, OpKind.SWITCH})


@dataclass(frozen=True)
class Opcode:
    """Static description of a JVM opcode.

    Attributes
    ----------
    name : str
        The mnemonic (``"astore_1"``).
    code : int
        Numeric opcode.
    kind : OpKind
    implicit_slot : int or None
        Local slot encoded in the mnemonic (``xload_<n>`` / ``xstore_<n>``).
    width : int
        Number of local slots touched (2 for ``long``/``double``), 0 when
        the opcode does not access a local variable.
    type_char : str
        Operand type of a local access (``i l f d a``), empty otherwise.
    """

    name: str
    code: int
    kind: OpKind
    implicit_slot: Optional[int] = None
    width: int = 0
    type_char: str = ""

    @property
    def accesses_local(self) -> bool:
        return self.kind in _LOCAL_KINDS

    @property
    def has_target(self) -> bool:
        return self.kind in _TARGET_KINDS


# Opcodes 0..201 in numeric order.
_MNEMONICS: Tuple[str, ...] = (
    "nop", "aconst_null", "iconst_m1", "iconst_0", "iconst_1", "iconst_2",
    "iconst_3", "iconst_4", "iconst_5", "lconst_0", "lconst_1", "fconst_0",
    "fconst_1", "fconst_2", "dconst_0", "dconst_1", "bipush", "sipush",
    "ldc", "ldc_w", "ldc2_w", "iload", "lload", "fload", "dload", "aload",
    "iload_0", "iload_1", "iload_2", "iload_3", "lload_0", "lload_1",
    "lload_2", "lload_3", "fload_0", "fload_1", "fload_2", "fload_3",
    "dload_0", "dload_1", "dload_2", "dload_3", "aload_0", "aload_1",
    "aload_2", "aload_3", "iaload", "laload", "faload", "daload", "aaload",
    "baload", "caload", "saload", "istore", "lstore", "fstore", "dstore",
    "astore", "istore_0", "istore_1", "istore_2", "istore_3", "lstore_0",
    "lstore_1", "lstore_2", "lstore_3", "fstore_0", "fstore_1", "fstore_2",
    "fstore_3", "dstore_0", "dstore_1", "dstore_2", "dstore_3", "astore_0",
    "astore_1", "astore_2", "astore_3", "iastore", "lastore", "fastore",
    "dastore", "aastore", "bastore", "castore", "sastore", "pop", "pop2",
    "dup", "dup_x1", "dup_x2", "dup2", "dup2_x1", "dup2_x2", "swap",
    "iadd", "ladd", "fadd", "dadd", "isub", "lsub", "fsub", "dsub", "imul",
    "lmul", "fmul", "dmul", "idiv", "ldiv", "fdiv", "ddiv", "irem", "lrem",
    "frem", "drem", "ineg", "lneg", "fneg", "dneg", "ishl", "lshl", "ishr",
    "lshr", "iushr", "lushr", "iand", "land", "ior", "lor", "ixor", "lxor",
    "iinc", "i2l", "i2f", "i2d", "l2i", "l2f", "l2d", "f2i", "f2l", "f2d",
    "d2i", "d2l", "d2f", "i2b", "i2c", "i2s", "lcmp", "fcmpl", "fcmpg",
    "dcmpl", "dcmpg", "ifeq", "ifne", "iflt", "ifge", "ifgt", "ifle",
    "if_icmpeq", "if_icmpne", "if_icmplt", "if_icmpge", "if_icmpgt",
    "if_icmple", "if_acmpeq", "if_acmpne", "goto", "jsr", "ret",
    "tableswitch", "lookupswitch", "ireturn", "lreturn", "freturn",
    "dreturn", "areturn", "return", "getstatic", "putstatic", "getfield",
    "putfield", "invokevirtual", "invokespecial", "invokestatic",
    "invokeinterface", "invokedynamic", "new", "newarray", "anewarray",
    "arraylength", "athrow", "checkcast", "instanceof", "monitorenter",
    "monitorexit", "wide", "multianewarray", "ifnull", "ifnonnull",
    "goto_w", "jsr_w",
)

_LOCAL_RE = re.compile(r"^([ilfda])(load|store)(?:_([0-3]))?$")


def _classify(name: str, code: int) -> Opcode:
    if name in ("jsr", "jsr_w"):
        return Opcode(name, code, OpKind.JSR)
    if name == "ret":
        return Opcode(name, code, OpKind.RET, width=1, type_char="a")
    if name in ("goto", "goto_w"):
        return Opcode(name, code, OpKind.GOTO)
    if name in ("tableswitch", "lookupswitch"):
        return Opcode(name, code, OpKind.SWITCH)
    if name.startswith("if"):
        return Opcode(name, code, OpKind.BRANCH)
    if name.endswith("return"):
        return Opcode(name, code, OpKind.RETURN)
    if name == "athrow":
        return Opcode(name, code, OpKind.THROW)
    if name == "iinc":
        return Opcode(name, code, OpKind.IINC, width=1, type_char="i")
    m = _LOCAL_RE.match(name)
    if m:
        type_char, action, slot = m.groups()
        kind = OpKind.LOAD if action == "load" else OpKind.STORE
        return Opcode(
            name,
            code,
            kind,
            implicit_slot=int(slot) if slot is not None else None,
            width=2 if type_char in "ld" else 1,
            type_char=type_char,
        )
    return Opcode(name, code, OpKind.OTHER)


OPCODES: Dict[str, Opcode] = {
    name: _classify(name, code) for code, name in enumerate(_MNEMONICS)
}


def opcode(name: str) -> Opcode:
    """Return the :class:`Opcode` for *name*; raises ``KeyError`` if unknown."""
    try:
        return OPCODES[name.lower()]
    except KeyError:
        raise KeyError(f"unknown opcode mnemonic {name!r}") from None


# ---------------------------------------------------------------------------
# Instruction
# ---------------------------------------------------------------------------

# A branch target is a handle once the owning InstructionList is built;
# before that it may be given as an integer position.
Target = Union["InstructionHandle", int]


class Instruction:
    """One decoded instruction.

    Attributes
    ----------
    opcode : Opcode
    index : int or None
        Local variable slot for local accesses and ``ret``.
    target : InstructionHandle or None
        Jump target of ``jsr``/``goto``/``if*``; the *default* target of a
        switch.
    targets : tuple[InstructionHandle, ...]
        Case targets of a switch (excluding the default).
    keys : tuple[int, ...]
        Case keys of a switch, parallel to ``targets``.
    operands : tuple
        Any other operands (constants, ``iinc`` increment, symbolic refs).
    """

    __slots__ = ("opcode", "index", "target", "targets", "keys", "operands")

    def __init__(
        self,
        op: Union[Opcode, str],
        index: Optional[int] = None,
        target: Optional[Target] = None,
        targets: Sequence[Target] = (),
        keys: Sequence[int] = (),
        operands: Sequence[Any] = (),
    ) -> None:
        self.opcode: Opcode = op if isinstance(op, Opcode) else opcode(op)
        if index is None:
            index = self.opcode.implicit_slot
        if self.opcode.accesses_local:
            if index is None or index < 0:
                raise ValueError(f"{self.opcode.name} needs a local variable slot")
        elif index is not None:
            raise ValueError(f"{self.opcode.name} does not take a local variable slot")
        if targets and self.opcode.kind is not OpKind.SWITCH:
            raise ValueError(f"{self.opcode.name} does not take case targets")
        if len(keys) not in (0, len(targets)):
            raise ValueError("switch keys and targets differ in length")
        self.index: Optional[int] = index
        self.target: Optional[Target] = target
        self.targets: Tuple[Target, ...] = tuple(targets)
        self.keys: Tuple[int, ...] = tuple(keys)
        self.operands: Tuple[Any, ...] = tuple(operands)

    # ----- classification ---------------------------------------------------

    @property
    def name(self) -> str:
        return self.opcode.name

    @property
    def kind(self) -> OpKind:
        return self.opcode.kind

    @property
    def is_jsr(self) -> bool:
        return self.opcode.kind is OpKind.JSR

    @property
    def is_ret(self) -> bool:
        return self.opcode.kind is OpKind.RET

    @property
    def is_return(self) -> bool:
        return self.opcode.kind is OpKind.RETURN

    @property
    def is_throw(self) -> bool:
        return self.opcode.kind is OpKind.THROW

    @property
    def is_goto(self) -> bool:
        return self.opcode.kind is OpKind.GOTO

    @property
    def is_switch(self) -> bool:
        return self.opcode.kind is OpKind.SWITCH

    @property
    def is_branch(self) -> bool:
        """Conditional branch (two-way)."""
        return self.opcode.kind is OpKind.BRANCH

    @property
    def accesses_local(self) -> bool:
        return self.opcode.accesses_local

    @property
    def is_return_address_store(self) -> bool:
        """``astore``/``astore_<n>``: the only legal first instruction of a subroutine."""
        return self.opcode.kind is OpKind.STORE and self.opcode.type_char == "a"

    def accessed_slots(self) -> Tuple[int, ...]:
        """Local slots read or written; two for ``long``/``double`` values."""
        if not self.accesses_local:
            return ()
        assert self.index is not None
        if self.opcode.width == 2:
            return (self.index, self.index + 1)
        return (self.index,)

    # ----- display ----------------------------------------------------------

    def _target_str(self, t: Optional[Target]) -> str:
        if isinstance(t, InstructionHandle):
            return str(t.position)
        return repr(t)

    def __str__(self) -> str:
        name = self.opcode.name
        if self.opcode.kind is OpKind.SWITCH:
            cases = ", ".join(
                f"{k}:{self._target_str(t)}"
                for k, t in zip(self.keys or range(len(self.targets)), self.targets)
            )
            return f"{name} [{cases}] default:{self._target_str(self.target)}"
        if self.opcode.has_target:
            return f"{name} -> {self._target_str(self.target)}"
        parts = [name]
        if self.index is not None and self.opcode.implicit_slot is None:
            parts.append(str(self.index))
        parts.extend(str(op) for op in self.operands)
        return " ".join(parts)

    def copy(self) -> "Instruction":
        """A fresh instruction with the same opcode and operands."""
        return Instruction(
            self.opcode, self.index, self.target, self.targets, self.keys, self.operands
        )

    def __repr__(self) -> str:
        return f"Instruction({self})"


# ---------------------------------------------------------------------------
# InstructionHandle
# ---------------------------------------------------------------------------

class InstructionHandle:
    """An :class:`Instruction` at a fixed position of a method body.

    Handles compare and hash by identity.

    Attributes
    ----------
    instruction : Instruction
    position : int
        Index of the instruction in its :class:`InstructionList`.
    next : InstructionHandle or None
        Physical successor.
    prev : InstructionHandle or None
        Physical predecessor.
    """

    __slots__ = ("instruction", "position", "next", "prev")

    def __init__(self, instruction: Instruction, position: int) -> None:
        self.instruction = instruction
        self.position = position
        self.next: Optional[InstructionHandle] = None
        self.prev: Optional[InstructionHandle] = None

    def __str__(self) -> str:
        return f"{self.position}: {self.instruction}"

    def __repr__(self) -> str:
        return f"InstructionHandle({self})"


# ---------------------------------------------------------------------------
# InstructionList
# ---------------------------------------------------------------------------

class InstructionList:
    """Ordered, physically linked instruction handles.

    Each instruction is copied into the list, so one sequence of
    :class:`Instruction` objects can back several lists.  Integer targets are
    resolved to this list's handles on the copies; the originals keep their
    integer targets.  The list is not meant to change afterwards.
    """

    def __init__(self, instructions: Iterable[Instruction] = ()) -> None:
        self._handles: List[InstructionHandle] = []
        for ins in instructions:
            handle = InstructionHandle(ins.copy(), len(self._handles))
            if self._handles:
                prev = self._handles[-1]
                prev.next = handle
                handle.prev = prev
            self._handles.append(handle)
        self._resolve_targets()

    def _resolve(self, target: Optional[Target], owner: InstructionHandle) -> InstructionHandle:
        if isinstance(target, InstructionHandle):
            if not self.owns(target):
                raise ValueError(
                    f"instruction {owner.position} targets a handle of another "
                    f"instruction list ({target})"
                )
            return target
        if target is None:
            raise ValueError(f"instruction {owner.position} ({owner.instruction.name}) has no target")
        if not 0 <= target < len(self._handles):
            raise ValueError(
                f"instruction {owner.position} targets position {target}, "
                f"outside 0..{len(self._handles) - 1}"
            )
        return self._handles[target]

    def _resolve_targets(self) -> None:
        for h in self._handles:
            ins = h.instruction
            if ins.opcode.has_target:
                ins.target = self._resolve(ins.target, h)
                ins.targets = tuple(self._resolve(t, h) for t in ins.targets)

    # ----- queries ----------------------------------------------------------

    def owns(self, handle: InstructionHandle) -> bool:
        """True if *handle* is one of this list's own handles."""
        pos = handle.position
        return 0 <= pos < len(self._handles) and self._handles[pos] is handle

    @property
    def handles(self) -> Tuple[InstructionHandle, ...]:
        return tuple(self._handles)

    @property
    def first(self) -> Optional[InstructionHandle]:
        return self._handles[0] if self._handles else None

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[InstructionHandle]:
        return iter(self._handles)

    def __getitem__(self, position: int) -> InstructionHandle:
        return self._handles[position]

    def __repr__(self) -> str:
        return f"InstructionList({len(self._handles)} instructions)"

    def dump(self) -> str:
        """Multi-line listing of the handles, one per line."""
        return "\n".join(str(h) for h in self._handles)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ExceptionHandler:
    """An exception table entry.

    ``start`` and ``end`` are both *inclusive*.  ``catch_type`` is ``None``
    for a catch-all (``finally``) handler.
    """

    start: InstructionHandle
    end: InstructionHandle
    handler: InstructionHandle
    catch_type: Optional[str] = None

    def __post_init__(self) -> None:
        if self.end.position < self.start.position:
            raise ValueError(
                f"handler range ends ({self.end.position}) before it starts "
                f"({self.start.position})"
            )

    def covered(self) -> Iterator[InstructionHandle]:
        """Yield the protected handles from ``start`` through ``end``."""
        h: Optional[InstructionHandle] = self.start
        while h is not None:
            yield h
            if h is self.end:
                break
            h = h.next

    def contains(self, handle: InstructionHandle) -> bool:
        return self.start.position <= handle.position <= self.end.position

    def __str__(self) -> str:
        ctype = self.catch_type or "all"
        return (
            f"catch {ctype} [{self.start.position}..{self.end.position}] "
            f"-> {self.handler.position}"
        )


# ---------------------------------------------------------------------------
# MethodCode
# ---------------------------------------------------------------------------

@dataclass
class MethodCode:
    """The body of one method: its instructions and exception handlers."""

    name: str
    instructions: InstructionList
    handlers: List[ExceptionHandler] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.instructions) == 0:
            raise ValueError(f"method {self.name!r} has no instructions")

    def _handle(self, ref: Target) -> InstructionHandle:
        if isinstance(ref, InstructionHandle):
            if not self.instructions.owns(ref):
                raise ValueError(f"handle {ref} belongs to another instruction list")
            return ref
        return self.instructions[ref]

    def add_handler(
        self,
        start: Target,
        end: Target,
        handler: Target,
        catch_type: Optional[str] = None,
    ) -> ExceptionHandler:
        """Register a handler; positions or handles are accepted."""
        eh = ExceptionHandler(
            self._handle(start), self._handle(end), self._handle(handler), catch_type
        )
        self.handlers.append(eh)
        return eh

    def __repr__(self) -> str:
        return (
            f"MethodCode({self.name!r}, instructions={len(self.instructions)}, "
            f"handlers={len(self.handlers)})"
        )
