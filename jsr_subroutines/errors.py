"""
jsr_subroutines.errors
======================

Error types raised while partitioning a method into subroutines.

Two families are kept strictly apart:

``StructuralCodeConstraintError``
    The method under verification is malformed (an instruction shared by
    two subroutines, a subroutine without a unique ``ret``, a protected
    subroutine, a recursive call, …).  Callers are expected to catch these
    and reject the method.  Every instance carries a structured
    :class:`ErrorCode` and converts to a :class:`~jsr_subroutines.diagnostics.Diagnostic`.

``AssertionViolatedError``
    An internal invariant was broken: a defect in this package or in the
    way it is being called.  Derives from ``AssertionError`` and *not* from
    the structural base, so ``except StructuralCodeConstraintError`` never
    hides a bug.

``ListingError``
    A text listing handed to :func:`jsr_subroutines.listing.parse_listing`
    could not be assembled.

Error codes
-----------
Codes follow the pattern ``JSR-NNNN``:

  - 1000-1999: structural code constraints
  - 2000-2999: listing syntax / assembly
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional, Tuple

if TYPE_CHECKING:
    from .diagnostics import Diagnostic
    from .instructions import ExceptionHandler, InstructionHandle
    from .subroutines import Subroutine


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

class ErrorCode:
    """A structured, comparable error code (``JSR-1001``)."""

    __slots__ = ("prefix", "number", "error_id")

    def __init__(self, prefix: str, number: int, error_id: str) -> None:
        self.prefix = prefix
        self.number = number
        self.error_id = error_id

    @property
    def code(self) -> str:
        return f"{self.prefix}-{self.number:04d}"

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"ErrorCode({self.code!r}, {self.error_id!r})"

    def __hash__(self) -> int:
        return hash((self.prefix, self.number))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ErrorCode):
            return self.prefix == other.prefix and self.number == other.number
        if isinstance(other, str):
            return self.code == other
        return False


class ErrorCodes:
    """Predefined error codes."""

    SHARED_INSTRUCTION = ErrorCode("JSR", 1001, "subroutineSharedInstruction")
    MISSING_RET = ErrorCode("JSR", 1002, "subroutineMissingRet")
    MULTIPLE_RET = ErrorCode("JSR", 1003, "subroutineMultipleRet")
    RET_SLOT_MISMATCH = ErrorCode("JSR", 1004, "subroutineRetSlotMismatch")
    PROTECTED_SUBROUTINE = ErrorCode("JSR", 1005, "subroutineProtected")
    RECURSIVE_CALL = ErrorCode("JSR", 1006, "subroutineRecursiveCall")
    INVALID_ENTRY = ErrorCode("JSR", 1007, "subroutineInvalidEntry")

    LISTING_SYNTAX = ErrorCode("JSR", 2001, "listingSyntax")
    LISTING_ASSEMBLY = ErrorCode("JSR", 2002, "listingAssembly")


# ---------------------------------------------------------------------------
# Structural code constraints
# ---------------------------------------------------------------------------

class StructuralCodeConstraintError(Exception):
    """Base class for malformed JSR/RET structure in a method.

    Attributes
    ----------
    code : ErrorCode
    instructions : tuple[InstructionHandle, ...]
        The offending instruction(s); the first one is the primary location.
    subroutines : tuple[Subroutine, ...]
        The region(s) involved.
    handler : ExceptionHandler or None
        The exception handler involved, if any.
    method : str
        Name of the method under verification (may be empty).
    """

    default_code: ErrorCode = ErrorCodes.SHARED_INSTRUCTION

    def __init__(
        self,
        message: str,
        *,
        instructions: Iterable["InstructionHandle"] = (),
        subroutines: Iterable["Subroutine"] = (),
        handler: Optional["ExceptionHandler"] = None,
        method: str = "",
        code: Optional[ErrorCode] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code: ErrorCode = code or self.default_code
        self.instructions: Tuple["InstructionHandle", ...] = tuple(instructions)
        self.subroutines: Tuple["Subroutine", ...] = tuple(subroutines)
        self.handler = handler
        self.method = method

    @property
    def instruction(self) -> Optional["InstructionHandle"]:
        """The primary offending instruction, or ``None``."""
        return self.instructions[0] if self.instructions else None

    def evidence(self) -> Dict[str, Any]:
        """Machine-readable context for downstream tooling."""
        ev: Dict[str, Any] = {
            "code": self.code.code,
            "instructions": [h.position for h in self.instructions],
            "subroutines": [
                {"region": s.label, "slot": s.local_variable}
                for s in self.subroutines
            ],
        }
        if self.handler is not None:
            ev["handler"] = {
                "start": self.handler.start.position,
                "end": self.handler.end.position,
                "handler": self.handler.handler.position,
                "catch_type": self.handler.catch_type,
            }
        return ev

    def to_diagnostic(self) -> "Diagnostic":
        """Convert to a :class:`~jsr_subroutines.diagnostics.Diagnostic`."""
        from .diagnostics import BytecodeLocation, Diagnostic, DiagnosticSeverity

        locations = [
            BytecodeLocation(self.method, h.position) for h in self.instructions
        ]
        primary = locations[0] if locations else BytecodeLocation(self.method, -1)
        return Diagnostic(
            error_id=self.code.error_id,
            message=self.message,
            severity=DiagnosticSeverity.ERROR,
            location=primary,
            code=self.code.code,
            secondary=tuple(locations[1:]),
            evidence=self.evidence(),
        )

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class SharedInstructionError(StructuralCodeConstraintError):
    """An instruction is reachable from two regions."""

    default_code = ErrorCodes.SHARED_INSTRUCTION


class MissingRetError(StructuralCodeConstraintError):
    """A subroutine has no ``ret`` instruction."""

    default_code = ErrorCodes.MISSING_RET


class MultipleRetError(StructuralCodeConstraintError):
    """A subroutine has more than one ``ret`` instruction."""

    default_code = ErrorCodes.MULTIPLE_RET


class RetSlotMismatchError(StructuralCodeConstraintError):
    """A subroutine's ``ret`` reads a different slot than its entry stores to."""

    default_code = ErrorCodes.RET_SLOT_MISMATCH


class ProtectedSubroutineError(StructuralCodeConstraintError):
    """A subroutine instruction lies in an exception handler's protected range."""

    default_code = ErrorCodes.PROTECTED_SUBROUTINE


class RecursiveSubroutineCallError(StructuralCodeConstraintError):
    """A call path enters a subroutine whose return slot is already in use."""

    default_code = ErrorCodes.RECURSIVE_CALL


class InvalidSubroutineEntryError(StructuralCodeConstraintError):
    """A ``jsr`` targets something that cannot start a subroutine."""

    default_code = ErrorCodes.INVALID_ENTRY


# ---------------------------------------------------------------------------
# Internal consistency
# ---------------------------------------------------------------------------

class AssertionViolatedError(AssertionError):
    """An internal invariant was violated.

    Raised for programming errors only (querying the top-level region for
    its ``jsr``/``ret`` instructions, asking for the subroutine of an
    instruction that is not a subroutine entry, mutating a sealed region).
    """


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

class ListingError(ValueError):
    """A text listing could not be parsed or assembled."""

    def __init__(
        self,
        message: str,
        line: int = 0,
        code: ErrorCode = ErrorCodes.LISTING_ASSEMBLY,
    ) -> None:
        self.message = message
        self.line = line
        self.code = code
        super().__init__(f"line {line}: {message}" if line else message)
