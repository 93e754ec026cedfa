"""
jsr_subroutines.diagnostics
===========================

Diagnostic model for rejected methods.

A :class:`Diagnostic` is the serialisable form of a
:class:`~jsr_subroutines.errors.StructuralCodeConstraintError`.  Locations
are bytecode positions (instruction index within the method) rather than
source lines.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple


class DiagnosticSeverity(Enum):
    """cppcheck-compatible severity levels."""
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"


@dataclass(frozen=True)
class BytecodeLocation:
    """An instruction position inside a named method."""
    method: str = ""
    position: int = -1

    def __str__(self) -> str:
        name = self.method or "<method>"
        if self.position < 0:
            return name
        return f"{name}@{self.position}"


@dataclass(frozen=True)
class Diagnostic:
    """
    A single finding about a method's subroutine structure.

    Attributes
    ----------
    error_id   : Unique identifier (e.g. ``"subroutineSharedInstruction"``)
    message    : Human-readable description
    severity   : DiagnosticSeverity
    location   : Primary location (the offending instruction)
    code       : Structured error code string (``"JSR-1001"``)
    secondary  : Related locations (the other instructions involved)
    evidence   : Machine-readable context
    """
    error_id: str
    message: str
    severity: DiagnosticSeverity
    location: BytecodeLocation
    code: str = ""
    secondary: Tuple[BytecodeLocation, ...] = ()
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "method": self.location.method,
            "position": self.location.position,
            "severity": self.severity.value,
            "message": self.message,
            "errorId": self.error_id,
            "code": self.code,
        }
        if self.secondary:
            result["secondary"] = [loc.position for loc in self.secondary]
        if self.evidence:
            result["evidence"] = self.evidence
        return result

    def to_json_str(self) -> str:
        """Single-line JSON string."""
        return json.dumps(self.to_json(), sort_keys=True)

    def to_gcc_format(self) -> str:
        """GCC-style diagnostic string: method@pos: severity: message [id]."""
        return (
            f"{self.location}: {self.severity.value}: {self.message} "
            f"[{self.error_id}]"
        )
