"""
Validation Failures, Runtime Faults and Invariant Enforcement

Two disjoint error taxonomies are defined here and never conflated:

1. Validation failures -- raised by the offline pipeline before any
   instruction executes. Every failure names the rule it violates and the
   code offset where it was detected. Code failing any rule must never run.

2. Runtime faults -- raised while a validated program executes. Genuine
   dynamic conditions (out of resources, recursion depth) end the current
   call tree with an unsuccessful result. ``ValidationInvariantViolated``
   signals that something validation promised did not hold; it is an
   engine-internal fatal error and always propagates.

Security Model:
    - All bytecode is untrusted until the full pipeline has passed
    - Validation is fail-fast: the first violated rule is the result
    - Runtime invariant checks are assertions, not program-visible errors

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from procvm.validator import ValidatedProgram


# =============================================================================
# VALIDATION FAILURES
# =============================================================================

class ValidationFailure(Exception):
    """Base exception for bytecode rejected by the validation pipeline."""

    rule: str = "ValidationFailure"
    default_message: str = "validation failed"

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls.rule = cls.__name__

    def __init__(self, offset: int, message: str = ""):
        self.offset = offset
        self.message = message or self.default_message
        super().__init__(f"{self.rule} at offset {offset}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "offset": self.offset,
            "message": self.message,
        }


class DuplicateProcedureName(ValidationFailure):
    default_message = "procedure name already defined"


class TruncatedHeader(ValidationFailure):
    default_message = "immediate fields run past the end of code"


class UnterminatedName(ValidationFailure):
    default_message = "procedure name has no null terminator"


class InvalidJumpTarget(ValidationFailure):
    default_message = "jump does not target a block start"


class MissingExitMarker(ValidationFailure):
    default_message = "entry marker has no reachable matching exit marker"


class NestedProcedure(ValidationFailure):
    default_message = "entry marker inside another procedure body"


class ExternalEntryJump(ValidationFailure):
    default_message = "edge enters a procedure body from outside"


class DirectEntryMarkerJump(ValidationFailure):
    default_message = "entry marker reached other than by CALLPROC"


class StackHeightConflict(ValidationFailure):
    default_message = "incoming stack heights disagree"


class InsufficientArguments(ValidationFailure):
    default_message = "call site provides fewer values than the callee's input arity"


class UnknownProcedureName(ValidationFailure):
    default_message = "call names a procedure absent from the procedure table"


class StackUnderflow(ValidationFailure):
    default_message = "instruction pops more values than its context holds"


class StackLimitExceeded(ValidationFailure):
    default_message = "abstract stack height exceeds the data stack limit"


class OrphanExitMarker(ValidationFailure):
    default_message = "exit instruction outside any procedure body"


class ProcedureEscapeJump(ValidationFailure):
    default_message = "edge leaves a procedure body other than by returning"


class UnreachableProcedureBlock(ValidationFailure):
    default_message = "block inside a procedure body is unreachable from its entry"


VALIDATION_RULES = tuple(cls.rule for cls in ValidationFailure.__subclasses__())


# =============================================================================
# RUNTIME FAULTS
# =============================================================================

class RuntimeFault(Exception):
    """Fault raised while executing a validated program."""

    def __init__(self, message: str, pc: Optional[int] = None):
        self.message = message
        self.pc = pc
        where = f" at pc {pc}" if pc is not None else ""
        super().__init__(f"{type(self).__name__}{where}: {message}")


class ValidationInvariantViolated(RuntimeFault):
    """A guarantee established by validation was observed false at runtime."""
    pass


class OutOfResources(RuntimeFault):
    """Gas, memory, data stack or step budget exhausted."""
    pass


class RecursionDepthExceeded(RuntimeFault):
    """Return stack is full."""
    pass


class InvalidInstruction(RuntimeFault):
    """The program executed INVALID or an unassigned opcode byte."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """First-failure result of the validation pipeline."""
    is_valid: bool
    error: Optional[ValidationFailure] = None
    program: Optional["ValidatedProgram"] = None
    digest: str = ""
    duration_ms: float = 0.0
    cached: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def raise_if_invalid(self) -> "ValidatedProgram":
        """Raise the recorded failure, or return the validated program."""
        if not self.is_valid:
            raise self.error
        return self.program

    @classmethod
    def success(cls, program: "ValidatedProgram", **kwargs: Any) -> "ValidationResult":
        return cls(is_valid=True, program=program, **kwargs)

    @classmethod
    def failure(cls, error: ValidationFailure, **kwargs: Any) -> "ValidationResult":
        return cls(is_valid=False, error=error, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "valid": self.is_valid,
            "digest": self.digest,
            "duration_ms": round(self.duration_ms, 3),
            "cached": self.cached,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.program is not None:
            data["procedures"] = [sig.to_dict() for sig in self.program.table]
            data["blocks"] = len(self.program.cfg.blocks)
            data["max_stack_height"] = self.program.max_stack_height
        data.update(self.details)
        return data


# =============================================================================
# INVARIANT ENFORCEMENT
# =============================================================================

class InvariantChecker:
    """Runtime assertions for guarantees that validation already proved."""

    @staticmethod
    def require(condition: bool, message: str, pc: Optional[int] = None) -> None:
        if not condition:
            raise ValidationInvariantViolated(message, pc)

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        if value < 0:
            raise ValidationInvariantViolated(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def check_monotonic_increase(field_name: str, old_value: int, new_value: int) -> None:
        if new_value < old_value:
            raise ValidationInvariantViolated(
                f"{field_name} must not decrease: {old_value} -> {new_value}"
            )
