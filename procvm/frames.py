"""
Frame-Stack Runtime

Per-call-tree state for procedure activations:

    FrameStack   the live frame pointer plus the saved frame pointers of
                 every active procedure. ENTERPROC pushes, LEAVEPROC and
                 RETURNPROC pop. Nothing else touches it.

    ReturnStack  the underlying subroutine primitives: jump_to_subroutine
                 saves a return address, return_from_subroutine restores it.
                 CALLPROC and the procedure exits are layered on top.

Both are owned by exactly one executing call tree and are never shared.

State machine:

    Idle ──ENTERPROC──► InProcedure(depth=1) ──ENTERPROC──► InProcedure(depth=2) ...
      ▲                        │
      └──LEAVEPROC/RETURNPROC──┘

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from procvm.hardening import (
    InvariantChecker,
    RecursionDepthExceeded,
    ValidationInvariantViolated,
)
from procvm.memory import WORD_SIZE


class FrameStack:
    """Frame pointer and saved frame pointers of active procedures."""

    def __init__(self, word_size: int = WORD_SIZE):
        self.word_size = word_size
        self.fp = 0
        self._saved: List[int] = []

    @property
    def depth(self) -> int:
        return len(self._saved)

    @property
    def is_idle(self) -> bool:
        return not self._saved

    def enter(self, frame_size: int) -> int:
        """Allocate ``frame_size`` words below the current frame."""
        InvariantChecker.check_non_negative("frame_size", frame_size)
        self._saved.append(self.fp)
        self.fp -= frame_size * self.word_size
        return self.fp

    def leave(self) -> int:
        """Release the current frame and restore the caller's frame pointer."""
        if not self._saved:
            raise ValidationInvariantViolated("frame stack underflow")
        self.fp = self._saved.pop()
        return self.fp

    def address(self, offset: int) -> int:
        """Frame-relative address ``FP + offset``."""
        return self.fp + offset

    def reset(self) -> None:
        self.fp = 0
        self._saved.clear()

    def snapshot(self) -> Tuple[int, Tuple[int, ...]]:
        return (self.fp, tuple(self._saved))

    def to_dict(self) -> Dict[str, Any]:
        return {"frame_pointer": self.fp, "frame_depth": self.depth}


class ReturnStack:
    """Return addresses for the subroutine call primitives."""

    def __init__(self, max_depth: int = 1023):
        self.max_depth = max_depth
        self._addresses: List[int] = []

    @property
    def depth(self) -> int:
        return len(self._addresses)

    def jump_to_subroutine(self, return_pc: int, target: int) -> int:
        """Save ``return_pc`` and return the new program counter."""
        if len(self._addresses) >= self.max_depth:
            raise RecursionDepthExceeded(
                f"return stack limit of {self.max_depth} reached"
            )
        self._addresses.append(return_pc)
        return target

    def return_from_subroutine(self) -> int:
        """Pop and return the saved return address."""
        if not self._addresses:
            raise ValidationInvariantViolated("return stack underflow")
        return self._addresses.pop()

    def reset(self) -> None:
        self._addresses.clear()
