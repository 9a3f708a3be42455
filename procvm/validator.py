"""
Validation Pipeline

Runs the offline pipeline over one immutable code image:

    ProcedureTable.build ─► ControlFlowGraph.extract ─► validate_boundaries
                                                    ─► StackEffectValidator

and returns a single first-failure ``ValidationResult``. A passing image is
wrapped in a ``ValidatedProgram``, the only input the executor accepts.

Validation is pure, so results are cached by the SHA-256 of the code and
its jump-destination bitmap together with the stack limit and iteration
factor in force, and independent images can be validated in
parallel with ``validate_batch``.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

import dataclasses
import hashlib
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from procvm.boundary import ProcedureLayout, validate_boundaries
from procvm.cfg import ControlFlowGraph
from procvm.config import ProcVMConfig, get_config
from procvm.decoder import Instruction, JumpDestBitmap, jumpdest_bitmap, to_bitmap
from procvm.hardening import ValidationFailure, ValidationResult
from procvm.observability import Layer, get_logger, timed_operation
from procvm.procedures import ProcedureTable
from procvm.stack_effect import StackAnalysis, StackEffectValidator

logger = get_logger("validator", Layer.VALIDATOR)

JumpDests = Union[JumpDestBitmap, Iterable[int], None]


@dataclass(frozen=True, eq=False)
class ValidatedProgram:
    """A code image that passed every validation rule."""
    code: bytes
    jumpdests: JumpDestBitmap
    table: ProcedureTable
    cfg: ControlFlowGraph
    layout: ProcedureLayout
    stack: StackAnalysis
    digest: str

    @property
    def max_stack_height(self) -> int:
        return self.stack.max_height

    @property
    def instructions(self) -> Mapping[int, Instruction]:
        return MappingProxyType({ins.offset: ins for ins in self.cfg.instructions()})


def code_digest(code: bytes, jumpdests: JumpDestBitmap) -> str:
    h = hashlib.sha256()
    h.update(code)
    h.update(b"\x00jumpdests\x00")
    h.update(jumpdests.to_bytes((jumpdests.bit_length() + 7) // 8 or 1, "big"))
    return h.hexdigest()


# =============================================================================
# RESULT CACHE
# =============================================================================

class ValidationCache:
    """
    Bounded LRU cache of validation results.

    Thread-safe; results are immutable so they may be shared between
    callers.
    """

    def __init__(self, max_size: int = 256):
        self._max_size = max_size
        self._entries: "OrderedDict[str, ValidationResult]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[ValidationResult]:
        with self._lock:
            if key not in self._entries:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return self._entries[key]

    def set(self, key: str, result: ValidationResult) -> None:
        if self._max_size <= 0:
            return
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = result
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "current_size": len(self._entries),
                "max_size": self._max_size,
                "hit_ratio": round(self.hits / total, 4) if total else 0.0,
            }


# =============================================================================
# VALIDATOR
# =============================================================================

class ProgramValidator:
    """
    Validation pipeline service.

    Example:
        validator = ProgramValidator()
        result = validator.validate(code)
        if not result.is_valid:
            print(result.error.rule, result.error.offset)
    """

    def __init__(
        self,
        config: Optional[ProcVMConfig] = None,
        cache: Optional[ValidationCache] = None,
    ):
        self.config = config or get_config()
        if cache is None:
            cache = ValidationCache(self.config.validator.cache_size.get())
        self.cache = cache

    def validate(self, code: bytes, jumpdests: JumpDests = None) -> ValidationResult:
        """
        Validate one code image.

        ``jumpdests`` is the bitmap from the accompanying jump-destination
        analysis, as an int or an iterable of offsets. When omitted it is
        computed with ``jumpdest_bitmap``.
        """
        code = bytes(code)
        bitmap = jumpdest_bitmap(code) if jumpdests is None else to_bitmap(jumpdests)
        digest = code_digest(code, bitmap)
        key = self._cache_key(digest)

        cached = self.cache.get(key)
        if cached is not None:
            return dataclasses.replace(cached, cached=True, details=dict(cached.details))

        start = time.monotonic()
        try:
            program = self._run_pipeline(code, bitmap, digest)
        except ValidationFailure as exc:
            duration_ms = (time.monotonic() - start) * 1000
            logger.warning(
                "Validation failed",
                rule=exc.rule,
                offset=exc.offset,
                digest=digest[:16],
            )
            result = ValidationResult.failure(exc, digest=digest, duration_ms=duration_ms)
        else:
            duration_ms = (time.monotonic() - start) * 1000
            logger.info(
                "Validation passed",
                procedures=len(program.table),
                blocks=len(program.cfg),
                max_stack_height=program.max_stack_height,
                duration_ms=round(duration_ms, 3),
            )
            result = ValidationResult.success(program, digest=digest, duration_ms=duration_ms)

        self.cache.set(key, result)
        return result

    def _cache_key(self, digest: str) -> str:
        # Verdicts depend on the limits in force, not only on the image.
        return (
            f"{digest}:stack_limit={self.config.vm.stack_limit.get()}"
            f":iteration_factor={self.config.validator.iteration_factor.get()}"
        )

    def _run_pipeline(self, code: bytes, bitmap: JumpDestBitmap, digest: str) -> ValidatedProgram:
        table = ProcedureTable.build(code)
        cfg = ControlFlowGraph.extract(code, bitmap, table)
        layout = validate_boundaries(cfg)
        stack = StackEffectValidator(
            cfg,
            table,
            layout,
            stack_limit=self.config.vm.stack_limit.get(),
            iteration_factor=self.config.validator.iteration_factor.get(),
        ).validate()
        return ValidatedProgram(
            code=code,
            jumpdests=bitmap,
            table=table,
            cfg=cfg,
            layout=layout,
            stack=stack,
            digest=digest,
        )

    @timed_operation(logger, "validate_batch")
    def validate_batch(
        self,
        images: Sequence[Union[bytes, Tuple[bytes, JumpDests]]],
        max_workers: Optional[int] = None,
    ) -> List[ValidationResult]:
        """Validate independent images in parallel, preserving input order."""
        workers = max_workers or self.config.validator.max_workers.get()

        def run(item: Union[bytes, Tuple[bytes, JumpDests]]) -> ValidationResult:
            if isinstance(item, tuple):
                return self.validate(*item)
            return self.validate(item)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(run, images))


def validate(code: bytes, jumpdests: JumpDests = None) -> ValidationResult:
    """Validate ``code`` with a fresh, uncached validator."""
    return ProgramValidator(cache=ValidationCache(0)).validate(code, jumpdests)
