"""
Stack-Effect Validator

Abstract interpretation of the data-stack height over the block graph.

Each analysis context is analysed separately: top-level code from offset 0
at height 0, and every procedure body from its entry marker at the height
of its input arity. A procedure's floor is height 0 of its own context, so
a body can consume its arguments but never reach into the caller's stack.

Transfer rules per instruction:

    ordinary      fixed (pops, pushes) from ``opcodes.stack_effect``
    CALLPROC      pops callee input arity, pushes callee output arity
    LEAVEPROC     height must equal the enclosing output arity
    RETURNPROC    same as LEAVEPROC, on an early path

Heights are propagated with an explicit worklist. The first height that
reaches a block is its entry height; any later edge that disagrees is a
conflict. Since a block's entry height is never revised, every block is
processed once, well within the deterministic iteration bound.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, Optional

from procvm.boundary import ProcedureLayout
from procvm.cfg import BasicBlock, ControlFlowGraph
from procvm.hardening import (
    InsufficientArguments,
    StackHeightConflict,
    StackLimitExceeded,
    StackUnderflow,
    UnknownProcedureName,
)
from procvm.observability import Layer, get_logger
from procvm.opcodes import PROCEDURE_EXITS, OpCode, stack_effect
from procvm.procedures import ProcedureSignature, ProcedureTable

logger = get_logger("stack_effect", Layer.STACK)


@dataclass
class ContextAnalysis:
    """Entry heights and peak height for one analysis context."""
    procedure: Optional[ProcedureSignature]
    entry_heights: Dict[int, int] = field(default_factory=dict)
    max_height: int = 0
    iterations: int = 0

    @property
    def label(self) -> str:
        return self.procedure.display_name if self.procedure else "<top-level>"


@dataclass
class StackAnalysis:
    """Result of a successful stack-effect validation."""
    contexts: Dict[Optional[bytes], ContextAnalysis] = field(default_factory=dict)

    @property
    def max_height(self) -> int:
        return max((ctx.max_height for ctx in self.contexts.values()), default=0)

    def entry_height(self, block_start: int) -> Optional[int]:
        for ctx in self.contexts.values():
            if block_start in ctx.entry_heights:
                return ctx.entry_heights[block_start]
        return None


class StackEffectValidator:
    """Worklist data-flow analysis of stack heights."""

    def __init__(
        self,
        cfg: ControlFlowGraph,
        table: ProcedureTable,
        layout: ProcedureLayout,
        stack_limit: int = 1024,
        iteration_factor: int = 2,
    ):
        self.cfg = cfg
        self.table = table
        self.layout = layout
        self.stack_limit = stack_limit
        self.iteration_factor = iteration_factor

    def validate(self) -> StackAnalysis:
        """
        Analyse top-level code and every procedure body.

        Raises:
            StackHeightConflict: heights disagree at a merge point, an exit
                does not yield the declared output arity, or the worklist
                does not settle within its bound
            InsufficientArguments: a call site holds fewer values than the
                callee's input arity
            UnknownProcedureName: a call names no procedure in the table
            StackUnderflow: an instruction pops below the context floor
            StackLimitExceeded: height exceeds the data stack limit
        """
        analysis = StackAnalysis()

        if self.cfg.entry is not None:
            top_blocks = self.layout.top_level_blocks()
            analysis.contexts[None] = self._run(None, 0, 0, top_blocks)

        for sig in self.table:
            body = self.layout.body_of(sig.name)
            analysis.contexts[sig.name] = self._run(
                sig, sig.entry_offset, sig.input_arity, body.blocks
            )

        logger.debug(
            "Stack effects verified",
            contexts=len(analysis.contexts),
            max_height=analysis.max_height,
        )
        return analysis

    def _run(
        self,
        procedure: Optional[ProcedureSignature],
        start: int,
        height: int,
        members: Iterable[int],
    ) -> ContextAnalysis:
        ctx = ContextAnalysis(procedure, max_height=height)
        if height > self.stack_limit:
            raise StackLimitExceeded(
                start, f"input arity {height} exceeds limit {self.stack_limit}"
            )
        members = list(members)
        edge_count = sum(len(self.cfg.blocks[m].successors) for m in members)
        bound = (edge_count + len(members)) * self.iteration_factor

        ctx.entry_heights[start] = height
        worklist: Deque[int] = deque([start])

        while worklist:
            ctx.iterations += 1
            if ctx.iterations > bound:
                raise StackHeightConflict(
                    worklist[0],
                    f"stack heights in {ctx.label} did not settle after {bound} iterations",
                )

            block = self.cfg.blocks[worklist.popleft()]
            exit_height = self._transfer(ctx, block, ctx.entry_heights[block.start])

            for edge in sorted(block.successors):
                known = ctx.entry_heights.get(edge.target)
                if known is None:
                    ctx.entry_heights[edge.target] = exit_height
                    worklist.append(edge.target)
                elif known != exit_height:
                    raise StackHeightConflict(
                        edge.target,
                        f"{edge.kind.value} edge from block {block.start} arrives with "
                        f"height {exit_height}, block was entered with {known}",
                    )

        return ctx

    def _transfer(self, ctx: ContextAnalysis, block: BasicBlock, height: int) -> int:
        for ins in block.instructions:
            if ins.opcode == OpCode.CALLPROC:
                callee = self.table.by_name(ins.name)
                if callee is None:
                    raise UnknownProcedureName(
                        ins.offset, f"no procedure named {ins.display_name!r}"
                    )
                if height < callee.input_arity:
                    raise InsufficientArguments(
                        ins.offset,
                        f"{callee.display_name!r} takes {callee.input_arity} values, "
                        f"{height} available",
                    )
                pops, pushes = callee.input_arity, callee.output_arity
            else:
                if ins.opcode in PROCEDURE_EXITS:
                    expected = ctx.procedure.output_arity
                    if height != expected:
                        raise StackHeightConflict(
                            ins.offset,
                            f"{ins.mnemonic} in {ctx.label} with height {height}, "
                            f"declared output arity is {expected}",
                        )
                pops, pushes = stack_effect(ins.opcode)
                if height < pops:
                    raise StackUnderflow(
                        ins.offset,
                        f"{ins.mnemonic} pops {pops} values, {height} available in {ctx.label}",
                    )

            height = height - pops + pushes
            if height > self.stack_limit:
                raise StackLimitExceeded(
                    ins.offset, f"height {height} exceeds limit {self.stack_limit}"
                )
            ctx.max_height = max(ctx.max_height, height)
        return height


def validate_stack_effects(
    cfg: ControlFlowGraph,
    table: ProcedureTable,
    layout: ProcedureLayout,
    stack_limit: int = 1024,
    iteration_factor: int = 2,
) -> StackAnalysis:
    return StackEffectValidator(
        cfg, table, layout, stack_limit, iteration_factor
    ).validate()
