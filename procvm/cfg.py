"""
Control-Flow Extractor

Partitions a code image into basic blocks and records the successors of
each block. Blocks are kept in an arena indexed by start offset; nothing
holds a reference to another block object, only offsets.

A block starts at offset 0, at every jump destination, at every entry
marker and after every instruction that may transfer control. Successor
edges are:

    FALLTHROUGH  the last instruction does not unconditionally transfer
    JUMP         target of JUMP, taken from the PUSH immediately before it
    BRANCH       taken target of JUMPI (its fall-through is FALLTHROUGH)
    CALL_RETURN  continuation after CALLPROC once the callee returns

Calls and returns form a dynamic edge class: a CALLPROC block only records
the callee name, and LEAVEPROC/RETURNPROC blocks have no successors. The
validators resolve them through the procedure table.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from procvm.decoder import Instruction, JumpDestBitmap, is_jumpdest, iter_instructions
from procvm.hardening import InvalidJumpTarget
from procvm.observability import Layer, get_logger
from procvm.opcodes import BLOCK_ENDING, NO_FALLTHROUGH, OpCode
from procvm.procedures import ProcedureSignature, ProcedureTable

logger = get_logger("cfg", Layer.CFG)


class EdgeKind(Enum):
    FALLTHROUGH = "fallthrough"
    JUMP = "jump"
    BRANCH = "branch"
    CALL_RETURN = "call_return"


@dataclass(frozen=True, order=True)
class Edge:
    target: int
    kind: EdgeKind = field(compare=False)


@dataclass
class BasicBlock:
    """Maximal straight-line run of instructions."""
    start: int
    end: int
    instructions: Tuple[Instruction, ...]
    successors: FrozenSet[Edge] = frozenset()
    entry_marker: Optional[ProcedureSignature] = None
    exit_marker: bool = False
    call_name: Optional[bytes] = None
    falls_off_end: bool = False

    @property
    def last(self) -> Instruction:
        return self.instructions[-1]

    def successor_offsets(self) -> List[int]:
        return sorted(edge.target for edge in self.successors)


class ControlFlowGraph:
    """Arena of basic blocks for one code image."""

    def __init__(self, code: bytes, table: ProcedureTable, blocks: Dict[int, BasicBlock]):
        self.code = code
        self.table = table
        self.blocks = blocks
        self._starts = sorted(blocks)
        self._predecessors: Optional[Dict[int, List[Tuple[int, Edge]]]] = None

    @classmethod
    def extract(
        cls,
        code: bytes,
        jumpdests: JumpDestBitmap,
        table: ProcedureTable,
    ) -> "ControlFlowGraph":
        """
        Build the block graph of ``code``.

        Raises:
            InvalidJumpTarget: a JUMP/JUMPI target is not a constant, not a
                jump destination or not the start of a block
        """
        instructions = list(iter_instructions(code))
        boundaries = {ins.offset for ins in instructions}

        leaders: Set[int] = {0} if instructions else set()
        for ins in instructions:
            if ins.opcode == OpCode.ENTERPROC:
                leaders.add(ins.offset)
            if is_jumpdest(jumpdests, ins.offset):
                leaders.add(ins.offset)
            if ins.opcode in BLOCK_ENDING and ins.next_offset in boundaries:
                leaders.add(ins.next_offset)

        runs: List[List[Instruction]] = []
        for ins in instructions:
            if ins.offset in leaders:
                runs.append([])
            runs[-1].append(ins)

        blocks: Dict[int, BasicBlock] = {}
        for run in runs:
            first = run[0]
            blocks[first.offset] = BasicBlock(
                start=first.offset,
                end=run[-1].next_offset,
                instructions=tuple(run),
                entry_marker=(
                    table.by_offset(first.offset)
                    if first.opcode == OpCode.ENTERPROC else None
                ),
            )

        for block in blocks.values():
            cls._link(block, blocks, jumpdests, len(code))

        graph = cls(code, table, blocks)
        logger.debug(
            "Control flow extracted",
            blocks=len(blocks),
            edges=sum(len(b.successors) for b in blocks.values()),
        )
        return graph

    @staticmethod
    def _link(
        block: BasicBlock,
        blocks: Dict[int, BasicBlock],
        jumpdests: JumpDestBitmap,
        code_size: int,
    ) -> None:
        last = block.last
        op = last.opcode
        edges: Set[Edge] = set()

        if op in (OpCode.JUMP, OpCode.JUMPI):
            target = ControlFlowGraph._static_target(block)
            if target not in blocks or not is_jumpdest(jumpdests, target):
                raise InvalidJumpTarget(
                    last.offset, f"{op.name} target {target} is not a block-starting jump destination"
                )
            edges.add(Edge(target, EdgeKind.JUMP if op == OpCode.JUMP else EdgeKind.BRANCH))
        elif op == OpCode.CALLPROC:
            block.call_name = last.name
        elif op == OpCode.LEAVEPROC:
            block.exit_marker = True

        if op not in NO_FALLTHROUGH:
            if last.next_offset >= code_size:
                block.falls_off_end = True
            else:
                kind = EdgeKind.CALL_RETURN if op == OpCode.CALLPROC else EdgeKind.FALLTHROUGH
                edges.add(Edge(last.next_offset, kind))

        block.successors = frozenset(edges)

    @staticmethod
    def _static_target(block: BasicBlock) -> int:
        jump = block.last
        if len(block.instructions) < 2 or not block.instructions[-2].opcode.is_push:
            raise InvalidJumpTarget(
                jump.offset, f"{jump.opcode.name} target is not a constant pushed immediately before it"
            )
        return block.instructions[-2].immediate

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def entry(self) -> Optional[BasicBlock]:
        return self.blocks.get(0)

    def block_at(self, offset: int) -> BasicBlock:
        return self.blocks[offset]

    def block_containing(self, offset: int) -> Optional[BasicBlock]:
        index = bisect.bisect_right(self._starts, offset) - 1
        if index < 0:
            return None
        block = self.blocks[self._starts[index]]
        return block if offset < block.end else None

    def edges(self) -> Iterator[Tuple[BasicBlock, Edge]]:
        """All edges in block order, then target order."""
        for start in self._starts:
            block = self.blocks[start]
            for edge in sorted(block.successors):
                yield block, edge

    def predecessors(self, offset: int) -> List[Tuple[int, Edge]]:
        if self._predecessors is None:
            preds: Dict[int, List[Tuple[int, Edge]]] = {start: [] for start in self._starts}
            for block, edge in self.edges():
                preds[edge.target].append((block.start, edge))
            self._predecessors = preds
        return self._predecessors.get(offset, [])

    def instructions(self) -> Iterator[Instruction]:
        for start in self._starts:
            yield from self.blocks[start].instructions

    def edge_count(self) -> int:
        return sum(len(block.successors) for block in self.blocks.values())

    def __len__(self) -> int:
        return len(self.blocks)
