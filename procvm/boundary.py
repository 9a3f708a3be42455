"""
Procedure Boundary Validator

Checks that procedure bodies are well nested in the block graph and that
control can enter a body only through CALLPROC. Three passes, each
fail-fast:

1. Layout. Walking blocks in code order, a body opens at its ENTERPROC
   block and closes at the first LEAVEPROC block after it. Every block gets
   an owner: the procedure whose body holds it, or None for top-level code.

2. Edges. No edge may land on an entry marker, and no edge may join blocks
   with different owners. Calls are not edges, so CALLPROC is the only way
   into a body and LEAVEPROC/RETURNPROC the only way out.

3. Reachability. Inside each body, every block and the exit marker must be
   reachable from the entry marker.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple

from procvm.cfg import BasicBlock, ControlFlowGraph
from procvm.hardening import (
    DirectEntryMarkerJump,
    ExternalEntryJump,
    MissingExitMarker,
    NestedProcedure,
    OrphanExitMarker,
    ProcedureEscapeJump,
    UnreachableProcedureBlock,
)
from procvm.observability import Layer, get_logger
from procvm.opcodes import PROCEDURE_EXITS
from procvm.procedures import ProcedureSignature

logger = get_logger("boundary", Layer.BOUNDARY)


@dataclass(frozen=True)
class ProcedureBody:
    """Blocks making up one procedure, in code order."""
    signature: ProcedureSignature
    blocks: Tuple[int, ...]
    exit_block: int

    @property
    def entry_block(self) -> int:
        return self.signature.entry_offset


class ProcedureLayout:
    """Owner of every block plus the body of every procedure."""

    def __init__(
        self,
        owners: Dict[int, Optional[bytes]],
        bodies: Dict[bytes, ProcedureBody],
    ):
        self._owners: Mapping[int, Optional[bytes]] = MappingProxyType(owners)
        self.bodies: Mapping[bytes, ProcedureBody] = MappingProxyType(bodies)

    def owner_of(self, block_start: int) -> Optional[bytes]:
        return self._owners.get(block_start)

    def body_of(self, name: bytes) -> ProcedureBody:
        return self.bodies[name]

    def top_level_blocks(self) -> List[int]:
        return [start for start, owner in self._owners.items() if owner is None]


def _layout(cfg: ControlFlowGraph) -> ProcedureLayout:
    owners: Dict[int, Optional[bytes]] = {}
    bodies: Dict[bytes, ProcedureBody] = {}
    current: Optional[ProcedureSignature] = None
    members: List[int] = []

    for start in sorted(cfg.blocks):
        block = cfg.blocks[start]
        if block.entry_marker is not None:
            if current is not None:
                raise NestedProcedure(
                    start,
                    f"{block.entry_marker.display_name!r} begins inside "
                    f"{current.display_name!r}",
                )
            current = block.entry_marker
            members = []

        owners[start] = current.name if current is not None else None

        if block.last.opcode in PROCEDURE_EXITS and current is None:
            raise OrphanExitMarker(block.last.offset, f"{block.last.mnemonic} outside any procedure")

        if current is not None:
            members.append(start)
            if block.exit_marker:
                bodies[current.name] = ProcedureBody(current, tuple(members), start)
                current = None

    if current is not None:
        raise MissingExitMarker(
            current.entry_offset,
            f"{current.display_name!r} runs to the end of code without LEAVEPROC",
        )

    return ProcedureLayout(owners, bodies)


def _check_edges(cfg: ControlFlowGraph, layout: ProcedureLayout) -> None:
    entry = cfg.entry
    if entry is not None and entry.entry_marker is not None:
        raise DirectEntryMarkerJump(0, "execution would start on an entry marker")

    for block, edge in cfg.edges():
        target = cfg.blocks[edge.target]
        source_owner = layout.owner_of(block.start)
        target_owner = layout.owner_of(target.start)

        if target.entry_marker is not None:
            raise DirectEntryMarkerJump(
                block.last.offset,
                f"{edge.kind.value} edge lands on entry marker of "
                f"{target.entry_marker.display_name!r}",
            )
        if source_owner == target_owner:
            continue
        if target_owner is not None:
            raise ExternalEntryJump(
                block.last.offset,
                f"{edge.kind.value} edge enters {target_owner.decode('utf-8', 'replace')!r} "
                f"at offset {target.start}",
            )
        raise ProcedureEscapeJump(
            block.last.offset,
            f"{edge.kind.value} edge leaves "
            f"{source_owner.decode('utf-8', 'replace')!r} for offset {target.start}",
        )


def _reachable(cfg: ControlFlowGraph, start: int) -> Set[int]:
    seen = {start}
    queue = deque([start])
    while queue:
        block: BasicBlock = cfg.blocks[queue.popleft()]
        for edge in block.successors:
            if edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen


def _check_bodies(cfg: ControlFlowGraph, layout: ProcedureLayout) -> None:
    for body in sorted(layout.bodies.values(), key=lambda b: b.entry_block):
        seen = _reachable(cfg, body.entry_block)
        if body.exit_block not in seen:
            raise MissingExitMarker(
                body.entry_block,
                f"LEAVEPROC of {body.signature.display_name!r} is unreachable from its entry",
            )
        for start in body.blocks:
            if start not in seen:
                raise UnreachableProcedureBlock(
                    start, f"block is dead code inside {body.signature.display_name!r}"
                )


def validate_boundaries(cfg: ControlFlowGraph) -> ProcedureLayout:
    """
    Check procedure nesting over ``cfg`` and return the block ownership.

    Raises:
        NestedProcedure: an entry marker inside an open body
        OrphanExitMarker: LEAVEPROC/RETURNPROC in top-level code
        MissingExitMarker: a body without a reachable LEAVEPROC
        DirectEntryMarkerJump: an edge (or program start) lands on ENTERPROC
        ExternalEntryJump: an edge enters a body from outside it
        ProcedureEscapeJump: an edge leaves a body for top-level code
        UnreachableProcedureBlock: dead block inside a body
    """
    layout = _layout(cfg)
    _check_edges(cfg, layout)
    _check_bodies(cfg, layout)
    logger.debug("Procedure boundaries verified", procedures=len(layout.bodies))
    return layout
