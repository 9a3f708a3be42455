"""
Control-flow extraction tests.
"""

import pytest

from procvm.cfg import ControlFlowGraph, Edge, EdgeKind
from procvm.decoder import jumpdest_bitmap
from procvm.hardening import InvalidJumpTarget
from procvm.procedures import ProcedureTable
from procvm.vm import Assembler


def extract(code, jumpdests=None):
    if jumpdests is None:
        jumpdests = jumpdest_bitmap(code)
    return ControlFlowGraph.extract(code, jumpdests, ProcedureTable.build(code))


class TestBlockPartition:
    """Tests for block boundaries."""

    def test_procedure_program_blocks(self, add2_program):
        """Blocks split after CALLPROC, STOP and at ENTERPROC."""
        cfg = extract(add2_program)
        assert sorted(cfg.blocks) == [0, 10, 11, 23]

        call_block = cfg.block_at(0)
        assert call_block.call_name == b"add2"
        assert call_block.successors == frozenset({Edge(10, EdgeKind.CALL_RETURN)})

        assert cfg.block_at(10).successors == frozenset()

        entry = cfg.block_at(11)
        assert entry.entry_marker is not None
        assert entry.entry_marker.name == b"add2"
        assert entry.successor_offsets() == [23]

        exit_block = cfg.block_at(23)
        assert exit_block.exit_marker
        assert exit_block.successors == frozenset()
        assert [ins.opcode.name for ins in exit_block.instructions] == ["ADD", "LEAVEPROC"]

    def test_static_jump_edge(self):
        code = Assembler.assemble([
            ("PUSH1", "end"),
            ("JUMP",),
            ("JUMPDEST", "end"),
            ("STOP",),
        ])
        cfg = extract(code)
        assert sorted(cfg.blocks) == [0, 3]
        (edge,) = cfg.block_at(0).successors
        assert edge.target == 3
        assert edge.kind == EdgeKind.JUMP

    def test_conditional_jump_has_two_edges(self):
        code = Assembler.assemble([
            ("PUSH1", 1),
            ("PUSH1", "taken"),
            ("JUMPI",),
            ("STOP",),
            ("JUMPDEST", "taken"),
            ("STOP",),
        ])
        cfg = extract(code)
        kinds = {edge.target: edge.kind for edge in cfg.block_at(0).successors}
        assert kinds == {5: EdgeKind.FALLTHROUGH, 6: EdgeKind.BRANCH}

    def test_fall_off_end(self):
        cfg = extract(Assembler.assemble([("PUSH1", 1)]))
        block = cfg.block_at(0)
        assert block.falls_off_end
        assert block.successors == frozenset()

    def test_empty_code(self):
        cfg = extract(b"")
        assert len(cfg) == 0
        assert cfg.entry is None

    def test_block_containing(self, add2_program):
        cfg = extract(add2_program)
        assert cfg.block_containing(5).start == 0
        assert cfg.block_containing(24).start == 23
        assert cfg.block_containing(25) is None

    def test_predecessors(self):
        code = Assembler.assemble([
            ("PUSH1", 0),
            ("PUSH1", "join"),
            ("JUMPI",),
            ("JUMPDEST", "join"),
            ("STOP",),
        ])
        cfg = extract(code)
        preds = cfg.predecessors(5)
        assert [start for start, _ in preds] == [0]
        assert cfg.edge_count() == 1


class TestJumpTargets:
    """Tests for jump target resolution."""

    def test_target_must_be_pushed_constant(self):
        code = Assembler.assemble([
            ("PUSH1", 4),
            ("DUP1",),
            ("JUMP",),
            ("JUMPDEST",),
        ])
        with pytest.raises(InvalidJumpTarget) as exc_info:
            extract(code)
        assert exc_info.value.offset == 3

    def test_target_must_be_jumpdest(self):
        code = Assembler.assemble([
            ("PUSH1", 4),
            ("JUMP",),
            ("STOP",),
            ("STOP",),
            ("STOP",),
        ])
        with pytest.raises(InvalidJumpTarget) as exc_info:
            extract(code)
        assert exc_info.value.offset == 2

    def test_target_inside_immediate(self):
        """A JUMPDEST byte inside PUSH data is not a block start."""
        code = Assembler.assemble([
            ("PUSH1", 4),
            ("JUMP",),
            ("PUSH1", 0x5B),
            ("STOP",),
        ])
        with pytest.raises(InvalidJumpTarget):
            extract(code)

    def test_supplied_bitmap_inside_immediate(self):
        """A supplied bitmap cannot make the middle of an instruction a target."""
        code = Assembler.assemble([
            ("PUSH1", 4),
            ("JUMP",),
            ("PUSH1", 0x5B),
            ("STOP",),
        ])
        with pytest.raises(InvalidJumpTarget):
            extract(code, jumpdests=1 << 4)

    def test_supplied_bitmap_is_used(self):
        """The supplied bitmap, not the JUMPDEST opcode, defines targets."""
        code = Assembler.assemble([
            ("PUSH1", "dest"),
            ("JUMP",),
            ("JUMPDEST", "dest"),
            ("STOP",),
        ])
        with pytest.raises(InvalidJumpTarget):
            extract(code, jumpdests=0)
