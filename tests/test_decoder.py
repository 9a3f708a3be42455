"""
Decoder, jump-destination scan and procedure table tests.

Run with: pytest tests/test_decoder.py -v
"""

import pytest

from procvm.decoder import decode_all, decode_at, is_jumpdest, jumpdest_bitmap, to_bitmap
from procvm.hardening import DuplicateProcedureName, TruncatedHeader, UnterminatedName
from procvm.opcodes import OpCode, stack_effect
from procvm.procedures import ProcedureTable
from procvm.vm import Assembler


class TestDecoder:
    """Tests for single-instruction decoding."""

    def test_decode_push(self):
        """PUSH immediates are big-endian."""
        ins = decode_at(bytes([OpCode.PUSH2, 0x01, 0x02]), 0)
        assert ins.opcode == OpCode.PUSH2
        assert ins.size == 3
        assert ins.immediate == 0x0102
        assert ins.next_offset == 3

    def test_truncated_push_reads_zero_bytes(self):
        """PUSH data past the end of code is zero padded."""
        ins = decode_at(bytes([OpCode.PUSH2, 0x01]), 0)
        assert ins.immediate == 0x0100
        assert ins.size == 3

    def test_decode_enterproc(self):
        """ENTERPROC carries a name and three u16 fields."""
        code = Assembler.assemble([("ENTERPROC", "add2", 2, 1, 3)])
        ins = decode_at(code, 0)
        assert ins.opcode == OpCode.ENTERPROC
        assert ins.name == b"add2"
        assert (ins.input_arity, ins.output_arity, ins.frame_size) == (2, 1, 3)
        assert ins.size == len(code) == 12
        assert ins.operand() == ("add2", 2, 1, 3)

    def test_decode_callproc(self):
        code = Assembler.assemble([("CALLPROC", "f")])
        ins = decode_at(code, 0)
        assert ins.name == b"f"
        assert ins.size == 3

    def test_decode_negative_frame_offset(self):
        """FRAMEADDRESS offsets are signed."""
        code = Assembler.assemble([("FRAMEADDRESS", -32)])
        ins = decode_at(code, 0)
        assert ins.opcode == OpCode.FRAMEADDRESS
        assert ins.immediate == -32

    def test_unknown_byte_is_invalid(self):
        """Unassigned bytes decode as one-byte INVALID."""
        ins = decode_at(bytes([0x0C]), 0)
        assert ins.opcode == OpCode.INVALID
        assert ins.size == 1
        assert ins.mnemonic == "UNKNOWN(0x0c)"

    def test_unterminated_name(self):
        with pytest.raises(UnterminatedName) as exc_info:
            decode_at(bytes([OpCode.ENTERPROC]) + b"abc", 0)
        assert exc_info.value.offset == 0

    def test_truncated_enterproc_fields(self):
        code = bytes([OpCode.ENTERPROC]) + b"p\x00" + b"\x00\x01"
        with pytest.raises(TruncatedHeader) as exc_info:
            decode_at(code, 0)
        assert exc_info.value.offset == 0
        assert exc_info.value.rule == "TruncatedHeader"

    def test_truncated_frameaddress(self):
        with pytest.raises(TruncatedHeader):
            decode_at(bytes([OpCode.FRAMEADDRESS, 0x00, 0x00]), 0)

    def test_decode_all_offsets(self):
        code = Assembler.assemble([("PUSH1", 1), ("CALLPROC", "f"), ("STOP",)])
        assert sorted(decode_all(code)) == [0, 2, 5]


class TestStackEffects:
    """Tests for the fixed stack effect table."""

    def test_dup_and_swap(self):
        assert stack_effect(OpCode.DUP1) == (1, 2)
        assert stack_effect(OpCode.DUP16) == (16, 17)
        assert stack_effect(OpCode.SWAP1) == (2, 2)
        assert stack_effect(OpCode.SWAP16) == (17, 17)

    def test_callproc_has_no_fixed_effect(self):
        assert stack_effect(OpCode.CALLPROC) is None

    def test_procedure_markers(self):
        assert stack_effect(OpCode.ENTERPROC) == (0, 0)
        assert stack_effect(OpCode.LEAVEPROC) == (0, 0)
        assert stack_effect(OpCode.FRAMEADDRESS) == (0, 1)

    def test_every_opcode_has_an_effect(self):
        for opcode in OpCode:
            if opcode != OpCode.CALLPROC:
                pops, pushes = stack_effect(opcode)
                assert pops >= 0 and pushes >= 0


class TestJumpDestinations:
    """Tests for the jump-destination scan."""

    def test_jumpdest_found(self):
        code = Assembler.assemble([("PUSH1", 1), ("JUMPDEST",), ("STOP",)])
        assert jumpdest_bitmap(code) == 1 << 2

    def test_jumpdest_byte_in_push_data_ignored(self):
        code = Assembler.assemble([("PUSH1", 0x5B), ("STOP",)])
        assert jumpdest_bitmap(code) == 0

    def test_jumpdest_byte_in_procedure_name_ignored(self):
        code = Assembler.assemble([("ENTERPROC", "[", 0, 0, 0), ("JUMPDEST",)])
        assert jumpdest_bitmap(code) == 1 << 9

    def test_to_bitmap(self):
        assert to_bitmap([2, 5]) == 0b100100
        assert to_bitmap(0b1010) == 0b1010
        assert is_jumpdest(0b100, 2)
        assert not is_jumpdest(0b100, 1)
        assert not is_jumpdest(0b100, -1)


class TestProcedureTable:
    """Tests for the procedure table builder."""

    def test_build_indexes_by_name_and_offset(self, add2_program):
        table = ProcedureTable.build(add2_program)
        sig = table.by_name("add2")
        assert sig is not None
        assert sig.entry_offset == 11
        assert (sig.input_arity, sig.output_arity, sig.frame_size) == (2, 1, 0)
        assert table.by_offset(11) is sig
        assert table.by_name(b"add2") is sig
        assert "add2" in table
        assert "nope" not in table
        assert len(table) == 1

    def test_iteration_in_code_order(self):
        code = Assembler.assemble([
            ("STOP",),
            ("ENTERPROC", "zeta", 0, 0, 0),
            ("LEAVEPROC",),
            ("ENTERPROC", "alpha", 0, 0, 0),
            ("LEAVEPROC",),
        ])
        table = ProcedureTable.build(code)
        assert table.names() == ["zeta", "alpha"]

    def test_frame_bytes(self, scratch_program):
        sig = ProcedureTable.build(scratch_program).by_name("scratch")
        assert sig.frame_bytes == 64

    def test_duplicate_name(self):
        """Two procedures named p are rejected regardless of their bodies."""
        code = Assembler.assemble([
            ("ENTERPROC", "p", 0, 0, 0),
            ("LEAVEPROC",),
            ("ENTERPROC", "p", 1, 1, 4),
            ("POP",),
        ])
        with pytest.raises(DuplicateProcedureName) as exc_info:
            ProcedureTable.build(code)
        assert exc_info.value.offset == 10

    def test_unterminated_call_name(self):
        with pytest.raises(UnterminatedName):
            ProcedureTable.build(bytes([OpCode.STOP, OpCode.CALLPROC]) + b"abc")

    def test_empty_code(self):
        table = ProcedureTable.build(b"")
        assert len(table) == 0
        assert list(table) == []
