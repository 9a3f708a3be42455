"""
Instruction Set

Opcode assignments, immediate layouts and abstract stack effects for the
procedure-extended stack machine.

Instruction Categories:

    0x00-0x0F: Arithmetic (ADD, SUB, MUL, DIV, SDIV, MOD)
    0x10-0x1F: Comparison and bitwise (LT, GT, SLT, SGT, EQ, ISZERO, AND, OR, XOR, NOT)
    0x50-0x5F: Stack, memory and flow (POP, MLOAD, MSTORE, JUMP, JUMPI, JUMPDEST)
    0x60-0x7F: PUSH1..PUSH32
    0x80-0x8F: DUP1..DUP16
    0x90-0x9F: SWAP1..SWAP16
    0xB0-0xB4: Procedures (CALLPROC, ENTERPROC, LEAVEPROC, RETURNPROC, FRAMEADDRESS)
    0xF0-0xFF: System (RETURN, REVERT, INVALID)

Procedure instruction immediates:

    CALLPROC      name 0x00
    ENTERPROC     name 0x00 in:u16 out:u16 frame_words:u16
    FRAMEADDRESS  offset:i32 (bytes, relative to the frame pointer)

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, FrozenSet, Optional, Tuple


class OpCode(IntEnum):
    """Opcodes understood by the decoder, validator and executor."""

    # Arithmetic (0x00-0x0F)
    STOP = 0x00
    ADD = 0x01
    MUL = 0x02
    SUB = 0x03
    DIV = 0x04
    SDIV = 0x05
    MOD = 0x06

    # Comparison and bitwise (0x10-0x1F)
    LT = 0x10
    GT = 0x11
    SLT = 0x12
    SGT = 0x13
    EQ = 0x14
    ISZERO = 0x15
    AND = 0x16
    OR = 0x17
    XOR = 0x18
    NOT = 0x19

    # Stack, memory and flow (0x50-0x5F)
    POP = 0x50
    MLOAD = 0x51
    MSTORE = 0x52
    MSTORE8 = 0x53
    JUMP = 0x56
    JUMPI = 0x57
    PC = 0x58
    MSIZE = 0x59
    JUMPDEST = 0x5B

    # Push (0x60-0x7F)
    PUSH1 = 0x60
    PUSH2 = 0x61
    PUSH3 = 0x62
    PUSH4 = 0x63
    PUSH5 = 0x64
    PUSH6 = 0x65
    PUSH7 = 0x66
    PUSH8 = 0x67
    PUSH9 = 0x68
    PUSH10 = 0x69
    PUSH11 = 0x6A
    PUSH12 = 0x6B
    PUSH13 = 0x6C
    PUSH14 = 0x6D
    PUSH15 = 0x6E
    PUSH16 = 0x6F
    PUSH17 = 0x70
    PUSH18 = 0x71
    PUSH19 = 0x72
    PUSH20 = 0x73
    PUSH21 = 0x74
    PUSH22 = 0x75
    PUSH23 = 0x76
    PUSH24 = 0x77
    PUSH25 = 0x78
    PUSH26 = 0x79
    PUSH27 = 0x7A
    PUSH28 = 0x7B
    PUSH29 = 0x7C
    PUSH30 = 0x7D
    PUSH31 = 0x7E
    PUSH32 = 0x7F

    # Duplicate (0x80-0x8F)
    DUP1 = 0x80
    DUP2 = 0x81
    DUP3 = 0x82
    DUP4 = 0x83
    DUP5 = 0x84
    DUP6 = 0x85
    DUP7 = 0x86
    DUP8 = 0x87
    DUP9 = 0x88
    DUP10 = 0x89
    DUP11 = 0x8A
    DUP12 = 0x8B
    DUP13 = 0x8C
    DUP14 = 0x8D
    DUP15 = 0x8E
    DUP16 = 0x8F

    # Exchange (0x90-0x9F)
    SWAP1 = 0x90
    SWAP2 = 0x91
    SWAP3 = 0x92
    SWAP4 = 0x93
    SWAP5 = 0x94
    SWAP6 = 0x95
    SWAP7 = 0x96
    SWAP8 = 0x97
    SWAP9 = 0x98
    SWAP10 = 0x99
    SWAP11 = 0x9A
    SWAP12 = 0x9B
    SWAP13 = 0x9C
    SWAP14 = 0x9D
    SWAP15 = 0x9E
    SWAP16 = 0x9F

    # Procedures (0xB0-0xB4)
    CALLPROC = 0xB0
    ENTERPROC = 0xB1
    LEAVEPROC = 0xB2
    RETURNPROC = 0xB3
    FRAMEADDRESS = 0xB4

    # System (0xF0-0xFF)
    RETURN = 0xF3
    REVERT = 0xFD
    INVALID = 0xFE

    @property
    def is_push(self) -> bool:
        return OpCode.PUSH1 <= self <= OpCode.PUSH32

    @property
    def is_dup(self) -> bool:
        return OpCode.DUP1 <= self <= OpCode.DUP16

    @property
    def is_swap(self) -> bool:
        return OpCode.SWAP1 <= self <= OpCode.SWAP16

    @property
    def push_size(self) -> int:
        """Number of immediate bytes for PUSHn, 0 otherwise."""
        return self - OpCode.PUSH1 + 1 if self.is_push else 0


# =============================================================================
# IMMEDIATE LAYOUTS
# =============================================================================

# ENTERPROC: three big-endian u16 fields after the name terminator
ENTERPROC_FIELDS_SIZE = 6

# FRAMEADDRESS: one big-endian signed 32-bit offset
FRAMEADDRESS_IMMEDIATE_SIZE = 4

NAME_TERMINATOR = 0x00


# =============================================================================
# CONTROL FLOW CLASSES
# =============================================================================

# Instructions that end execution of the whole call tree.
TERMINATING: FrozenSet[OpCode] = frozenset({
    OpCode.STOP,
    OpCode.RETURN,
    OpCode.REVERT,
    OpCode.INVALID,
})

# Instructions after which control never falls through to the next offset.
NO_FALLTHROUGH: FrozenSet[OpCode] = TERMINATING | frozenset({
    OpCode.JUMP,
    OpCode.LEAVEPROC,
    OpCode.RETURNPROC,
})

# Instructions that close a basic block.
BLOCK_ENDING: FrozenSet[OpCode] = NO_FALLTHROUGH | frozenset({
    OpCode.JUMPI,
    OpCode.CALLPROC,
    OpCode.ENTERPROC,
})

PROCEDURE_EXITS: FrozenSet[OpCode] = frozenset({
    OpCode.LEAVEPROC,
    OpCode.RETURNPROC,
})

MEMORY_ACCESS: FrozenSet[OpCode] = frozenset({
    OpCode.MLOAD,
    OpCode.MSTORE,
    OpCode.MSTORE8,
    OpCode.RETURN,
    OpCode.REVERT,
})


# =============================================================================
# STACK EFFECTS
# =============================================================================

_FIXED_EFFECTS: Dict[OpCode, Tuple[int, int]] = {
    OpCode.STOP: (0, 0),
    OpCode.ADD: (2, 1),
    OpCode.MUL: (2, 1),
    OpCode.SUB: (2, 1),
    OpCode.DIV: (2, 1),
    OpCode.SDIV: (2, 1),
    OpCode.MOD: (2, 1),
    OpCode.LT: (2, 1),
    OpCode.GT: (2, 1),
    OpCode.SLT: (2, 1),
    OpCode.SGT: (2, 1),
    OpCode.EQ: (2, 1),
    OpCode.ISZERO: (1, 1),
    OpCode.AND: (2, 1),
    OpCode.OR: (2, 1),
    OpCode.XOR: (2, 1),
    OpCode.NOT: (1, 1),
    OpCode.POP: (1, 0),
    OpCode.MLOAD: (1, 1),
    OpCode.MSTORE: (2, 0),
    OpCode.MSTORE8: (2, 0),
    OpCode.JUMP: (1, 0),
    OpCode.JUMPI: (2, 0),
    OpCode.PC: (0, 1),
    OpCode.MSIZE: (0, 1),
    OpCode.JUMPDEST: (0, 0),
    OpCode.ENTERPROC: (0, 0),
    OpCode.LEAVEPROC: (0, 0),
    OpCode.RETURNPROC: (0, 0),
    OpCode.FRAMEADDRESS: (0, 1),
    OpCode.RETURN: (2, 0),
    OpCode.REVERT: (2, 0),
    OpCode.INVALID: (0, 0),
}


def stack_effect(opcode: OpCode) -> Optional[Tuple[int, int]]:
    """
    Return ``(pops, pushes)`` for an opcode.

    CALLPROC has no fixed effect; it depends on the callee signature and
    yields ``None``.
    """
    if opcode == OpCode.CALLPROC:
        return None
    if opcode.is_push:
        return (0, 1)
    if opcode.is_dup:
        depth = opcode - OpCode.DUP1 + 1
        return (depth, depth + 1)
    if opcode.is_swap:
        depth = opcode - OpCode.SWAP1 + 2
        return (depth, depth)
    return _FIXED_EFFECTS[opcode]
