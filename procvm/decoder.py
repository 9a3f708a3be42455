"""
Instruction Decoder

Turns a raw bytecode image into ``Instruction`` records, one per opcode.
Every instruction is a single tagged record; consumers dispatch on its
``opcode`` field.

The jump-destination scan at the bottom of this module stands in for the
pre-existing single-pass analyzer that accompanies every code image. It is
used when a caller does not supply its own bitmap.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional, Union

from procvm.hardening import TruncatedHeader, UnterminatedName
from procvm.opcodes import (
    ENTERPROC_FIELDS_SIZE,
    FRAMEADDRESS_IMMEDIATE_SIZE,
    NAME_TERMINATOR,
    OpCode,
)

_ENTERPROC_FIELDS = struct.Struct(">HHH")
_FRAME_OFFSET = struct.Struct(">i")

JumpDestBitmap = int


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction."""
    offset: int
    opcode: OpCode
    size: int
    byte: int
    immediate: Optional[int] = None
    name: Optional[bytes] = None
    input_arity: int = 0
    output_arity: int = 0
    frame_size: int = 0

    @property
    def next_offset(self) -> int:
        return self.offset + self.size

    @property
    def mnemonic(self) -> str:
        if self.opcode == OpCode.INVALID and self.byte != OpCode.INVALID:
            return f"UNKNOWN(0x{self.byte:02x})"
        return self.opcode.name

    def operand(self) -> Any:
        """Human-readable operand, used by the disassembler."""
        if self.opcode == OpCode.ENTERPROC:
            return (self.display_name, self.input_arity, self.output_arity, self.frame_size)
        if self.opcode == OpCode.CALLPROC:
            return self.display_name
        return self.immediate

    @property
    def display_name(self) -> Optional[str]:
        if self.name is None:
            return None
        return self.name.decode("utf-8", errors="replace")


def _read_name(code: bytes, offset: int) -> bytes:
    end = code.find(bytes([NAME_TERMINATOR]), offset + 1)
    if end < 0:
        raise UnterminatedName(offset)
    return code[offset + 1:end]


def decode_at(code: bytes, offset: int) -> Instruction:
    """
    Decode the instruction starting at ``offset``.

    Raises:
        UnterminatedName: CALLPROC/ENTERPROC name runs to the end of code
        TruncatedHeader: fixed-size immediate fields run past the end of code
    """
    byte = code[offset]
    try:
        opcode = OpCode(byte)
    except ValueError:
        return Instruction(offset=offset, opcode=OpCode.INVALID, size=1, byte=byte)

    if opcode.is_push:
        # PUSH data past the end of code reads as zero bytes
        size = opcode.push_size
        data = code[offset + 1:offset + 1 + size].ljust(size, b"\x00")
        return Instruction(
            offset=offset,
            opcode=opcode,
            size=1 + size,
            byte=byte,
            immediate=int.from_bytes(data, "big"),
        )

    if opcode == OpCode.FRAMEADDRESS:
        end = offset + 1 + FRAMEADDRESS_IMMEDIATE_SIZE
        if end > len(code):
            raise TruncatedHeader(offset, "FRAMEADDRESS offset runs past the end of code")
        (frame_offset,) = _FRAME_OFFSET.unpack(code[offset + 1:end])
        return Instruction(
            offset=offset,
            opcode=opcode,
            size=1 + FRAMEADDRESS_IMMEDIATE_SIZE,
            byte=byte,
            immediate=frame_offset,
        )

    if opcode == OpCode.CALLPROC:
        name = _read_name(code, offset)
        return Instruction(
            offset=offset,
            opcode=opcode,
            size=len(name) + 2,
            byte=byte,
            name=name,
        )

    if opcode == OpCode.ENTERPROC:
        name = _read_name(code, offset)
        fields_start = offset + len(name) + 2
        fields_end = fields_start + ENTERPROC_FIELDS_SIZE
        if fields_end > len(code):
            raise TruncatedHeader(
                offset,
                f"ENTERPROC header for {name!r} needs {ENTERPROC_FIELDS_SIZE} bytes "
                f"after the name, {len(code) - fields_start} available",
            )
        input_arity, output_arity, frame_size = _ENTERPROC_FIELDS.unpack(
            code[fields_start:fields_end]
        )
        return Instruction(
            offset=offset,
            opcode=opcode,
            size=fields_end - offset,
            byte=byte,
            name=name,
            input_arity=input_arity,
            output_arity=output_arity,
            frame_size=frame_size,
        )

    return Instruction(offset=offset, opcode=opcode, size=1, byte=byte)


def iter_instructions(code: bytes) -> Iterator[Instruction]:
    """Decode ``code`` linearly from offset 0."""
    pc = 0
    while pc < len(code):
        instruction = decode_at(code, pc)
        yield instruction
        pc = instruction.next_offset


def decode_all(code: bytes) -> Dict[int, Instruction]:
    """Decode ``code`` into an offset-indexed map."""
    return {ins.offset: ins for ins in iter_instructions(code)}


# =============================================================================
# JUMP DESTINATIONS
# =============================================================================

def jumpdest_bitmap(code: bytes) -> JumpDestBitmap:
    """
    Scan ``code`` for JUMPDEST opcodes, skipping immediates.

    Bit ``i`` of the result is set when offset ``i`` holds a JUMPDEST that
    is not part of an immediate. The scan stops at an undecodable tail;
    the procedure table builder reports that tail as a validation failure.
    """
    bitmap = 0
    pc = 0
    while pc < len(code):
        byte = code[pc]
        if byte == OpCode.JUMPDEST:
            bitmap |= 1 << pc
        if OpCode.PUSH1 <= byte <= OpCode.PUSH32:
            pc += byte - OpCode.PUSH1 + 2
        elif byte == OpCode.FRAMEADDRESS:
            pc += 1 + FRAMEADDRESS_IMMEDIATE_SIZE
        elif byte in (OpCode.CALLPROC, OpCode.ENTERPROC):
            end = code.find(bytes([NAME_TERMINATOR]), pc + 1)
            if end < 0:
                break
            pc = end + 1
            if byte == OpCode.ENTERPROC:
                pc += ENTERPROC_FIELDS_SIZE
        else:
            pc += 1
    return bitmap


def to_bitmap(jumpdests: Union[JumpDestBitmap, Iterable[int]]) -> JumpDestBitmap:
    """Accept either an integer bitmap or an iterable of offsets."""
    if isinstance(jumpdests, int):
        return jumpdests
    bitmap = 0
    for offset in jumpdests:
        bitmap |= 1 << offset
    return bitmap


def is_jumpdest(bitmap: JumpDestBitmap, offset: int) -> bool:
    return offset >= 0 and bool((bitmap >> offset) & 1)
