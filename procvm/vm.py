"""
Instruction Executor

Executes validated programs. One ``VMState`` is created per top-level
invocation and owns everything mutable in the call tree: data stack,
signed memory, frame stack and return stack.

Instruction set overview (procedure extension):

    CALLPROC name          resolve ``name`` in the procedure table, save the
                           return address and jump to the entry marker
    ENTERPROC name i o f   push FP, FP -= f * 32
    LEAVEPROC              pop FP, return to the caller
    RETURNPROC             early return; same transition as LEAVEPROC
    FRAMEADDRESS off       push FP + off (no memory access)

Everything validation proved (stack heights, call targets, frame
discipline) is re-checked only as an invariant. A failed check raises
``ValidationInvariantViolated``, which is never turned into an ordinary
unsuccessful result.

Example:
    code = Assembler.assemble([
        ("PUSH1", 3),
        ("PUSH1", 4),
        ("CALLPROC", "add2"),
        ("STOP",),
        ("ENTERPROC", "add2", 2, 1, 0),
        ("ADD",),
        ("LEAVEPROC",),
    ])
    result = ProcedureVM().run(code)
    assert result.stack == [7]

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from procvm.config import ProcVMConfig, get_config
from procvm.decoder import Instruction, iter_instructions
from procvm.frames import FrameStack, ReturnStack
from procvm.gas import MemoryGasMeter
from procvm.hardening import (
    InvalidInstruction,
    InvariantChecker,
    OutOfResources,
    RuntimeFault,
    ValidationInvariantViolated,
)
from procvm.memory import WORD_SIZE, CostCallback, MemoryExtents, SignedMemory
from procvm.observability import Layer, get_logger
from procvm.opcodes import (
    ENTERPROC_FIELDS_SIZE,
    FRAMEADDRESS_IMMEDIATE_SIZE,
    NAME_TERMINATOR,
    OpCode,
)
from procvm.validator import JumpDests, ProgramValidator, ValidatedProgram

logger = get_logger("vm", Layer.RUNTIME)

_MODULUS = 1 << 256
_SIGN_BIT = 1 << 255


# =============================================================================
# VM WORD TYPE
# =============================================================================

@dataclass(frozen=True)
class Word:
    """
    256-bit word, the unit of the data stack and of memory access.

    Represented internally as 32 big-endian bytes.
    """
    data: bytes

    def __post_init__(self):
        if len(self.data) != WORD_SIZE:
            raise ValueError(f"Word must be exactly {WORD_SIZE} bytes, got {len(self.data)}")

    @classmethod
    def from_int(cls, value: int) -> "Word":
        """Create word from integer; negatives wrap to two's complement."""
        return cls((value % _MODULUS).to_bytes(WORD_SIZE, "big"))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Word":
        """Create word from up to 32 bytes (left-padded)."""
        return cls(data[:WORD_SIZE].rjust(WORD_SIZE, b"\x00"))

    @classmethod
    def zero(cls) -> "Word":
        return cls(bytes(WORD_SIZE))

    def to_int(self, signed: bool = False) -> int:
        value = int.from_bytes(self.data, "big")
        if signed and value >= _SIGN_BIT:
            value -= _MODULUS
        return value

    def to_hex(self) -> str:
        return "0x" + self.data.hex()

    def __add__(self, other: "Word") -> "Word":
        return Word.from_int(self.to_int() + other.to_int())

    def __sub__(self, other: "Word") -> "Word":
        return Word.from_int(self.to_int() - other.to_int())

    def __mul__(self, other: "Word") -> "Word":
        return Word.from_int(self.to_int() * other.to_int())

    def __truediv__(self, other: "Word") -> "Word":
        if other.to_int() == 0:
            return Word.zero()
        return Word.from_int(self.to_int() // other.to_int())

    def __mod__(self, other: "Word") -> "Word":
        if other.to_int() == 0:
            return Word.zero()
        return Word.from_int(self.to_int() % other.to_int())

    def __bool__(self) -> bool:
        return any(self.data)


# =============================================================================
# EXECUTION CONTEXT AND STATE
# =============================================================================

@dataclass
class ExecutionContext:
    """Per-invocation limits. ``None`` falls back to the configured value."""
    gas_limit: Optional[int] = None
    step_limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"gas_limit": self.gas_limit, "step_limit": self.step_limit}


@dataclass
class VMState:
    """Complete mutable state of one call tree."""
    code: bytes
    memory: SignedMemory
    frames: FrameStack
    returns: ReturnStack
    stack_limit: int = 1024
    pc: int = 0
    stack: List[Word] = field(default_factory=list)
    steps: int = 0
    halted: bool = False
    reverted: bool = False
    return_data: bytes = b""

    def push(self, word: Word) -> None:
        if len(self.stack) >= self.stack_limit:
            raise OutOfResources(f"data stack limit of {self.stack_limit} reached", self.pc)
        self.stack.append(word)

    def pop(self) -> Word:
        if not self.stack:
            raise ValidationInvariantViolated("data stack underflow", self.pc)
        return self.stack.pop()

    def peek(self, depth: int = 0) -> Word:
        if depth >= len(self.stack):
            raise ValidationInvariantViolated(f"data stack underflow at depth {depth}", self.pc)
        return self.stack[-(depth + 1)]

    def dup(self, depth: int) -> None:
        self.push(self.peek(depth))

    def swap(self, depth: int) -> None:
        self.peek(depth)
        self.stack[-1], self.stack[-(depth + 1)] = self.stack[-(depth + 1)], self.stack[-1]

    def mload(self, address: int) -> Word:
        return Word(self.memory.load(address, WORD_SIZE))

    def mstore(self, address: int, word: Word) -> None:
        self.memory.store(address, word.data)

    def mstore8(self, address: int, value: int) -> None:
        self.memory.store(address, bytes([value & 0xFF]))


# =============================================================================
# EXECUTION RESULT
# =============================================================================

@dataclass
class ExecutionResult:
    """Result of executing one call tree."""
    success: bool
    return_data: bytes
    stack: List[int]
    memory: MemoryExtents
    frame_pointer: int
    frame_depth: int
    gas_used: int
    steps: int
    error: Optional[str] = None
    fault: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "return_data": self.return_data.hex(),
            "stack": self.stack,
            "memory": self.memory.to_dict(),
            "frame_pointer": self.frame_pointer,
            "frame_depth": self.frame_depth,
            "gas_used": self.gas_used,
            "steps": self.steps,
            "error": self.error,
            "fault": self.fault,
        }


# =============================================================================
# PROCEDURE VM
# =============================================================================

class ProcedureVM:
    """
    Executor for validated procedure bytecode.

    The VM itself holds only configuration, so one instance may run
    independent call trees from several threads.
    """

    def __init__(self, config: Optional[ProcVMConfig] = None):
        self.config = config or get_config()

    def run(
        self,
        code: bytes,
        context: Optional[ExecutionContext] = None,
        jumpdests: JumpDests = None,
        cost_callback: Optional[CostCallback] = None,
        validator: Optional[ProgramValidator] = None,
    ) -> ExecutionResult:
        """
        Validate ``code`` and execute it.

        Raises:
            ValidationFailure: the code failed validation and was not run
        """
        validator = validator or ProgramValidator(self.config)
        program = validator.validate(code, jumpdests).raise_if_invalid()
        return self.execute(program, context, cost_callback)

    def execute(
        self,
        program: ValidatedProgram,
        context: Optional[ExecutionContext] = None,
        cost_callback: Optional[CostCallback] = None,
    ) -> ExecutionResult:
        """
        Execute a validated program from offset 0.

        ``cost_callback`` receives ``(positive_words, negative_words)`` for
        every memory expansion. When omitted a ``MemoryGasMeter`` bounded by
        the context's gas limit is used.

        Raises:
            ValidationInvariantViolated: a validated guarantee did not hold
        """
        if not isinstance(program, ValidatedProgram):
            raise TypeError("ProcedureVM only executes ValidatedProgram instances")

        vm_config = self.config.vm
        context = context or ExecutionContext()
        gas_limit = context.gas_limit
        if gas_limit is None:
            gas_limit = vm_config.gas_limit_default.get()
        step_limit = context.step_limit
        if step_limit is None:
            step_limit = vm_config.step_limit.get()

        meter: Optional[MemoryGasMeter] = None
        if cost_callback is None:
            meter = MemoryGasMeter(gas_limit)
            cost_callback = meter

        state = VMState(
            code=program.code,
            memory=SignedMemory(cost_callback, vm_config.memory_limit_bytes.get()),
            frames=FrameStack(),
            returns=ReturnStack(vm_config.return_stack_limit.get()),
            stack_limit=vm_config.stack_limit.get(),
        )
        instructions = program.instructions

        error: Optional[RuntimeFault] = None
        try:
            while not state.halted and state.pc < len(state.code):
                state.steps += 1
                if state.steps > step_limit:
                    raise OutOfResources(f"step limit of {step_limit} reached", state.pc)

                ins = instructions.get(state.pc)
                if ins is None:
                    raise ValidationInvariantViolated(
                        "program counter is not on an instruction boundary", state.pc
                    )
                self._execute_instruction(ins, state, program)

        except ValidationInvariantViolated as exc:
            logger.critical(
                "Validation invariant violated",
                error_code=type(exc).__name__,
                pc=exc.pc,
                digest=program.digest[:16],
            )
            raise
        except RuntimeFault as exc:
            error = exc
            if exc.pc is None:
                exc.pc = state.pc
            logger.warning(
                "Execution aborted",
                error_code=type(exc).__name__,
                pc=exc.pc,
                steps=state.steps,
            )

        result = ExecutionResult(
            success=error is None and not state.reverted,
            return_data=state.return_data,
            stack=[word.to_int() for word in state.stack],
            memory=state.memory.extents,
            frame_pointer=state.frames.fp,
            frame_depth=state.frames.depth,
            gas_used=meter.gas_used if meter is not None else 0,
            steps=state.steps,
            error=str(error) if error is not None else None,
            fault=type(error).__name__ if error is not None else None,
        )
        logger.info(
            "Execution finished",
            success=result.success,
            steps=result.steps,
            memory_size=result.memory.memory_size,
        )
        return result

    def _execute_instruction(
        self,
        ins: Instruction,
        state: VMState,
        program: ValidatedProgram,
    ) -> None:
        """Execute a single instruction and advance the program counter."""
        opcode = ins.opcode
        next_pc = ins.next_offset

        # Control
        if opcode == OpCode.STOP:
            state.halted = True

        elif opcode == OpCode.JUMP:
            next_pc = self._jump_target(state.pop(), program, state.pc)

        elif opcode == OpCode.JUMPI:
            dest, cond = state.pop(), state.pop()
            if cond:
                next_pc = self._jump_target(dest, program, state.pc)

        elif opcode == OpCode.JUMPDEST:
            pass

        elif opcode == OpCode.PC:
            state.push(Word.from_int(ins.offset))

        elif opcode in (OpCode.RETURN, OpCode.REVERT):
            address, length = state.pop().to_int(signed=True), state.pop().to_int()
            state.return_data = state.memory.load(address, length)
            state.halted = True
            state.reverted = opcode == OpCode.REVERT

        elif opcode == OpCode.INVALID:
            raise InvalidInstruction(f"{ins.mnemonic} executed", ins.offset)

        # Stack
        elif opcode.is_push:
            state.push(Word.from_int(ins.immediate))

        elif opcode == OpCode.POP:
            state.pop()

        elif opcode.is_dup:
            state.dup(opcode - OpCode.DUP1)

        elif opcode.is_swap:
            state.swap(opcode - OpCode.SWAP1 + 1)

        # Arithmetic, top of stack is the first operand
        elif opcode == OpCode.ADD:
            a, b = state.pop(), state.pop()
            state.push(a + b)

        elif opcode == OpCode.SUB:
            a, b = state.pop(), state.pop()
            state.push(a - b)

        elif opcode == OpCode.MUL:
            a, b = state.pop(), state.pop()
            state.push(a * b)

        elif opcode == OpCode.DIV:
            a, b = state.pop(), state.pop()
            state.push(a / b)

        elif opcode == OpCode.MOD:
            a, b = state.pop(), state.pop()
            state.push(a % b)

        elif opcode == OpCode.SDIV:
            a, b = state.pop().to_int(signed=True), state.pop().to_int(signed=True)
            if b == 0:
                state.push(Word.zero())
            else:
                quotient = abs(a) // abs(b)
                state.push(Word.from_int(quotient if (a < 0) == (b < 0) else -quotient))

        # Comparison and bitwise
        elif opcode == OpCode.LT:
            a, b = state.pop().to_int(), state.pop().to_int()
            state.push(Word.from_int(int(a < b)))

        elif opcode == OpCode.GT:
            a, b = state.pop().to_int(), state.pop().to_int()
            state.push(Word.from_int(int(a > b)))

        elif opcode == OpCode.SLT:
            a, b = state.pop().to_int(signed=True), state.pop().to_int(signed=True)
            state.push(Word.from_int(int(a < b)))

        elif opcode == OpCode.SGT:
            a, b = state.pop().to_int(signed=True), state.pop().to_int(signed=True)
            state.push(Word.from_int(int(a > b)))

        elif opcode == OpCode.EQ:
            a, b = state.pop(), state.pop()
            state.push(Word.from_int(int(a == b)))

        elif opcode == OpCode.ISZERO:
            state.push(Word.from_int(int(not state.pop())))

        elif opcode == OpCode.AND:
            a, b = state.pop().to_int(), state.pop().to_int()
            state.push(Word.from_int(a & b))

        elif opcode == OpCode.OR:
            a, b = state.pop().to_int(), state.pop().to_int()
            state.push(Word.from_int(a | b))

        elif opcode == OpCode.XOR:
            a, b = state.pop().to_int(), state.pop().to_int()
            state.push(Word.from_int(a ^ b))

        elif opcode == OpCode.NOT:
            state.push(Word.from_int(~state.pop().to_int()))

        # Memory, addresses are signed
        elif opcode == OpCode.MLOAD:
            state.push(state.mload(state.pop().to_int(signed=True)))

        elif opcode == OpCode.MSTORE:
            address, value = state.pop().to_int(signed=True), state.pop()
            state.mstore(address, value)

        elif opcode == OpCode.MSTORE8:
            address, value = state.pop().to_int(signed=True), state.pop()
            state.mstore8(address, value.to_int())

        elif opcode == OpCode.MSIZE:
            state.push(Word.from_int(state.memory.size_bytes))

        # Procedures
        elif opcode == OpCode.CALLPROC:
            callee = program.table.by_name(ins.name)
            InvariantChecker.require(
                callee is not None, f"unknown procedure {ins.display_name!r}", ins.offset
            )
            InvariantChecker.require(
                len(state.stack) >= callee.input_arity,
                f"{callee.display_name!r} called with {len(state.stack)} values",
                ins.offset,
            )
            next_pc = state.returns.jump_to_subroutine(ins.next_offset, callee.entry_offset)

        elif opcode == OpCode.ENTERPROC:
            InvariantChecker.require(
                state.returns.depth == state.frames.depth + 1,
                "entry marker reached without CALLPROC",
                ins.offset,
            )
            state.frames.enter(ins.frame_size)

        elif opcode in (OpCode.LEAVEPROC, OpCode.RETURNPROC):
            state.frames.leave()
            next_pc = state.returns.return_from_subroutine()

        elif opcode == OpCode.FRAMEADDRESS:
            state.push(Word.from_int(state.frames.address(ins.immediate)))

        else:
            raise InvalidInstruction(f"Unhandled opcode {ins.mnemonic}", ins.offset)

        state.pc = next_pc

    @staticmethod
    def _jump_target(dest: Word, program: ValidatedProgram, pc: int) -> int:
        target = dest.to_int()
        InvariantChecker.require(
            target in program.cfg.blocks, f"jump to non-block offset {target}", pc
        )
        return target


# =============================================================================
# BYTECODE ASSEMBLER
# =============================================================================

Operand = Union[int, str, bytes]


class Assembler:
    """Two-pass assembler for procedure bytecode with label support."""

    @staticmethod
    def _encode_name(name: Union[str, bytes]) -> bytes:
        raw = name.encode("utf-8") if isinstance(name, str) else bytes(name)
        if NAME_TERMINATOR in raw:
            raise ValueError(f"procedure name {name!r} contains a null byte")
        return raw + bytes([NAME_TERMINATOR])

    @classmethod
    def _size(cls, instr: Tuple[Any, ...]) -> int:
        opcode = OpCode[instr[0].upper()]
        if opcode.is_push:
            return 1 + opcode.push_size
        if opcode == OpCode.FRAMEADDRESS:
            return 1 + FRAMEADDRESS_IMMEDIATE_SIZE
        if opcode == OpCode.CALLPROC:
            return 1 + len(cls._encode_name(instr[1]))
        if opcode == OpCode.ENTERPROC:
            return 1 + len(cls._encode_name(instr[1])) + ENTERPROC_FIELDS_SIZE
        return 1

    @classmethod
    def assemble(cls, instructions: List[Tuple[Any, ...]]) -> bytes:
        """
        Assemble instructions to bytecode.

        ``("JUMPDEST", "label")`` defines a label at the JUMPDEST and any
        PUSH operand given as a string refers to one.

        Example:
            code = Assembler.assemble([
                ("PUSH1", 0),
                ("PUSH1", "done"),
                ("JUMPI",),
                ("JUMPDEST", "done"),
                ("STOP",),
            ])
        """
        labels: Dict[str, int] = {}
        offset = 0
        for instr in instructions:
            if instr[0].upper() == "JUMPDEST" and len(instr) > 1:
                if instr[1] in labels:
                    raise ValueError(f"label {instr[1]!r} defined twice")
                labels[instr[1]] = offset
            offset += cls._size(instr)

        bytecode = bytearray()
        for instr in instructions:
            mnemonic = instr[0].upper()
            opcode = OpCode[mnemonic]
            bytecode.append(opcode.value)

            if opcode.is_push:
                size = opcode.push_size
                value: Operand = instr[1] if len(instr) > 1 else 0
                if isinstance(value, str):
                    if value not in labels:
                        raise ValueError(f"undefined label {value!r}")
                    value = labels[value]
                if isinstance(value, bytes):
                    bytecode.extend(value[:size].rjust(size, b"\x00"))
                else:
                    if not 0 <= value < 1 << (8 * size):
                        raise ValueError(f"{mnemonic} operand {value} does not fit")
                    bytecode.extend(value.to_bytes(size, "big"))

            elif opcode == OpCode.FRAMEADDRESS:
                bytecode.extend(struct.pack(">i", instr[1]))

            elif opcode == OpCode.CALLPROC:
                bytecode.extend(cls._encode_name(instr[1]))

            elif opcode == OpCode.ENTERPROC:
                _, name, input_arity, output_arity, frame_size = instr
                bytecode.extend(cls._encode_name(name))
                bytecode.extend(struct.pack(">HHH", input_arity, output_arity, frame_size))

        return bytes(bytecode)

    @staticmethod
    def disassemble(bytecode: bytes) -> List[Tuple[int, str, Any]]:
        """
        Disassemble bytecode to instructions.

        Returns list of (offset, mnemonic, operand).
        """
        return [(ins.offset, ins.mnemonic, ins.operand()) for ins in iter_instructions(bytecode)]
