"""
procvm: named, statically validated procedures for a stack VM

Procedures are declared in bytecode by ENTERPROC markers and can only be
entered through CALLPROC. Before any instruction runs, the validation
pipeline proves that bodies are well nested, that no control flow crosses a
body boundary and that every call and every exit path agrees with the
declared arities. The executor then maintains a frame pointer, a stack of
saved frame pointers and a signed memory whose negative half holds frames.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  VALIDATION PIPELINE (offline, pure)                                     │
    │    procedures.py    Procedure table: ENTERPROC signatures by name/offset │
    │    cfg.py           Basic blocks and successor edges                     │
    │    boundary.py      Nesting, entry and escape rules per body             │
    │    stack_effect.py  Worklist stack-height analysis                       │
    │    validator.py     Pipeline service, result cache, batch validation     │
    │                                                                          │
    │  RUNTIME                                                                 │
    │    frames.py        Frame stack and return stack                         │
    │    memory.py        Signed memory with positive/negative extents         │
    │    gas.py           Reference memory cost collaborator                   │
    │    vm.py            Instruction executor and assembler                   │
    │                                                                          │
    │  INFRASTRUCTURE                                                          │
    │    opcodes.py       Instruction set and stack effects                    │
    │    decoder.py       Instruction decoding and jump-destination scan       │
    │    hardening.py     Validation failures, runtime faults, invariants      │
    │    config.py        YAML/env configuration with schema validation        │
    │    observability.py Structured logging                                   │
    │    cli.py           Command-line interface                               │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import procvm modules on first access."""

    # Opcode and decoder exports
    if name == "OpCode":
        from procvm import opcodes
        return opcodes.OpCode

    if name in ("Instruction", "decode_at", "iter_instructions", "jumpdest_bitmap"):
        from procvm import decoder
        return getattr(decoder, name)

    # Validation pipeline exports
    if name in ("ProcedureSignature", "ProcedureTable"):
        from procvm import procedures
        return getattr(procedures, name)

    if name in ("BasicBlock", "ControlFlowGraph", "Edge", "EdgeKind"):
        from procvm import cfg
        return getattr(cfg, name)

    if name in ("ProcedureBody", "ProcedureLayout", "validate_boundaries"):
        from procvm import boundary
        return getattr(boundary, name)

    if name in ("StackAnalysis", "StackEffectValidator", "validate_stack_effects"):
        from procvm import stack_effect
        return getattr(stack_effect, name)

    if name in ("ProgramValidator", "ValidatedProgram", "ValidationCache", "validate"):
        from procvm import validator
        return getattr(validator, name)

    # Hardening exports
    if name in ("ValidationFailure", "ValidationResult", "RuntimeFault",
                "ValidationInvariantViolated", "OutOfResources",
                "RecursionDepthExceeded", "InvalidInstruction", "InvariantChecker",
                "VALIDATION_RULES"):
        from procvm import hardening
        return getattr(hardening, name)

    # Runtime exports
    if name in ("FrameStack", "ReturnStack"):
        from procvm import frames
        return getattr(frames, name)

    if name in ("MemoryExtents", "SignedMemory", "WORD_SIZE"):
        from procvm import memory
        return getattr(memory, name)

    if name == "MemoryGasMeter":
        from procvm import gas
        return gas.MemoryGasMeter

    if name in ("Word", "ExecutionContext", "ExecutionResult", "ProcedureVM", "Assembler"):
        from procvm import vm
        return getattr(vm, name)

    if name in ("ProcVMConfig", "ConfigManager", "get_config", "get_config_manager"):
        from procvm import config
        return getattr(config, name)

    raise AttributeError(f"module 'procvm' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Pipeline
    "ProcedureSignature",
    "ProcedureTable",
    "ControlFlowGraph",
    "ProcedureLayout",
    "StackEffectValidator",
    "ProgramValidator",
    "ValidatedProgram",
    "validate",
    # Errors
    "ValidationFailure",
    "ValidationResult",
    "RuntimeFault",
    "ValidationInvariantViolated",
    # Runtime
    "FrameStack",
    "SignedMemory",
    "MemoryGasMeter",
    "ProcedureVM",
    "ExecutionContext",
    "ExecutionResult",
    "Assembler",
    "OpCode",
]
