"""
Procedure Table

Locates every ENTERPROC marker in a code image and indexes its signature by
name (for call sites) and by offset (for boundary checks). The table is
immutable once built and is shared read-only between validation and every
execution of the same image.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from procvm.decoder import iter_instructions
from procvm.hardening import DuplicateProcedureName
from procvm.memory import WORD_SIZE
from procvm.observability import Layer, get_logger
from procvm.opcodes import OpCode

logger = get_logger("procedures", Layer.TABLE)


@dataclass(frozen=True)
class ProcedureSignature:
    """Static signature declared by one entry marker."""
    name: bytes
    entry_offset: int
    input_arity: int
    output_arity: int
    frame_size: int

    @property
    def display_name(self) -> str:
        return self.name.decode("utf-8", errors="replace")

    @property
    def frame_bytes(self) -> int:
        return self.frame_size * WORD_SIZE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.display_name,
            "entry_offset": self.entry_offset,
            "input_arity": self.input_arity,
            "output_arity": self.output_arity,
            "frame_size": self.frame_size,
        }


class ProcedureTable:
    """
    Name and offset index over the procedures of one code image.

    Iteration yields signatures in code order.
    """

    def __init__(self, signatures: Iterable[ProcedureSignature] = ()):
        by_name: Dict[bytes, ProcedureSignature] = {}
        by_offset: Dict[int, ProcedureSignature] = {}
        for sig in signatures:
            if sig.name in by_name:
                raise DuplicateProcedureName(
                    sig.entry_offset,
                    f"procedure {sig.display_name!r} already defined at offset "
                    f"{by_name[sig.name].entry_offset}",
                )
            by_name[sig.name] = sig
            by_offset[sig.entry_offset] = sig
        self._by_name: Mapping[bytes, ProcedureSignature] = MappingProxyType(by_name)
        self._by_offset: Mapping[int, ProcedureSignature] = MappingProxyType(
            dict(sorted(by_offset.items()))
        )

    @classmethod
    def build(cls, code: bytes) -> "ProcedureTable":
        """
        Scan ``code`` once and build its procedure table.

        Every instruction is decoded so that malformed CALLPROC names are
        reported here as well.

        Raises:
            DuplicateProcedureName: a name is declared by two entry markers
            TruncatedHeader: ENTERPROC/FRAMEADDRESS fields run past the end
            UnterminatedName: a name has no terminator before the end
        """
        signatures: List[ProcedureSignature] = []
        for ins in iter_instructions(code):
            if ins.opcode != OpCode.ENTERPROC:
                continue
            signatures.append(ProcedureSignature(
                name=ins.name,
                entry_offset=ins.offset,
                input_arity=ins.input_arity,
                output_arity=ins.output_arity,
                frame_size=ins.frame_size,
            ))
        table = cls(signatures)
        logger.debug("Procedure table built", procedures=len(table), code_size=len(code))
        return table

    def by_name(self, name: Union[bytes, str]) -> Optional[ProcedureSignature]:
        if isinstance(name, str):
            name = name.encode("utf-8")
        return self._by_name.get(name)

    def by_offset(self, offset: int) -> Optional[ProcedureSignature]:
        return self._by_offset.get(offset)

    def names(self) -> List[str]:
        return [sig.display_name for sig in self]

    def __contains__(self, name: object) -> bool:
        if isinstance(name, (bytes, str)):
            return self.by_name(name) is not None
        return False

    def __iter__(self) -> Iterator[ProcedureSignature]:
        return iter(self._by_offset.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __repr__(self) -> str:
        return f"ProcedureTable({self.names()!r})"
