"""
Signed Memory Model

Memory is addressed by signed integers. Procedure frames grow downward from
address zero, ordinary scratch memory grows upward, and the two regions are
accounted independently:

    negative extent                       positive extent
    ◄──────────────────────┤ 0 ├──────────────────────►
    ... [-64, -32) [-32, 0) │   │ [0, 32) [32, 64) ...

Both extents are word counts that never decrease during one execution.
``memory_size = positive_size + negative_size`` is the quantity charged by
the cost-accounting collaborator, which is invoked with the number of words
each extent grew by on every size-extending access.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from procvm.hardening import InvariantChecker, OutOfResources

WORD_SIZE = 32

# (incremental_positive_words, incremental_negative_words) -> accepted?
# A callback may also raise OutOfResources itself.
CostCallback = Callable[[int, int], Optional[bool]]


def ceil_words(size_bytes: int) -> int:
    """Number of words needed to cover ``size_bytes`` bytes."""
    return (size_bytes + WORD_SIZE - 1) // WORD_SIZE


@dataclass
class MemoryExtents:
    """High-water marks, in words, above and below address zero."""
    positive_size: int = 0
    negative_size: int = 0

    @property
    def memory_size(self) -> int:
        return self.positive_size + self.negative_size

    def required_for(self, address: int, length: int) -> "MemoryExtents":
        """
        Extents needed for an access of ``length`` bytes at ``address``.

        The sign of the address picks the accumulator; an access that
        straddles zero extends both.
        """
        positive = self.positive_size
        negative = self.negative_size
        if length > 0:
            end = address + length
            if end > 0:
                positive = max(positive, ceil_words(end))
            if address < 0:
                negative = max(negative, ceil_words(-address))
        return MemoryExtents(positive, negative)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positive_size": self.positive_size,
            "negative_size": self.negative_size,
            "memory_size": self.memory_size,
        }


class SignedMemory:
    """
    Byte-addressable memory over signed addresses.

    ``_positive[i]`` holds address ``i`` and ``_negative[i]`` holds address
    ``-(i + 1)``.
    """

    def __init__(
        self,
        charge: Optional[CostCallback] = None,
        limit_bytes: Optional[int] = None,
    ):
        self._charge = charge
        self._limit_bytes = limit_bytes
        self._positive = bytearray()
        self._negative = bytearray()
        self.extents = MemoryExtents()

    @property
    def size_bytes(self) -> int:
        return self.extents.memory_size * WORD_SIZE

    def touch(self, address: int, length: int) -> None:
        """Account for an access to ``[address, address + length)``."""
        if length <= 0:
            return

        current = self.extents
        required = current.required_for(address, length)
        grow_positive = required.positive_size - current.positive_size
        grow_negative = required.negative_size - current.negative_size
        if not grow_positive and not grow_negative:
            return

        if self._limit_bytes is not None and required.memory_size * WORD_SIZE > self._limit_bytes:
            raise OutOfResources(
                f"Memory limit exceeded: {required.memory_size * WORD_SIZE} > {self._limit_bytes}"
            )

        if self._charge is not None and self._charge(grow_positive, grow_negative) is False:
            raise OutOfResources(
                f"Memory expansion rejected: +{grow_positive} positive, "
                f"+{grow_negative} negative words"
            )

        InvariantChecker.check_monotonic_increase(
            "positive_size", current.positive_size, required.positive_size
        )
        InvariantChecker.check_monotonic_increase(
            "negative_size", current.negative_size, required.negative_size
        )
        self.extents = required
        self._positive.extend(bytes(required.positive_size * WORD_SIZE - len(self._positive)))
        self._negative.extend(bytes(required.negative_size * WORD_SIZE - len(self._negative)))

    def load(self, address: int, length: int = WORD_SIZE) -> bytes:
        """Read ``length`` bytes starting at ``address``."""
        self.touch(address, length)
        if length <= 0:
            return b""

        out = bytearray()
        if address < 0:
            neg_len = min(length, -address)
            # Addresses address .. address+neg_len-1 live at indices
            # -address-1 down to -address-neg_len.
            low = -address - neg_len
            out += self._negative[low:-address][::-1]
        start = max(address, 0)
        end = address + length
        if end > 0:
            out += self._positive[start:end]
        return bytes(out)

    def store(self, address: int, data: bytes) -> None:
        """Write ``data`` starting at ``address``."""
        length = len(data)
        self.touch(address, length)
        if length == 0:
            return

        if address < 0:
            neg_len = min(length, -address)
            low = -address - neg_len
            self._negative[low:-address] = bytes(data[:neg_len])[::-1]
        end = address + length
        if end > 0:
            start = max(address, 0)
            self._positive[start:end] = data[start - address:]

    def snapshot(self) -> Dict[str, Any]:
        return self.extents.to_dict()
