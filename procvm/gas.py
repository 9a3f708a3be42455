"""
Reference cost-accounting collaborator.

The engine only reports how many words each memory extent grew by; pricing
belongs to the host. ``MemoryGasMeter`` is the default host used by the CLI
and by ``ProcedureVM`` when no callback is supplied. It prices total memory
with the familiar linear-plus-quadratic schedule.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict


class MemoryGasMeter:
    """Charges memory growth against a fixed gas limit."""

    WORD_COST = 3
    QUADRATIC_DENOMINATOR = 512

    def __init__(self, gas_limit: int):
        self.gas_limit = gas_limit
        self.gas_used = 0
        self.words = 0

    @classmethod
    def total_cost(cls, words: int) -> int:
        return cls.WORD_COST * words + words * words // cls.QUADRATIC_DENOMINATOR

    def __call__(self, positive_words: int, negative_words: int) -> bool:
        new_words = self.words + positive_words + negative_words
        fee = self.total_cost(new_words) - self.total_cost(self.words)
        if self.gas_used + fee > self.gas_limit:
            return False
        self.gas_used += fee
        self.words = new_words
        return True

    @property
    def gas_remaining(self) -> int:
        return self.gas_limit - self.gas_used

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gas_limit": self.gas_limit,
            "gas_used": self.gas_used,
            "memory_words": self.words,
        }
