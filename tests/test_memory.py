"""
Signed memory, memory accounting and gas meter tests.
"""

import random

import pytest

from procvm.gas import MemoryGasMeter
from procvm.hardening import OutOfResources
from procvm.memory import MemoryExtents, SignedMemory


class TestMemoryExtents:
    """Tests for extent computation."""

    @pytest.mark.parametrize("address,length,expected", [
        (0, 32, (1, 0)),
        (31, 2, (2, 0)),
        (-32, 32, (0, 1)),
        (-64, 32, (0, 2)),
        (-1, 1, (0, 1)),
        (-16, 32, (1, 1)),
        (-33, 1, (0, 2)),
        (100, 0, (0, 0)),
    ])
    def test_required_for(self, address, length, expected):
        required = MemoryExtents().required_for(address, length)
        assert (required.positive_size, required.negative_size) == expected

    def test_never_shrinks(self):
        extents = MemoryExtents(positive_size=4, negative_size=3)
        required = extents.required_for(0, 32)
        assert (required.positive_size, required.negative_size) == (4, 3)

    def test_memory_size(self):
        assert MemoryExtents(2, 3).memory_size == 5
        assert MemoryExtents(2, 3).to_dict()["memory_size"] == 5


class TestSignedMemory:
    """Tests for byte storage over signed addresses."""

    def test_fresh_memory_reads_zero(self):
        memory = SignedMemory()
        assert memory.load(-100, 40) == bytes(40)

    def test_negative_word_round_trip(self):
        memory = SignedMemory()
        data = bytes(range(32))
        memory.store(-64, data)
        assert memory.load(-64) == data
        assert memory.load(-32) == bytes(32)

    def test_negative_byte_order(self):
        memory = SignedMemory()
        memory.store(-2, b"\xaa\xbb")
        assert memory.load(-2, 2) == b"\xaa\xbb"
        assert memory.load(-1, 1) == b"\xbb"

    def test_straddling_zero(self):
        memory = SignedMemory()
        memory.store(-2, b"\x01\x02\x03\x04")
        assert memory.load(-2, 4) == b"\x01\x02\x03\x04"
        assert memory.load(0, 2) == b"\x03\x04"
        assert memory.extents == MemoryExtents(1, 1)

    def test_size_bytes(self):
        memory = SignedMemory()
        memory.store(-64, bytes(32))
        memory.store(0, bytes(32))
        assert memory.size_bytes == 96

    def test_charge_receives_increments(self):
        calls = []
        memory = SignedMemory(charge=lambda pos, neg: calls.append((pos, neg)))
        memory.store(0, bytes(32))
        memory.store(-32, bytes(32))
        memory.store(-16, bytes(32))
        memory.load(40, 32)
        assert calls == [(1, 0), (0, 1), (2, 0)]

    def test_rejected_charge(self):
        memory = SignedMemory(charge=lambda pos, neg: False)
        with pytest.raises(OutOfResources):
            memory.store(-32, bytes(32))
        assert memory.extents == MemoryExtents(0, 0)

    def test_charge_may_raise(self):
        def charge(pos, neg):
            raise OutOfResources("no gas")

        with pytest.raises(OutOfResources):
            SignedMemory(charge=charge).load(0)

    def test_limit(self):
        memory = SignedMemory(limit_bytes=64)
        memory.store(0, bytes(64))
        with pytest.raises(OutOfResources):
            memory.store(-32, bytes(1))

    def test_extents_monotonic_for_any_access_order(self):
        rng = random.Random(1234)
        memory = SignedMemory()
        previous = memory.extents
        for _ in range(500):
            address = rng.randint(-4096, 4096)
            length = rng.choice([0, 1, 32, 33])
            if rng.random() < 0.5:
                memory.load(address, length)
            else:
                memory.store(address, bytes(length))
            current = memory.extents
            assert current.positive_size >= previous.positive_size
            assert current.negative_size >= previous.negative_size
            previous = current


class TestMemoryGasMeter:
    """Tests for the reference cost collaborator."""

    def test_total_cost(self):
        assert MemoryGasMeter.total_cost(0) == 0
        assert MemoryGasMeter.total_cost(1) == 3
        assert MemoryGasMeter.total_cost(512) == 3 * 512 + 512

    def test_charges_incrementally(self):
        meter = MemoryGasMeter(gas_limit=1000)
        assert meter(1, 0)
        assert meter(0, 1)
        assert meter.gas_used == MemoryGasMeter.total_cost(2)
        assert meter.words == 2
        assert meter.gas_remaining == 1000 - meter.gas_used

    def test_rejects_over_limit(self):
        meter = MemoryGasMeter(gas_limit=10)
        assert meter(3, 0)
        assert not meter(1, 0)
        assert meter.gas_used == 9
        assert meter.to_dict() == {"gas_limit": 10, "gas_used": 9, "memory_words": 3}
