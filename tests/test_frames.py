"""
Frame stack and return stack tests.
"""

import random

import pytest

from procvm.frames import FrameStack, ReturnStack
from procvm.hardening import RecursionDepthExceeded, ValidationInvariantViolated


class TestFrameStack:
    """Tests for frame pointer transitions."""

    def test_starts_idle(self):
        frames = FrameStack()
        assert frames.fp == 0
        assert frames.depth == 0
        assert frames.is_idle

    def test_enter_and_leave(self):
        frames = FrameStack()
        assert frames.enter(2) == -64
        assert frames.enter(0) == -64
        assert frames.enter(1) == -96
        assert frames.depth == 3
        assert frames.address(8) == -88

        assert frames.leave() == -64
        assert frames.leave() == -64
        assert frames.leave() == 0
        assert frames.is_idle

    def test_leave_when_idle(self):
        with pytest.raises(ValidationInvariantViolated):
            FrameStack().leave()

    def test_negative_frame_size(self):
        with pytest.raises(ValidationInvariantViolated):
            FrameStack().enter(-1)

    def test_round_trip_restores_pointer(self):
        """N nested enters followed by N leaves restore FP and depth."""
        rng = random.Random(7)
        frames = FrameStack()
        frames.enter(3)
        before = frames.snapshot()

        for _ in range(20):
            sizes = [rng.randint(0, 16) for _ in range(rng.randint(1, 12))]
            for size in sizes:
                frames.enter(size)
            assert frames.fp == before[0] - sum(sizes) * 32
            for _ in sizes:
                frames.leave()
            assert frames.snapshot() == before

    def test_reset(self):
        frames = FrameStack()
        frames.enter(4)
        frames.reset()
        assert frames.to_dict() == {"frame_pointer": 0, "frame_depth": 0}


class TestReturnStack:
    """Tests for the subroutine primitives."""

    def test_jump_and_return(self):
        returns = ReturnStack()
        assert returns.jump_to_subroutine(5, 40) == 40
        assert returns.jump_to_subroutine(45, 80) == 80
        assert returns.depth == 2
        assert returns.return_from_subroutine() == 45
        assert returns.return_from_subroutine() == 5

    def test_underflow(self):
        with pytest.raises(ValidationInvariantViolated):
            ReturnStack().return_from_subroutine()

    def test_depth_limit(self):
        returns = ReturnStack(max_depth=2)
        returns.jump_to_subroutine(1, 10)
        returns.jump_to_subroutine(2, 10)
        with pytest.raises(RecursionDepthExceeded):
            returns.jump_to_subroutine(3, 10)
        assert returns.depth == 2
