"""Tests for instance port allocation."""

from __future__ import annotations

import random

import pytest

from ephemera.core.models import Instance
from ephemera.errors import PortExhaustedError
from ephemera.instances.ports import (
    MAX_ALLOCATION_ATTEMPTS,
    allocate_instance_port,
    allocate_port,
)
from ephemera.store.memory import MemoryInstanceStore


class CountingRandom(random.Random):
    def __init__(self, seed: int = 0):
        super().__init__(seed)
        self.draws = 0

    def randrange(self, *args, **kwargs):
        self.draws += 1
        return super().randrange(*args, **kwargs)


class TestAllocatePort:
    """Tests for allocate_port."""

    def test_port_in_range(self):
        """Test the port lies in [min, max)."""
        rng = random.Random(42)
        for _ in range(200):
            port = allocate_port(set(), 5000, 5010, rng=rng)
            assert 5000 <= port < 5010

    def test_never_returns_taken_port(self):
        """Test a taken port is never returned."""
        rng = random.Random(7)
        taken = {5000, 5001, 5003}
        for _ in range(50):
            assert allocate_port(taken, 5000, 5004, rng=rng) == 5002

    def test_exhausted_range(self):
        """Test a fully taken range fails within the attempt limit."""
        rng = CountingRandom()
        with pytest.raises(PortExhaustedError) as exc_info:
            allocate_port(range(5000, 5010), 5000, 5010, rng=rng)

        assert exc_info.value.attempts == MAX_ALLOCATION_ATTEMPTS
        assert rng.draws == MAX_ALLOCATION_ATTEMPTS

    def test_max_port_is_exclusive(self):
        """Test the upper bound is never handed out."""
        assert allocate_port({5000}, 5000, 5002, rng=random.Random(1)) == 5001

    def test_empty_range_rejected(self):
        """Test min >= max is a programming error."""
        with pytest.raises(ValueError, match="empty port range"):
            allocate_port(set(), 5000, 5000)

    def test_custom_attempt_limit(self):
        """Test the attempt limit can be lowered."""
        rng = CountingRandom()
        with pytest.raises(PortExhaustedError):
            allocate_port({5000}, 5000, 5001, rng=rng, max_attempts=3)
        assert rng.draws == 3


class TestAllocateInstancePort:
    """Tests for allocate_instance_port."""

    @pytest.mark.asyncio
    async def test_skips_ports_in_store(self):
        """Test ports of stored instances are not reused."""
        store = MemoryInstanceStore()
        await store.create(Instance(image_id=1, user_email="a@example.com", port=6000))
        await store.create(Instance(image_id=1, user_email="a@example.com", port=6001))

        port = await allocate_instance_port(store, 6000, 6003)
        assert port == 6002

    @pytest.mark.asyncio
    async def test_exhausted_store(self):
        """Test exhaustion when the store holds every port."""
        store = MemoryInstanceStore()
        await store.create(Instance(image_id=1, user_email="a@example.com", port=6000))

        with pytest.raises(PortExhaustedError):
            await allocate_instance_port(store, 6000, 6001)
