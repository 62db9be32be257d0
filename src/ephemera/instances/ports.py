"""Instance port allocation."""

from __future__ import annotations

import random
from collections.abc import Collection

from ephemera.errors import PortExhaustedError
from ephemera.store.base import InstanceStore

MAX_ALLOCATION_ATTEMPTS = 100

_random = random.Random()


def allocate_port(
    existing_ports: Collection[int],
    min_port: int,
    max_port: int,
    *,
    rng: random.Random | None = None,
    max_attempts: int = MAX_ALLOCATION_ATTEMPTS,
) -> int:
    """Pick a random port in ``[min_port, max_port)`` not in ``existing_ports``.

    Args:
        existing_ports: Ports already held by instances
        min_port: Lowest candidate port (inclusive)
        max_port: Upper bound (exclusive)
        rng: Random source, for deterministic tests
        max_attempts: Number of random draws before giving up

    Raises:
        PortExhaustedError: If every draw hit a taken port
        ValueError: If the range is empty
    """
    if min_port >= max_port:
        raise ValueError(f"empty port range [{min_port}, {max_port})")
    rng = rng or _random
    taken = set(existing_ports)

    for _ in range(max_attempts):
        port = rng.randrange(min_port, max_port)
        if port not in taken:
            return port
    raise PortExhaustedError(max_attempts)


async def allocate_instance_port(store: InstanceStore, min_port: int, max_port: int) -> int:
    """Allocate against the ports held by the instances currently in ``store``.

    Two concurrent callers can pick the same port; the store rejects the
    second insert with DuplicatePortError.
    """
    instances = await store.list()
    return allocate_port({i.port for i in instances}, min_port, max_port)
