"""Store interfaces and in-memory implementations."""

from ephemera.store.base import ImageStore, InstanceStore, WhitelistedAddressStore
from ephemera.store.memory import (
    MemoryDatabase,
    MemoryImageStore,
    MemoryInstanceStore,
    MemoryWhitelistedAddressStore,
)

__all__ = [
    "ImageStore",
    "InstanceStore",
    "MemoryDatabase",
    "MemoryImageStore",
    "MemoryInstanceStore",
    "MemoryWhitelistedAddressStore",
    "WhitelistedAddressStore",
]
