"""In-memory stores.

Used for local development and tests. Every store serializes its own writes
with an asyncio lock, and the instance and whitelist stores share one
backing object so that destroying an instance cascades to its addresses the
way a foreign key would.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace

from ephemera.core.models import Image, Instance, WhitelistedAddress, utcnow
from ephemera.errors import DuplicatePortError, NotFoundError


class MemoryImageStore:
    def __init__(self) -> None:
        self._images: dict[int, Image] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create(self, image: Image) -> Image:
        async with self._lock:
            image = replace(image, id=next(self._ids))
            self._images[image.id] = image
            return image

    async def get(self, image_id: int) -> Image:
        async with self._lock:
            try:
                return self._images[image_id]
            except KeyError:
                raise NotFoundError(f"image {image_id} not found") from None

    async def list(self) -> list[Image]:
        async with self._lock:
            return sorted(self._images.values(), key=lambda i: i.id)

    async def mark_ready(self, image_id: int) -> Image:
        async with self._lock:
            if image_id not in self._images:
                raise NotFoundError(f"image {image_id} not found")
            image = replace(self._images[image_id], ready=True, updated_at=utcnow())
            self._images[image_id] = image
            return image

    async def destroy(self, image: Image) -> None:
        async with self._lock:
            self._images.pop(image.id, None)


class MemoryDatabase:
    """Backing tables for the instance and whitelisted address stores."""

    def __init__(self) -> None:
        self.instances: dict[int, Instance] = {}
        self.addresses: dict[tuple[str, int], WhitelistedAddress] = {}
        self.instance_ids = itertools.count(1)
        self.lock = asyncio.Lock()


class MemoryInstanceStore:
    def __init__(self, db: MemoryDatabase | None = None) -> None:
        self._db = db or MemoryDatabase()

    async def create(self, instance: Instance) -> Instance:
        async with self._db.lock:
            if any(i.port == instance.port for i in self._db.instances.values()):
                raise DuplicatePortError(instance.port)
            instance = replace(instance, id=next(self._db.instance_ids))
            self._db.instances[instance.id] = instance
            return instance

    async def list(self) -> list[Instance]:
        async with self._db.lock:
            return sorted(self._db.instances.values(), key=lambda i: i.id)

    async def get(self, instance_id: int) -> Instance:
        async with self._db.lock:
            try:
                return self._db.instances[instance_id]
            except KeyError:
                raise NotFoundError(f"instance {instance_id} not found") from None

    async def destroy(self, instance: Instance) -> None:
        async with self._db.lock:
            self._db.instances.pop(instance.id, None)
            for key in [k for k in self._db.addresses if k[1] == instance.id]:
                del self._db.addresses[key]


class MemoryWhitelistedAddressStore:
    def __init__(self, db: MemoryDatabase | None = None) -> None:
        self._db = db or MemoryDatabase()

    async def create(self, address: WhitelistedAddress) -> WhitelistedAddress:
        async with self._db.lock:
            if address.instance.id not in self._db.instances:
                raise NotFoundError(f"instance {address.instance.id} not found")
            existing = self._db.addresses.get(address.key)
            if existing is not None:
                address = replace(existing, updated_at=utcnow())
            self._db.addresses[address.key] = address
            return address

    async def list(self) -> list[WhitelistedAddress]:
        async with self._db.lock:
            result = []
            for address in sorted(self._db.addresses.values(), key=lambda a: a.created_at):
                instance = self._db.instances[address.instance.id]
                joined = Instance(
                    id=instance.id,
                    image_id=0,
                    port=instance.port,
                    user_email=instance.user_email,
                )
                result.append(replace(address, instance=joined))
            return result
