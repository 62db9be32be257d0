"""Store interfaces consumed by the routes and the control loops."""

from __future__ import annotations

from typing import Protocol

from ephemera.core.models import Image, Instance, WhitelistedAddress


class ImageStore(Protocol):
    async def create(self, image: Image) -> Image: ...

    async def get(self, image_id: int) -> Image: ...

    async def list(self) -> list[Image]: ...

    async def mark_ready(self, image_id: int) -> Image:
        """Raises NotFoundError if there is no such image."""
        ...

    async def destroy(self, image: Image) -> None: ...


class InstanceStore(Protocol):
    async def create(self, instance: Instance) -> Instance:
        """Persist an instance and assign its id.

        Raises:
            DuplicatePortError: If another instance holds the same port
        """
        ...

    async def list(self) -> list[Instance]: ...

    async def get(self, instance_id: int) -> Instance:
        """Raises NotFoundError if there is no such instance."""
        ...

    async def destroy(self, instance: Instance) -> None:
        """Delete an instance along with its whitelisted addresses."""
        ...


class WhitelistedAddressStore(Protocol):
    async def create(self, address: WhitelistedAddress) -> WhitelistedAddress:
        """Insert, or refresh ``updated_at`` for an existing (ip, instance) pair."""
        ...

    async def list(self) -> list[WhitelistedAddress]:
        """List every address joined with its instance's id, port and owner."""
        ...
