"""Host-side instance lifecycle.

The database processes themselves are managed by privileged helper
scripts installed next to ephemera; this module only invokes them and reads
back the TLS material they generate.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import structlog

from ephemera.core.models import InstanceCredentials
from ephemera.core.process import run_command

logger = structlog.get_logger()

CREATE_INSTANCE_COMMAND = "ephemera-create-instance"
DESTROY_INSTANCE_COMMAND = "ephemera-destroy-instance"
DESTROY_IMAGE_COMMAND = "ephemera-destroy-image"

CREDENTIAL_FILES = ("ca.crt", "client.crt", "client.key")


class Executor(Protocol):
    async def create_instance(self, image_id: int, instance_id: int, port: int) -> None: ...

    async def destroy_instance(self, instance_id: int) -> None: ...

    async def destroy_image(self, image_id: int) -> None: ...

    async def retrieve_instance_credentials(self, instance_id: int) -> InstanceCredentials: ...


class OSExecutor:
    """Executor backed by the helper scripts, run through sudo."""

    def __init__(self, data_path: str | Path, use_sudo: bool = True):
        self._data_path = Path(data_path)
        self._prefix = ["sudo"] if use_sudo else []

    def instance_path(self, instance_id: int) -> Path:
        return self._data_path / "instances" / str(instance_id)

    async def create_instance(self, image_id: int, instance_id: int, port: int) -> None:
        await run_command(
            *self._prefix,
            CREATE_INSTANCE_COMMAND,
            str(self._data_path),
            str(image_id),
            str(instance_id),
            str(port),
            message="create-instance",
            image_id=image_id,
            instance_id=instance_id,
            port=port,
        )

    async def destroy_instance(self, instance_id: int) -> None:
        await run_command(
            *self._prefix,
            DESTROY_INSTANCE_COMMAND,
            str(self._data_path),
            str(instance_id),
            message="destroy-instance",
            instance_id=instance_id,
        )

    async def destroy_image(self, image_id: int) -> None:
        await run_command(
            *self._prefix,
            DESTROY_IMAGE_COMMAND,
            str(self._data_path),
            str(image_id),
            message="destroy-image",
            image_id=image_id,
        )

    async def retrieve_instance_credentials(self, instance_id: int) -> InstanceCredentials:
        """Read the client certificate, key and CA generated for an instance.

        Raises:
            OSError: If any of the files cannot be read
        """
        path = self.instance_path(instance_id)
        files = {}
        for name in CREDENTIAL_FILES:
            files[name] = await asyncio.to_thread((path / name).read_bytes)
        return InstanceCredentials.from_files(files)
