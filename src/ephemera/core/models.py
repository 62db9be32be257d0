"""Data model shared by the stores, the routes and the control loops."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Image:
    """A snapshotted database image that instances are cloned from."""

    backed_up_at: datetime
    ready: bool = False
    id: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "backed_up_at": self.backed_up_at.isoformat(),
            "ready": self.ready,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class InstanceCredentials:
    """TLS material a client needs to connect to an instance."""

    ca_certificate: str
    client_certificate: str
    client_key: str

    @classmethod
    def from_files(cls, files: dict[str, bytes]) -> InstanceCredentials:
        return cls(
            ca_certificate=files["ca.crt"].decode(),
            client_certificate=files["client.crt"].decode(),
            client_key=files["client.key"].decode(),
        )


@dataclass
class Instance:
    """A running clone of an image, owned by one user.

    ``refresh_token`` is the long-lived credential captured when the
    instance was created. It is empty for instances created by the
    privileged upload identity, which the cleaner never checks.
    """

    image_id: int
    user_email: str
    refresh_token: str = field(default="", repr=False)
    port: int = 0
    id: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    credentials: InstanceCredentials | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "image_id": self.image_id,
            "port": self.port,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.credentials is not None:
            data["credentials"] = {
                "ca_certificate": self.credentials.ca_certificate,
                "client_certificate": self.credentials.client_certificate,
                "client_key": self.credentials.client_key,
            }
        return data


@dataclass
class WhitelistedAddress:
    """An IP address allowed to reach one instance.

    Keyed by ``(ip_address, instance.id)``. When listed from the store, only
    the instance's id, port and user_email are populated.
    """

    ip_address: str
    instance: Instance
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, int]:
        return (self.ip_address, self.instance.id)
