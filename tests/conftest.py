"""Shared test doubles for ephemera tests."""

from __future__ import annotations

import asyncio
from ipaddress import ip_address
from typing import Any

import pytest

from ephemera.core.models import InstanceCredentials
from ephemera.errors import CommandError, FirewallError
from ephemera.firewall.rules import RuleEntry
from ephemera.observability.errors import ErrorReporter


class FakeFirewall:
    """In-memory IPv4-only Firewall that records every mutation."""

    def __init__(self, rules: list[RuleEntry] | None = None):
        self.rules: list[RuleEntry] = list(rules or [])
        self.chain_created = False
        self.appended: list[RuleEntry] = []
        self.deleted: list[RuleEntry] = []
        self.fail_list = False
        self.fail_ensure = False
        self.fail_append = False

    def supports(self, address: str) -> bool:
        return ip_address(address).version == 4

    async def ensure_chain(self) -> None:
        if self.fail_ensure:
            raise FirewallError("unable to determine iptables chains")
        self.chain_created = True

    async def list_rules(self) -> list[RuleEntry]:
        if self.fail_list:
            raise FirewallError("failed to list rules in chain")
        return list(self.rules)

    async def append_unique(self, rule: RuleEntry) -> None:
        if self.fail_append or not self.supports(rule.ip_address):
            raise FirewallError(f"failed to add rule to chain: {rule}")
        self.appended.append(rule)
        if rule not in self.rules:
            self.rules.append(rule)

    async def delete(self, rule: RuleEntry) -> None:
        self.deleted.append(rule)
        self.rules.remove(rule)

    @property
    def mutations(self) -> int:
        return len(self.appended) + len(self.deleted)


class FakeOAuthClient:
    """OAuthClient with canned responses.

    ``emails`` maps refresh tokens to the email they resolve to; ``errors``
    maps refresh tokens to the exception the lookup raises.
    """

    def __init__(self):
        self.emails: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.exchange_result: dict[str, Any] = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_type": "Bearer",
            "expires_at": 1700000000,
        }
        self.exchange_error: Exception | None = None
        self.exchange_delay = 0.0
        self.exchanged_codes: list[str] = []
        self.revoked: list[str] = []
        self.revoke_error: Exception | None = None
        self.lookups: list[str] = []

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}&access_type=offline"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        self.exchanged_codes.append(code)
        if self.exchange_delay:
            await asyncio.sleep(self.exchange_delay)
        if self.exchange_error is not None:
            raise self.exchange_error
        return dict(self.exchange_result)

    async def revoke_token(self, access_token: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(access_token)

    async def lookup_refresh_token(self, refresh_token: str) -> str:
        self.lookups.append(refresh_token)
        if refresh_token in self.errors:
            raise self.errors[refresh_token]
        if refresh_token not in self.emails:
            raise ValueError("token info does not include an email address")
        return self.emails[refresh_token]


class FakeExecutor:
    """Executor that records calls instead of running host commands."""

    def __init__(self):
        self.created: list[tuple[int, int, int]] = []
        self.destroyed: list[int] = []
        self.fail_create = False
        self.fail_destroy: set[int] = set()
        self.destroyed_images: list[int] = []

    async def create_instance(self, image_id: int, instance_id: int, port: int) -> None:
        if self.fail_create:
            raise CommandError(["ephemera-create-instance"], 1, stderr="no space left")
        self.created.append((image_id, instance_id, port))

    async def destroy_instance(self, instance_id: int) -> None:
        if instance_id in self.fail_destroy:
            raise CommandError(["ephemera-destroy-instance"], 1, stderr="device busy")
        self.destroyed.append(instance_id)

    async def destroy_image(self, image_id: int) -> None:
        self.destroyed_images.append(image_id)

    async def retrieve_instance_credentials(self, instance_id: int) -> InstanceCredentials:
        return InstanceCredentials(
            ca_certificate=f"ca-{instance_id}",
            client_certificate=f"cert-{instance_id}",
            client_key=f"key-{instance_id}",
        )


class RecordingReporter(ErrorReporter):
    """ErrorReporter that also keeps what it captured."""

    def __init__(self):
        super().__init__(environment="test")
        self.captured: list[tuple[BaseException, str]] = []

    def capture(self, error: BaseException, component: str, **context: object) -> None:
        super().capture(error, component, **context)
        self.captured.append((error, component))


class RecordingTrigger:
    def __init__(self):
        self.sources: list[str] = []

    def trigger_reconcile(self, source: str) -> bool:
        self.sources.append(source)
        return True


@pytest.fixture
def firewall():
    return FakeFirewall()


@pytest.fixture
def oauth_client():
    return FakeOAuthClient()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def trigger():
    return RecordingTrigger()
