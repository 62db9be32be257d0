"""Tests for the instance cleaner."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from authlib.integrations.base_client import OAuthError

from ephemera.auth.authenticator import GoogleAuthenticator
from ephemera.core.models import Instance, WhitelistedAddress
from ephemera.errors import CredentialCheckError, StoreError
from ephemera.instances.cleaner import InstanceCleaner
from ephemera.store.memory import (
    MemoryDatabase,
    MemoryInstanceStore,
    MemoryWhitelistedAddressStore,
)


@pytest.fixture
def db():
    return MemoryDatabase()


@pytest.fixture
def instance_store(db):
    return MemoryInstanceStore(db)


@pytest.fixture
def authenticator(oauth_client):
    oauth_client.emails["good"] = "alice@example.com"
    oauth_client.errors["revoked"] = OAuthError(
        error="invalid_grant", description="Token has been expired or revoked."
    )
    oauth_client.errors["flaky"] = httpx.ConnectTimeout("timed out")
    return GoogleAuthenticator(oauth_client, "secret", "example.com")


@pytest.fixture
def cleaner(instance_store, executor, authenticator, trigger, reporter):
    return InstanceCleaner(instance_store, executor, authenticator, trigger, reporter)


async def add_instance(store, token: str, port: int, email: str = "alice@example.com") -> Instance:
    return await store.create(
        Instance(image_id=1, user_email=email, refresh_token=token, port=port)
    )


class TestSweep:
    """Tests for a single cleaner sweep."""

    @pytest.mark.asyncio
    async def test_revoked_instance_destroyed(
        self, cleaner, instance_store, executor, trigger
    ):
        """Test an instance with a revoked credential is destroyed."""
        keep = await add_instance(instance_store, "good", 6000)
        gone = await add_instance(instance_store, "revoked", 6001)

        destroyed = await cleaner.sweep()

        assert [i.id for i in destroyed] == [gone.id]
        assert executor.destroyed == [gone.id]
        assert [i.id for i in await instance_store.list()] == [keep.id]
        assert trigger.sources == ["cleaner"]

    @pytest.mark.asyncio
    async def test_indeterminate_check_keeps_instance(
        self, cleaner, instance_store, executor, reporter, trigger
    ):
        """Test a network failure never leads to destruction."""
        flaky = await add_instance(instance_store, "flaky", 6000)

        destroyed = await cleaner.sweep()

        assert destroyed == []
        assert executor.destroyed == []
        assert [i.id for i in await instance_store.list()] == [flaky.id]
        assert trigger.sources == []
        error, component = reporter.captured[0]
        assert isinstance(error, CredentialCheckError)
        assert component == "cleaner"

    @pytest.mark.asyncio
    async def test_revoked_and_flaky_are_told_apart(self, cleaner, instance_store, executor):
        """Test invalid_grant and a timeout lead to different outcomes in one sweep."""
        flaky = await add_instance(instance_store, "flaky", 6000)
        revoked = await add_instance(instance_store, "revoked", 6001)

        await cleaner.sweep()

        assert executor.destroyed == [revoked.id]
        assert [i.id for i in await instance_store.list()] == [flaky.id]

    @pytest.mark.asyncio
    async def test_upload_instances_not_checked(self, cleaner, instance_store, oauth_client):
        """Test instances without a stored credential are skipped."""
        await add_instance(instance_store, "", 6000, email="upload")

        assert await cleaner.sweep() == []
        assert oauth_client.lookups == []

    @pytest.mark.asyncio
    async def test_destroy_failure_does_not_stop_sweep(
        self, cleaner, instance_store, executor, reporter
    ):
        """Test a failed teardown is reported and the sweep continues."""
        stuck = await add_instance(instance_store, "revoked", 6000)
        other = await add_instance(instance_store, "revoked", 6001)
        executor.fail_destroy.add(stuck.id)

        destroyed = await cleaner.sweep()

        assert [i.id for i in destroyed] == [other.id]
        assert [i.id for i in await instance_store.list()] == [stuck.id]
        assert len(reporter.captured) == 1

    @pytest.mark.asyncio
    async def test_destroy_cascades_to_whitelist(self, cleaner, db, instance_store):
        """Test a destroyed instance loses its whitelisted addresses."""
        addresses = MemoryWhitelistedAddressStore(db)
        instance = await add_instance(instance_store, "revoked", 6000)
        await addresses.create(WhitelistedAddress(ip_address="1.2.3.4", instance=instance))

        await cleaner.sweep()

        assert await addresses.list() == []

    @pytest.mark.asyncio
    async def test_list_failure_is_reported(self, executor, authenticator, trigger, reporter):
        """Test a store failure skips the sweep without raising."""

        class BrokenStore(MemoryInstanceStore):
            async def list(self):
                raise StoreError("database unavailable")

        cleaner = InstanceCleaner(BrokenStore(), executor, authenticator, trigger, reporter)

        assert await cleaner.sweep() == []
        assert isinstance(reporter.captured[0][0], StoreError)


class TestCleanerLoop:
    """Tests for the cleaner background loop."""

    @pytest.mark.asyncio
    async def test_loop_sweeps_until_shutdown(self, cleaner, instance_store, executor):
        """Test the loop sweeps on its interval and stops on shutdown."""
        gone = await add_instance(instance_store, "revoked", 6000)
        shutdown = asyncio.Event()
        task = asyncio.create_task(cleaner.run(interval=0.02, shutdown=shutdown))

        async def destroyed():
            while gone.id not in executor.destroyed:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(destroyed(), 2.0)
        shutdown.set()
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_wait(self, cleaner, executor):
        """Test shutdown does not wait for the next tick."""
        shutdown = asyncio.Event()
        task = asyncio.create_task(cleaner.run(interval=3600, shutdown=shutdown))
        await asyncio.sleep(0.01)

        shutdown.set()
        await asyncio.wait_for(task, 1.0)
        assert executor.destroyed == []
