"""Background cleanup of instances whose owner lost access.

When a user's refresh token is revoked (they left the organisation, or
revoked the app), the instances they created should not outlive that. The
cleaner periodically checks every instance's stored credential and destroys
the instance once the provider says the credential is no longer valid.

A check that cannot reach a verdict is never taken as a revocation.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol

import structlog

from ephemera.auth.authenticator import Authenticator
from ephemera.core.models import Instance
from ephemera.instances.executor import Executor
from ephemera.observability.errors import ErrorReporter
from ephemera.observability.metrics import CREDENTIAL_CHECKS, INSTANCES_DESTROYED
from ephemera.store.base import InstanceStore

logger = structlog.get_logger()


class ReconcileTrigger(Protocol):
    def trigger_reconcile(self, source: str) -> bool: ...


class InstanceCleaner:
    def __init__(
        self,
        instance_store: InstanceStore,
        executor: Executor,
        authenticator: Authenticator,
        reconciler: ReconcileTrigger,
        error_reporter: ErrorReporter,
    ):
        self._instances = instance_store
        self._executor = executor
        self._authenticator = authenticator
        self._reconciler = reconciler
        self._errors = error_reporter

    async def run(self, interval: float, shutdown: asyncio.Event) -> None:
        """Sweep every ``interval`` seconds until ``shutdown`` is set."""
        logger.info("Instance cleaner started", interval=interval)
        while not shutdown.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
            if shutdown.is_set():
                break
            await self.sweep()
        logger.info("Instance cleaner stopped")

    async def sweep(self) -> list[Instance]:
        """Check every instance once and destroy those with revoked credentials.

        Failures are reported per instance and never stop the sweep.

        Returns:
            The instances destroyed in this sweep
        """
        logger.info("Cleaning instances with invalid credentials")
        try:
            instances = await self._instances.list()
        except Exception as e:
            self._errors.capture(e, component="cleaner", stage="list")
            return []

        destroyed = []
        for instance in instances:
            if not instance.refresh_token:
                continue

            log = logger.bind(instance_id=instance.id, user_email=instance.user_email)
            try:
                check = await self._authenticator.is_credential_valid(instance.refresh_token)
            except Exception as e:
                CREDENTIAL_CHECKS.labels(outcome="indeterminate").inc()
                log.warning("Could not determine credential validity", error=str(e))
                self._errors.capture(e, component="cleaner", instance_id=instance.id)
                continue

            if check.valid:
                CREDENTIAL_CHECKS.labels(outcome="valid").inc()
                continue

            CREDENTIAL_CHECKS.labels(outcome="invalid").inc()
            log.info("Credential invalid, destroying instance", reason=check.reason)
            try:
                await self.destroy(instance)
            except Exception as e:
                self._errors.capture(e, component="cleaner", instance_id=instance.id)
                continue
            destroyed.append(instance)

        logger.info("Finished cleaning instances", checked=len(instances), destroyed=len(destroyed))
        return destroyed

    async def destroy(self, instance: Instance) -> None:
        """Tear the instance down on the host, drop the record, then resync the firewall."""
        await self._executor.destroy_instance(instance.id)
        await self._instances.destroy(instance)
        INSTANCES_DESTROYED.inc()
        self._reconciler.trigger_reconcile("cleaner")
