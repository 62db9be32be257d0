"""Whitelist reconciler.

Keeps the firewall chain in step with the whitelisted_addresses store. The
desired rule set is derived from the store, the existing set is read back
from the firewall, and only the difference is applied.

Reconciles are requested through a bounded queue and consumed by a single
loop, so the chain never has more than one writer. Requests come from the
API after instances or addresses change, from the instance cleaner, and
from an internal timer that heals drift introduced outside ephemera.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field

import structlog

from ephemera.errors import FirewallError
from ephemera.firewall.base import Firewall
from ephemera.firewall.rules import RuleEntry, diff_rules, normalize_address
from ephemera.observability.errors import ErrorReporter
from ephemera.observability.metrics import (
    FIREWALL_RULE_CHANGES,
    RECONCILE_CYCLES,
    RECONCILE_DURATION,
    RECONCILE_QUEUE_DEPTH,
)
from ephemera.store.base import WhitelistedAddressStore

logger = structlog.get_logger()

# A full queue means reconciles have stalled for a long time. Requests are
# dropped and reported rather than blocking API handlers.
QUEUE_CAPACITY = 100


@dataclass
class ReconcileRequest:
    """A request to bring the chain in line with the store."""

    # Where the request came from: "timer", "api" or "cleaner"
    source: str
    requested_at: float = field(default_factory=time.monotonic)


@dataclass
class ReconcileResult:
    added: list[RuleEntry]
    removed: list[RuleEntry]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class WhitelistReconciler:
    """Converges the firewall whitelist chain on the desired rule set."""

    def __init__(
        self,
        address_store: WhitelistedAddressStore,
        firewall: Firewall,
        error_reporter: ErrorReporter,
        queue_capacity: int = QUEUE_CAPACITY,
    ):
        self._address_store = address_store
        self._firewall = firewall
        self._errors = error_reporter
        self._queue: asyncio.Queue[ReconcileRequest] = asyncio.Queue(maxsize=queue_capacity)
        self._unsupported: set[tuple[str, int]] = set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def trigger_reconcile(self, source: str) -> bool:
        """Request a reconcile without waiting for it.

        Safe to call from any handler or background task.

        Returns:
            False if the request was dropped because the queue is full
        """
        try:
            self._queue.put_nowait(ReconcileRequest(source))
        except asyncio.QueueFull:
            error = FirewallError(
                f"reconcile queue full ({self._queue.maxsize} pending), dropping request"
            )
            self._errors.capture(error, component="whitelist", trigger_source=source)
            return False
        RECONCILE_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def run(self, interval: float, shutdown: asyncio.Event) -> None:
        """Process reconcile requests until ``shutdown`` is set.

        The chain is created first if it is missing; failing to do so is the
        only error that escapes this method. Failed cycles are reported and
        retried on the next request.

        Args:
            interval: Seconds between timer-triggered reconciles
            shutdown: Event that stops the loop once set
        """
        await self._firewall.ensure_chain()

        timer = asyncio.create_task(self._trigger_periodically(interval, shutdown))
        logger.info("Whitelist reconciler started", interval=interval)
        try:
            while True:
                request = await self._next_request(shutdown)
                if request is None:
                    break
                await self._reconcile_and_report(request)
        finally:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
            logger.info("Whitelist reconciler stopped")

    async def _trigger_periodically(self, interval: float, shutdown: asyncio.Event) -> None:
        # The first trigger fires immediately so that startup converges.
        while not shutdown.is_set():
            self.trigger_reconcile("timer")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown.wait(), timeout=interval)

    async def _next_request(self, shutdown: asyncio.Event) -> ReconcileRequest | None:
        if shutdown.is_set():
            return None

        getter = asyncio.create_task(self._queue.get())
        stopper = asyncio.create_task(shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (getter, stopper):
                if not task.done():
                    task.cancel()

        if getter in done:
            RECONCILE_QUEUE_DEPTH.set(self._queue.qsize())
            return getter.result()
        return None

    async def _reconcile_and_report(self, request: ReconcileRequest) -> None:
        try:
            await self.reconcile(request)
        except Exception as e:
            # The worst outcome of a failed cycle is a rule added or removed
            # late. The next trigger retries, so only report it.
            RECONCILE_CYCLES.labels(source=request.source, outcome="error").inc()
            self._errors.capture(
                FirewallError(f"failed to reconcile whitelist rules: {e}"),
                component="whitelist",
                trigger_source=request.source,
            )
        else:
            RECONCILE_CYCLES.labels(source=request.source, outcome="success").inc()

    async def desired_rules(self) -> list[RuleEntry]:
        """One rule per whitelisted address the firewall can install, from the store.

        Addresses the firewall cannot hold (for example IPv6 on an iptables
        chain) are skipped so that they never block the rest of the chain.
        Each one is reported the first time it is seen.
        """
        addresses = await self._address_store.list()
        rules = []
        unsupported = set()
        for a in addresses:
            try:
                address = normalize_address(a.ip_address)
            except ValueError:
                address = None
            if address is None or not self._firewall.supports(address):
                unsupported.add(a.key)
                if a.key not in self._unsupported:
                    self._errors.capture(
                        FirewallError(f"cannot whitelist address {a.ip_address!r} on this firewall"),
                        component="whitelist",
                        ip_address=a.ip_address,
                        instance_id=a.instance.id,
                    )
                continue
            rules.append(RuleEntry(address, a.instance.port, a.instance.user_email))
        self._unsupported = unsupported
        return rules

    async def reconcile(self, request: ReconcileRequest | None = None) -> ReconcileResult:
        """Run one reconcile cycle.

        Raises:
            Exception: Whatever the store or firewall raised. The cycle stops
                at the first failure.
        """
        request = request or ReconcileRequest("manual")
        start = time.monotonic()
        log = logger.bind(trigger_source=request.source)
        log.info(
            "Starting whitelist reconciliation",
            latency=round(start - request.requested_at, 3),
        )

        desired = await self.desired_rules()
        existing = await self._firewall.list_rules()
        to_add, to_remove = diff_rules(desired, existing)

        # Revocations first, so a failing add never keeps a stale rule alive.
        for rule in to_remove:
            await self._firewall.delete(rule)
            FIREWALL_RULE_CHANGES.labels(action="remove").inc()
            log.info(
                "Removed rule from whitelist chain",
                user_email=rule.user_email,
                ip_address=rule.ip_address,
                port=rule.port,
            )

        for rule in to_add:
            await self._firewall.append_unique(rule)
            FIREWALL_RULE_CHANGES.labels(action="add").inc()
            log.info(
                "Added rule to whitelist chain",
                user_email=rule.user_email,
                ip_address=rule.ip_address,
                port=rule.port,
            )

        if not to_add and not to_remove:
            log.info("No changes to whitelist chain required")

        duration = time.monotonic() - start
        RECONCILE_DURATION.observe(duration)
        log.info("Finished whitelist reconciliation", duration=round(duration, 3))

        return ReconcileResult(added=to_add, removed=to_remove)


class DisabledReconciler:
    """Stands in for the reconciler when IP whitelisting is switched off."""

    def trigger_reconcile(self, source: str) -> bool:
        logger.debug("IP whitelisting disabled, ignoring reconcile request", trigger_source=source)
        return False
