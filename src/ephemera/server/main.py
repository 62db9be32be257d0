"""Ephemera server: wires the components together and runs them."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import ssl
from pathlib import Path

import structlog
from aiohttp import web

from ephemera.auth.authenticator import GoogleAuthenticator
from ephemera.auth.google import GoogleOAuthClient, OAuthClient, create_google_provider
from ephemera.auth.handshake import AccessTokenHandshake
from ephemera.core.config import ServerConfig
from ephemera.firewall.base import Firewall
from ephemera.firewall.iptables import IPTablesFirewall
from ephemera.firewall.reconciler import DisabledReconciler, WhitelistReconciler
from ephemera.instances.cleaner import InstanceCleaner
from ephemera.instances.executor import Executor, OSExecutor
from ephemera.observability.errors import ErrorReporter
from ephemera.server.api import ImageHandlers, InstanceHandlers, create_app
from ephemera.server.middleware import ClientIPResolver
from ephemera.store.memory import (
    MemoryDatabase,
    MemoryImageStore,
    MemoryInstanceStore,
    MemoryWhitelistedAddressStore,
)

logger = structlog.get_logger()


class EphemeraServer:
    """API server plus the cleaner and whitelist reconciler loops.

    Collaborators default to the production implementations and can be
    replaced, which is how the tests run the server without Google or
    iptables.
    """

    def __init__(
        self,
        config: ServerConfig,
        *,
        oauth_client: OAuthClient | None = None,
        executor: Executor | None = None,
        firewall: Firewall | None = None,
    ):
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._runner: web.AppRunner | None = None
        self._tasks: list[asyncio.Task] = []

        self.errors = ErrorReporter(config.environment)
        self.oauth_client = oauth_client or GoogleOAuthClient(
            create_google_provider(
                config.oauth_client_id,
                config.oauth_client_secret,
                config.oauth_redirect_url,
            )
        )
        self.executor = executor or OSExecutor(config.data_path)

        db = MemoryDatabase()
        self.image_store = MemoryImageStore()
        self.instance_store = MemoryInstanceStore(db)
        self.address_store = MemoryWhitelistedAddressStore(db)

        self.reconciler: WhitelistReconciler | DisabledReconciler
        if config.enable_ip_whitelisting:
            self.reconciler = WhitelistReconciler(
                self.address_store,
                firewall or IPTablesFirewall(config.whitelist_chain_name),
                self.errors,
            )
        else:
            self.reconciler = DisabledReconciler()

        self.authenticator = GoogleAuthenticator(
            self.oauth_client,
            config.shared_secret,
            config.trusted_user_email_domain,
        )
        self.handshake = AccessTokenHandshake(self.oauth_client)
        self.cleaner = InstanceCleaner(
            self.instance_store,
            self.executor,
            self.authenticator,
            self.reconciler,
            self.errors,
        )
        self.resolver = ClientIPResolver(
            config.trusted_proxy_networks, config.use_x_forwarded_for
        )
        self.app = create_app(
            self.authenticator,
            self.handshake,
            InstanceHandlers(
                self.image_store,
                self.instance_store,
                self.address_store,
                self.executor,
                self.reconciler,
                config.min_instance_port,
                config.max_instance_port,
            ),
            ImageHandlers(
                self.image_store, self.instance_store, self.executor, self.reconciler
            ),
            self.resolver,
        )

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def _create_ssl_context(self) -> ssl.SSLContext | None:
        """Create SSL context from certificate files."""
        if not self.config.tls_enabled:
            logger.warning("No TLS certificates provided, running without TLS")
            return None

        cert_path = Path(self.config.http_tls_certificate)
        key_path = Path(self.config.http_tls_private_key)
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(str(cert_path), str(key_path))
        ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
        logger.info("TLS context created", cert=str(cert_path))
        return ssl_context

    def _parse_bind(self, bind: str) -> tuple[str, int]:
        """Parse bind address into host and port."""
        if ":" in bind:
            host, port = bind.rsplit(":", 1)
            return host, int(port)
        return "0.0.0.0", int(bind)

    def start_background_tasks(self) -> None:
        """Start the cleaner and, when whitelisting is on, the reconciler."""
        self._tasks.append(
            asyncio.create_task(
                self.cleaner.run(self.config.clean_interval, self._shutdown_event),
                name="instance-cleaner",
            )
        )
        if isinstance(self.reconciler, WhitelistReconciler):
            self._tasks.append(
                asyncio.create_task(
                    self.reconciler.run(
                        self.config.whitelist_reconcile_interval, self._shutdown_event
                    ),
                    name="whitelist-reconciler",
                )
            )
        else:
            logger.info("IP whitelisting disabled")

    async def start(self) -> None:
        ssl_context = self._create_ssl_context()

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        host, port = self._parse_bind(self.config.http_listen_address)
        site = web.TCPSite(self._runner, host, port, ssl_context=ssl_context)
        await site.start()

        insecure_port = self.config.http_insecure_port
        if insecure_port is not None:
            # Loopback only, so local tooling can skip TLS without exposing it.
            insecure_site = web.TCPSite(self._runner, "127.0.0.1", insecure_port)
            await insecure_site.start()
            logger.info("Serving plain HTTP on loopback", port=insecure_port)

        self.start_background_tasks()
        logger.info(
            "Ephemera server started",
            host=host,
            port=port,
            tls=ssl_context is not None,
            environment=self.config.environment,
            ip_whitelisting=self.config.enable_ip_whitelisting,
        )

    async def stop(self) -> None:
        """Stop the background loops, then the HTTP server."""
        logger.info("Stopping ephemera server...")
        self._shutdown_event.set()

        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Background task failed", task=task.get_name(), error=str(e))
        self._tasks.clear()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Ephemera server stopped")

    async def wait_background_tasks(self) -> None:
        """Block until a background task exits or shutdown is requested.

        A background loop only exits on its own when it cannot run at all
        (for example the whitelist chain could not be created), which is
        fatal for the server.
        """
        stopper = asyncio.create_task(self._shutdown_event.wait())
        try:
            done, _ = await asyncio.wait(
                [stopper, *self._tasks], return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()
        for task in done:
            if task is stopper or task.cancelled():
                continue
            if (error := task.exception()) is not None:
                raise error


async def run_server(config: ServerConfig) -> None:
    """Run the server until SIGINT or SIGTERM."""
    server = EphemeraServer(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, server.shutdown_event.set)

    try:
        await server.start()
        await server.wait_background_tasks()
    finally:
        await server.stop()
