"""API routes and application factory."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

import structlog
from aiohttp import web

from ephemera import __version__
from ephemera.auth.authenticator import AuthenticatedUser, Authenticator
from ephemera.auth.handshake import AccessTokenHandshake
from ephemera.core.models import Image, Instance, WhitelistedAddress
from ephemera.errors import CommandError, DuplicatePortError, NotFoundError
from ephemera.instances.cleaner import ReconcileTrigger
from ephemera.instances.executor import Executor
from ephemera.instances.ports import allocate_instance_port
from ephemera.observability.metrics import generate_metrics, get_content_type
from ephemera.server.middleware import (
    ClientIPResolver,
    client_ip,
    create_auth_middleware,
    create_version_middleware,
    current_user,
    error_middleware,
)
from ephemera.server.responses import json_error
from ephemera.store.base import ImageStore, InstanceStore, WhitelistedAddressStore

logger = structlog.get_logger()

PUBLIC_PATHS = (
    "/health_check",
    "/metrics",
    "/authenticate",
    "/oauth_callback",
    "/access_tokens",
)

# Routes a browser or monitoring system calls without an ephemera client.
VERSION_EXEMPT_PATHS = (
    "/health_check",
    "/metrics",
    "/authenticate",
    "/oauth_callback",
)

# Allocation races with concurrent creates are settled by the store's port
# uniqueness check; the losing request draws a new port.
PORT_ALLOCATION_ATTEMPTS = 3


class InstanceHandlers:
    """Handlers for the ``/instances`` resource."""

    def __init__(
        self,
        image_store: ImageStore,
        instance_store: InstanceStore,
        address_store: WhitelistedAddressStore,
        executor: Executor,
        reconciler: ReconcileTrigger,
        min_port: int,
        max_port: int,
    ):
        self._images = image_store
        self._instances = instance_store
        self._addresses = address_store
        self._executor = executor
        self._reconciler = reconciler
        self._min_port = min_port
        self._max_port = max_port

    async def _store_with_free_port(self, user: AuthenticatedUser, image: Image) -> Instance:
        attempt = 0
        while True:
            attempt += 1
            port = await allocate_instance_port(self._instances, self._min_port, self._max_port)
            try:
                return await self._instances.create(
                    Instance(
                        image_id=image.id,
                        user_email=user.email,
                        refresh_token=user.refresh_token,
                        port=port,
                    )
                )
            except DuplicatePortError:
                if attempt >= PORT_ALLOCATION_ATTEMPTS:
                    raise
                logger.info("Port taken by a concurrent create, retrying", port=port, attempt=attempt)

    async def _whitelist_caller(self, request: web.Request, instance: Instance) -> None:
        address = client_ip(request)
        if address is None:
            logger.warning("Cannot determine caller IP, not whitelisting", instance_id=instance.id)
            return
        await self._addresses.create(WhitelistedAddress(ip_address=address, instance=instance))
        self._reconciler.trigger_reconcile("api")

    async def _get_owned(self, request: web.Request) -> Instance:
        user = current_user(request)
        instance = await self._instances.get(int(request.match_info["id"]))
        if instance.user_email != user.email and not user.is_upload:
            raise NotFoundError(f"instance {instance.id} not found")
        return instance

    async def list(self, request: web.Request) -> web.Response:
        user = current_user(request)
        instances = [i for i in await self._instances.list() if i.user_email == user.email]
        return web.json_response([i.to_dict() for i in instances])

    async def create(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return json_error(400, "invalid_json", "request body must be JSON")
        image_id = body.get("image_id") if isinstance(body, dict) else None
        if not isinstance(image_id, int) or isinstance(image_id, bool):
            return json_error(400, "invalid_image_id", "image_id must be an integer")

        image = await self._images.get(image_id)
        if not image.ready:
            return json_error(422, "image_not_ready", f"image {image.id} is not ready")

        user = current_user(request)
        instance = await self._store_with_free_port(user, image)
        log = logger.bind(instance_id=instance.id, user_email=user.email, port=instance.port)

        try:
            await self._executor.create_instance(image.id, instance.id, instance.port)
        except CommandError as e:
            log.error("Failed to create instance", error=str(e))
            await self._instances.destroy(instance)
            return json_error(500, "create_failed", "failed to create instance")

        log.info("Created instance", image_id=image.id)
        await self._whitelist_caller(request, instance)
        return web.json_response(instance.to_dict(), status=201)

    async def get(self, request: web.Request) -> web.Response:
        instance = await self._get_owned(request)
        credentials = await self._executor.retrieve_instance_credentials(instance.id)
        await self._whitelist_caller(request, instance)
        return web.json_response(replace(instance, credentials=credentials).to_dict())

    async def destroy(self, request: web.Request) -> web.Response:
        instance = await self._get_owned(request)
        await self._executor.destroy_instance(instance.id)
        await self._instances.destroy(instance)
        logger.info(
            "Destroyed instance",
            instance_id=instance.id,
            user_email=current_user(request).email,
        )
        self._reconciler.trigger_reconcile("api")
        return web.Response(status=204)


class ImageHandlers:
    """Handlers for the ``/images`` resource.

    Images are registered by the upload identity once a backup has been
    restored, marked ready when the data is in place, and destroyed by the
    same identity together with every instance cloned from them.
    """

    def __init__(
        self,
        image_store: ImageStore,
        instance_store: InstanceStore,
        executor: Executor,
        reconciler: ReconcileTrigger,
    ):
        self._images = image_store
        self._instances = instance_store
        self._executor = executor
        self._reconciler = reconciler

    def _require_upload(self, request: web.Request) -> web.Response | None:
        if not current_user(request).is_upload:
            return json_error(403, "forbidden", "only the upload user can manage images")
        return None

    async def list(self, request: web.Request) -> web.Response:
        return web.json_response([i.to_dict() for i in await self._images.list()])

    async def create(self, request: web.Request) -> web.Response:
        if (denied := self._require_upload(request)) is not None:
            return denied
        try:
            body = await request.json()
            backed_up_at = datetime.fromisoformat(body["backed_up_at"])
        except (ValueError, KeyError, TypeError):
            return json_error(400, "invalid_body", "backed_up_at must be an ISO 8601 timestamp")

        image = await self._images.create(Image(backed_up_at=backed_up_at))
        logger.info("Created image", image_id=image.id)
        return web.json_response(image.to_dict(), status=201)

    async def get(self, request: web.Request) -> web.Response:
        image = await self._images.get(int(request.match_info["id"]))
        return web.json_response(image.to_dict())

    async def done(self, request: web.Request) -> web.Response:
        if (denied := self._require_upload(request)) is not None:
            return denied
        image = await self._images.mark_ready(int(request.match_info["id"]))
        logger.info("Image ready", image_id=image.id)
        return web.json_response(image.to_dict())

    async def destroy(self, request: web.Request) -> web.Response:
        """Tear down an image together with every instance cloned from it."""
        if (denied := self._require_upload(request)) is not None:
            return denied
        image = await self._images.get(int(request.match_info["id"]))
        log = logger.bind(image_id=image.id)

        for instance in await self._instances.list():
            if instance.image_id != image.id:
                continue
            await self._executor.destroy_instance(instance.id)
            await self._instances.destroy(instance)
            log.info("Destroyed instance of image", instance_id=instance.id)

        await self._executor.destroy_image(image.id)
        await self._images.destroy(image)
        log.info("Destroyed image")
        self._reconciler.trigger_reconcile("api")
        return web.Response(status=204)


async def handle_health_check(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def handle_metrics(request: web.Request) -> web.Response:
    return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})


def create_app(
    authenticator: Authenticator,
    handshake: AccessTokenHandshake,
    instances: InstanceHandlers,
    images: ImageHandlers,
    resolver: ClientIPResolver | None = None,
    server_version: str = __version__,
) -> web.Application:
    """Build the API application.

    Args:
        authenticator: Authenticates every non-public request
        handshake: Serves the OAuth login routes
        instances: Serves the instance routes
        images: Serves the image routes
        resolver: Caller IP resolution, peer address only by default
        server_version: Version API clients are checked against
    """
    app = web.Application(
        middlewares=[
            error_middleware,
            create_version_middleware(server_version, VERSION_EXEMPT_PATHS),
            create_auth_middleware(authenticator, resolver or ClientIPResolver(), PUBLIC_PATHS),
        ]
    )
    app.router.add_get("/health_check", handle_health_check)
    app.router.add_get("/metrics", handle_metrics)
    app.router.add_get("/authenticate", handshake.handle_authenticate)
    app.router.add_get("/oauth_callback", handshake.handle_callback)
    app.router.add_post("/access_tokens", handshake.handle_create)
    app.router.add_get("/instances", instances.list)
    app.router.add_post("/instances", instances.create)
    app.router.add_get(r"/instances/{id:\d+}", instances.get)
    app.router.add_delete(r"/instances/{id:\d+}", instances.destroy)
    app.router.add_get("/images", images.list)
    app.router.add_post("/images", images.create)
    app.router.add_get(r"/images/{id:\d+}", images.get)
    app.router.add_delete(r"/images/{id:\d+}", images.destroy)
    app.router.add_post(r"/images/{id:\d+}/done", images.done)
    return app
