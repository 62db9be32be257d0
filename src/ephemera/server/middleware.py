"""Request middleware: caller IP resolution, version checks, auth and error mapping.

Example:
    resolver = ClientIPResolver(
        trusted_proxies=["10.0.0.0/8"],
        use_x_forwarded_for=True,
    )

    # X-Forwarded-For: 203.0.113.9, 10.1.2.3 with the peer 10.1.2.4
    resolver.resolve(request)  # "203.0.113.9"
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network

import structlog
from aiohttp import web

from ephemera.auth.authenticator import AuthenticatedUser, Authenticator
from ephemera.errors import (
    AuthenticationError,
    DuplicatePortError,
    EphemeraError,
    HandshakeError,
    HandshakeTimeoutError,
    NotFoundError,
    PortExhaustedError,
    StateConflictError,
)
from ephemera.server.responses import json_error

logger = structlog.get_logger()

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

VERSION_HEADER = "Ephemera-Version"
SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")

USER_KEY = "ephemera.user"
CLIENT_IP_KEY = "ephemera.client_ip"

# Most specific classes first.
ERROR_STATUSES: list[tuple[type[EphemeraError], int, str]] = [
    (AuthenticationError, 401, "unauthorized"),
    (NotFoundError, 404, "not_found"),
    (StateConflictError, 409, "state_conflict"),
    (PortExhaustedError, 503, "no_free_port"),
    (DuplicatePortError, 503, "no_free_port"),
    (HandshakeTimeoutError, 504, "callback_timeout"),
    (HandshakeError, 400, "oauth_error"),
]


@dataclass
class ClientIPResolver:
    """Works out the address a request really came from.

    Without ``use_x_forwarded_for`` the peer address is used. Otherwise the
    X-Forwarded-For hops are walked from the right, skipping hops inside a
    trusted proxy network and hops that are not valid addresses, and the
    first remaining hop wins. The peer address is the fallback.
    """

    trusted_proxies: Sequence[str | IPv4Network | IPv6Network] = field(default_factory=list)
    use_x_forwarded_for: bool = False

    _networks: list[IPv4Network | IPv6Network] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self._networks = [
            ip_network(str(cidr).strip(), strict=False) for cidr in self.trusted_proxies
        ]

    def is_trusted(self, address: str) -> bool:
        addr = ip_address(address)
        return any(addr in network for network in self._networks)

    def from_forwarded_for(self, header: str) -> str | None:
        for hop in reversed(header.split(",")):
            hop = hop.strip()
            if not hop:
                continue
            try:
                if self.is_trusted(hop):
                    continue
            except ValueError:
                logger.info("Skipping invalid X-Forwarded-For hop", hop=hop)
                continue
            return str(ip_address(hop))
        return None

    def resolve(self, request: web.Request) -> str | None:
        if self.use_x_forwarded_for:
            header = request.headers.get("X-Forwarded-For", "")
            if header:
                address = self.from_forwarded_for(header)
                if address is not None:
                    return address
        return request.remote


def create_auth_middleware(
    authenticator: Authenticator,
    resolver: ClientIPResolver,
    public_paths: Sequence[str],
):
    """Middleware that authenticates every request outside ``public_paths``.

    The caller identity and IP are stored on the request under USER_KEY and
    CLIENT_IP_KEY.
    """
    public = frozenset(public_paths)

    @web.middleware
    async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        request[CLIENT_IP_KEY] = resolver.resolve(request)
        if request.path in public:
            return await handler(request)

        try:
            user = await authenticator.authenticate_request(request)
        except AuthenticationError as e:
            logger.info(
                "Rejected unauthenticated request",
                path=request.path,
                ip_address=request[CLIENT_IP_KEY],
                reason=e.reason,
            )
            return json_error(401, "unauthorized", e.reason)

        request[USER_KEY] = user
        return await handler(request)

    return auth_middleware


def parse_version(version: str) -> tuple[int, int, int] | None:
    match = SEMVER_RE.match(version.strip())
    if match is None:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch)


def is_version_compatible(server_version: str, request_version: str) -> bool:
    """Whether a client built against ``request_version`` can talk to this server.

    The majors must match and the server must have at least the client's
    minor version. A server version that is not plain ``X.Y.Z`` (a
    development build) accepts every client.
    """
    server = parse_version(server_version)
    if server is None:
        return True
    requested = parse_version(request_version)
    if requested is None:
        return False
    return server[0] == requested[0] and server[1] >= requested[1]


def create_version_middleware(server_version: str, exempt_paths: Sequence[str]):
    """Middleware that rejects API clients built for an incompatible server.

    Clients send their version in the VERSION_HEADER. Browser-facing and
    monitoring routes in ``exempt_paths`` are not checked.
    """
    exempt = frozenset(exempt_paths)

    @web.middleware
    async def version_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path in exempt:
            return await handler(request)

        request_version = request.headers.get(VERSION_HEADER)
        if request_version is None:
            return json_error(
                400,
                "missing_api_version_header",
                f"No API version specified in {VERSION_HEADER} header",
            )
        if not is_version_compatible(server_version, request_version):
            logger.info(
                "Rejected request from incompatible client",
                path=request.path,
                client_version=request_version,
                server_version=server_version,
            )
            return json_error(
                400,
                "invalid_api_version",
                f"Specified API version ({request_version}) does not match "
                f"server version ({server_version})",
            )
        return await handler(request)

    return version_middleware


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Translate ephemera errors escaping a handler into JSON error responses."""
    try:
        return await handler(request)
    except EphemeraError as e:
        for error_type, status, code in ERROR_STATUSES:
            if isinstance(e, error_type):
                return json_error(status, code, str(e))
        logger.error("Unhandled error in request", path=request.path, error=str(e), exc_info=e)
        return json_error(500, "internal_error", "internal server error")


def current_user(request: web.Request) -> AuthenticatedUser:
    return request[USER_KEY]


def client_ip(request: web.Request) -> str | None:
    return request.get(CLIENT_IP_KEY)
