"""OAuth handshake between a CLI client and the browser callback.

A CLI client picks a random ``state``, opens ``/authenticate?state=...`` in
the user's browser and at the same time POSTs the state to
``/access_tokens``. That request blocks until the provider redirects the
browser to ``/oauth_callback`` with the same state. The callback exchanges
the authorization code for a token and hands the result to the waiting
request, which returns it to the client.

Each pending state holds a single future. The callback claims the state by
removing it from the pending map, so every handshake has exactly one
outcome: the token, an error, or a timeout on the waiting side.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from aiohttp import web

from ephemera.auth.google import OAuthClient
from ephemera.errors import (
    HandshakeError,
    HandshakeTimeoutError,
    MissingCodeError,
    ProviderError,
    ReauthenticationRequired,
    StateConflictError,
    TokenExchangeError,
)
from ephemera.observability.metrics import PENDING_HANDSHAKES
from ephemera.server.responses import html_error_page, html_page, json_error

logger = structlog.get_logger()

OAUTH_CALLBACK_TIMEOUT = 60.0
TOKEN_EXCHANGE_TIMEOUT = 5.0

SUCCESS_PAGE = "<h1>Success!</h1><h3>You can close this tab</h3><script>window.close()</script>"
EXPIRED_PAGE = "<h1>Nothing to do</h1><h3>This login request has already finished or expired.</h3>"

TOKEN_FIELDS = ("access_token", "refresh_token", "token_type", "expires_at", "expires_in")


@dataclass
class PendingHandshake:
    state: str
    future: asyncio.Future[dict[str, Any]]
    created_at: float = field(default_factory=time.monotonic)


class AccessTokenHandshake:
    """Rendezvous between ``/access_tokens`` waiters and ``/oauth_callback``.

    Args:
        oauth_client: Client used for the code exchange and revocation
        callback_timeout: Seconds a waiter blocks before giving up
        exchange_timeout: Seconds allowed for the code exchange, revocation included
    """

    def __init__(
        self,
        oauth_client: OAuthClient,
        callback_timeout: float = OAUTH_CALLBACK_TIMEOUT,
        exchange_timeout: float = TOKEN_EXCHANGE_TIMEOUT,
    ):
        self._oauth = oauth_client
        self._callback_timeout = callback_timeout
        self._exchange_timeout = exchange_timeout
        self._pending: dict[str, PendingHandshake] = {}

    @property
    def pending_states(self) -> list[str]:
        return list(self._pending)

    def _update_gauge(self) -> None:
        PENDING_HANDSHAKES.set(len(self._pending))

    async def wait_for_token(self, state: str) -> dict[str, Any]:
        """Register ``state`` and block until its callback delivers a result.

        Raises:
            StateConflictError: If a waiter for ``state`` already exists
            HandshakeTimeoutError: If no callback arrives in time
            HandshakeError: Whatever the callback failed with
        """
        if state in self._pending:
            raise StateConflictError(f"a login with state {state!r} is already pending")

        pending = PendingHandshake(state, asyncio.get_running_loop().create_future())
        self._pending[state] = pending
        self._update_gauge()
        logger.debug("Waiting for oauth callback", state=state)

        try:
            return await asyncio.wait_for(pending.future, timeout=self._callback_timeout)
        except TimeoutError:
            logger.info("Timed out waiting for oauth callback", state=state)
            raise HandshakeTimeoutError("timed out waiting for the oauth callback") from None
        finally:
            # A callback may already have claimed the entry.
            if self._pending.get(state) is pending:
                del self._pending[state]
            self._update_gauge()

    def _claim(self, state: str) -> PendingHandshake | None:
        pending = self._pending.pop(state, None)
        self._update_gauge()
        if pending is None or pending.future.done():
            logger.info("No pending oauth handshake for state", state=state)
            return None
        return pending

    def _deliver(
        self,
        pending: PendingHandshake,
        token: dict[str, Any] | None = None,
        error: HandshakeError | None = None,
    ) -> None:
        if pending.future.done():
            # The waiter timed out or went away during the exchange.
            logger.info("Oauth waiter gone, dropping result", state=pending.state)
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(token)

    async def complete(
        self,
        state: str,
        code: str | None = None,
        error: str | None = None,
    ) -> dict[str, Any] | None:
        """Finish the handshake for ``state`` with the provider's redirect parameters.

        Returns:
            The token delivered to the waiter, or None if no waiter holds ``state``

        Raises:
            HandshakeError: The same error that was delivered to the waiter
        """
        pending = self._claim(state)
        if pending is None:
            return None

        failure: HandshakeError | None = None
        token: dict[str, Any] | None = None
        if error:
            failure = ProviderError(f"identity provider returned an error: {error}")
        elif not code:
            failure = MissingCodeError("callback did not include an authorization code")
        else:
            try:
                async with asyncio.timeout(self._exchange_timeout):
                    token = await self.exchange_code(code)
            except HandshakeError as e:
                failure = e
            except TimeoutError:
                failure = TokenExchangeError("timed out exchanging the authorization code")
            except Exception as e:
                logger.warning("Token exchange failed", state=state, error=str(e))
                failure = TokenExchangeError(f"token exchange error: {e}")
                failure.__cause__ = e

        if failure is not None:
            self._deliver(pending, error=failure)
            raise failure

        self._deliver(pending, token=token)
        logger.info("Oauth handshake completed", state=state)
        return token

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code, insisting on a refresh token.

        A token without a refresh component is revoked straight away, which
        makes the provider issue one on the next consent.

        Raises:
            ReauthenticationRequired: If the token had no refresh component
            TokenExchangeError: If that token could not be revoked
        """
        token = await self._oauth.exchange_code(code)
        if token.get("refresh_token"):
            return token

        logger.info("Token has no refresh token, revoking it")
        try:
            await self._oauth.revoke_token(token.get("access_token", ""))
        except Exception as e:
            raise TokenExchangeError("existing access token was not revoked") from e
        raise ReauthenticationRequired("existing token revoked - please try authenticating again")

    async def handle_authenticate(self, request: web.Request) -> web.Response:
        """GET /authenticate: send the browser to the provider's consent page."""
        state = request.query.get("state")
        if not state:
            return json_error(400, "missing_state", "state query parameter is required")
        raise web.HTTPFound(self._oauth.authorization_url(state))

    async def handle_create(self, request: web.Request) -> web.Response:
        """POST /access_tokens: wait for the callback and return the token."""
        try:
            body = await request.json()
        except ValueError:
            return json_error(400, "invalid_json", "request body must be JSON")
        state = body.get("state") if isinstance(body, dict) else None
        if not state or not isinstance(state, str):
            return json_error(400, "missing_state", "state is required")

        try:
            token = await self.wait_for_token(state)
        except StateConflictError as e:
            return json_error(409, "state_conflict", str(e))
        except HandshakeTimeoutError as e:
            return json_error(504, "callback_timeout", str(e))
        except HandshakeError as e:
            return json_error(400, "oauth_error", str(e))

        return web.json_response({k: token[k] for k in TOKEN_FIELDS if k in token}, status=201)

    async def handle_callback(self, request: web.Request) -> web.Response:
        """GET /oauth_callback: the provider's redirect back to us."""
        state = request.query.get("state")
        if not state:
            return html_error_page("Missing state parameter", status=400)

        try:
            token = await self.complete(
                state,
                code=request.query.get("code"),
                error=request.query.get("error"),
            )
        except HandshakeError as e:
            return html_error_page(str(e))

        if token is None:
            return html_page(EXPIRED_PAGE)
        return html_page(SUCCESS_PAGE)
