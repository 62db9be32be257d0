"""Request authentication.

Every API request carries ``Authorization: Bearer <token>``. The token is
either the shared secret of the trusted upload identity, or a refresh token
issued by the identity provider to a user in the trusted email domain.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Protocol

import httpx
import structlog
from aiohttp import web
from authlib.integrations.base_client import OAuthError

from ephemera.auth.google import OAuthClient
from ephemera.core.config import UPLOAD_USER_EMAIL
from ephemera.errors import AuthenticationError, CredentialCheckError

logger = structlog.get_logger()

# The provider's answer for a refresh token that has been revoked or has
# expired. Anything else is treated as a failure to reach a verdict.
INVALID_GRANT = "invalid_grant"


@dataclass
class AuthenticatedUser:
    """The identity behind a request.

    ``refresh_token`` is empty for the upload identity.
    """

    email: str
    refresh_token: str = field(default="", repr=False)

    @property
    def is_upload(self) -> bool:
        return self.email == UPLOAD_USER_EMAIL


@dataclass
class CredentialCheck:
    """Definitive verdict on a stored refresh token."""

    valid: bool
    reason: str | None = None


class Authenticator(Protocol):
    async def authenticate_request(self, request: web.Request) -> AuthenticatedUser: ...

    async def is_credential_valid(self, refresh_token: str) -> CredentialCheck: ...


def parse_bearer_token(header: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        AuthenticationError: If the header is missing or malformed
    """
    if not header:
        raise AuthenticationError("missing authorization header")
    parts = header.split()
    if len(parts) != 2 or parts[0] != "Bearer":
        raise AuthenticationError("malformed authorization header")
    return parts[1]


def _is_invalid_grant(error: OAuthError) -> bool:
    return error.error == INVALID_GRANT or INVALID_GRANT in str(error)


class GoogleAuthenticator:
    """Authenticates requests against a shared secret and Google OAuth.

    Args:
        oauth_client: Client used to resolve refresh tokens to emails
        shared_secret: Secret that authenticates the upload identity.
            An empty secret disables the bypass.
        trusted_domain: Email domain users must belong to
    """

    def __init__(self, oauth_client: OAuthClient, shared_secret: str, trusted_domain: str):
        self._oauth = oauth_client
        self._shared_secret = shared_secret
        self._trusted_domain = trusted_domain.lower().lstrip("@")

    def _is_shared_secret(self, token: str) -> bool:
        if not self._shared_secret:
            return False
        return secrets.compare_digest(token.encode(), self._shared_secret.encode())

    def _in_trusted_domain(self, email: str) -> bool:
        if not self._trusted_domain:
            return False
        return email.lower().endswith(f"@{self._trusted_domain}")

    async def authenticate(self, authorization: str | None) -> AuthenticatedUser:
        """Authenticate an ``Authorization`` header value.

        Raises:
            AuthenticationError: If the token is missing, unknown to the
                provider, or belongs to a user outside the trusted domain
        """
        token = parse_bearer_token(authorization)

        # The upload identity never touches the provider.
        if self._is_shared_secret(token):
            return AuthenticatedUser(email=UPLOAD_USER_EMAIL)

        try:
            email = await self._oauth.lookup_refresh_token(token)
        except (OAuthError, httpx.HTTPError, ValueError, KeyError) as e:
            logger.info("Failed to look up access token", error=str(e))
            raise AuthenticationError("error looking up access token") from e

        if not self._in_trusted_domain(email):
            logger.warning("Rejected user outside trusted domain", user_email=email)
            raise AuthenticationError(f"invalid email address: {email}")

        return AuthenticatedUser(email=email, refresh_token=token)

    async def authenticate_request(self, request: web.Request) -> AuthenticatedUser:
        return await self.authenticate(request.headers.get("Authorization"))

    async def is_credential_valid(self, refresh_token: str) -> CredentialCheck:
        """Ask the provider whether a stored refresh token still works.

        Only an explicit rejection counts as invalid.

        Raises:
            CredentialCheckError: If the provider could not give a verdict
        """
        try:
            await self._oauth.lookup_refresh_token(refresh_token)
        except OAuthError as e:
            if _is_invalid_grant(e):
                return CredentialCheck(valid=False, reason=e.description or INVALID_GRANT)
            raise CredentialCheckError(f"credential check failed: {e}") from e
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise CredentialCheckError(f"credential check failed: {e}") from e
        return CredentialCheck(valid=True)
