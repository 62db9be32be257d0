"""Google OAuth client.

Wraps the four identity-provider calls ephemera needs: building the consent
URL, exchanging an authorization code, revoking an access token, and turning
a refresh token into the email address it belongs to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
import structlog
from authlib.integrations.httpx_client import AsyncOAuth2Client

logger = structlog.get_logger()

# Every provider call is bounded, so a hung provider cannot stall the
# cleaner or a request handler indefinitely.
PROVIDER_REQUEST_TIMEOUT = 10.0


@dataclass
class ProviderConfig:
    """OAuth provider endpoints and client credentials."""

    name: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    authorize_url: str
    token_url: str
    tokeninfo_url: str
    revoke_url: str
    scopes: list[str] = field(default_factory=lambda: ["openid", "email"])

    def __post_init__(self):
        if not self.client_id or not self.client_secret:
            raise ValueError("ProviderConfig requires client_id and client_secret")


def create_google_provider(client_id: str, client_secret: str, redirect_uri: str) -> ProviderConfig:
    """Create the Google provider configuration.

    Args:
        client_id: Google OAuth client ID
        client_secret: Google OAuth client secret
        redirect_uri: The callback URL registered with Google

    Returns:
        Configured ProviderConfig for Google
    """
    return ProviderConfig(
        name="google",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        authorize_url="https://accounts.google.com/o/oauth2/auth",
        token_url="https://oauth2.googleapis.com/token",
        tokeninfo_url="https://www.googleapis.com/oauth2/v3/tokeninfo",
        revoke_url="https://oauth2.googleapis.com/revoke",
        scopes=["openid", "email"],
    )


class OAuthClient(Protocol):
    """The identity-provider operations ephemera depends on."""

    def authorization_url(self, state: str) -> str:
        """Consent URL that requests offline access (a refresh token)."""
        ...

    async def exchange_code(self, code: str) -> dict[str, Any]: ...

    async def revoke_token(self, access_token: str) -> None: ...

    async def lookup_refresh_token(self, refresh_token: str) -> str:
        """Return the email address the refresh token was issued to."""
        ...


class GoogleOAuthClient:
    """OAuthClient talking to Google's OAuth 2.0 endpoints."""

    def __init__(self, provider: ProviderConfig, timeout: float = PROVIDER_REQUEST_TIMEOUT):
        self._provider = provider
        self._timeout = timeout

    def _oauth_client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self._provider.client_id,
            client_secret=self._provider.client_secret,
            redirect_uri=self._provider.redirect_uri,
            scope=" ".join(self._provider.scopes),
            timeout=self._timeout,
        )

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._provider.client_id,
            "redirect_uri": self._provider.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._provider.scopes),
            "state": state,
            "access_type": "offline",
        }
        return f"{self._provider.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        async with self._oauth_client() as client:
            token = await client.fetch_token(self._provider.token_url, code=code)
        return dict(token)

    async def revoke_token(self, access_token: str) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self._provider.revoke_url,
                params={"token": access_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        response.raise_for_status()
        logger.info("Revoked access token", provider=self._provider.name)

    async def lookup_refresh_token(self, refresh_token: str) -> str:
        """Use a refresh token to obtain an access token, then look up its owner.

        Raises:
            OAuthError: If the provider rejects the refresh token
            httpx.HTTPError: On network failures or error responses
            ValueError: If the token info carries no email
        """
        async with self._oauth_client() as client:
            token = await client.refresh_token(
                self._provider.token_url, refresh_token=refresh_token
            )

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(
                self._provider.tokeninfo_url,
                params={"access_token": token["access_token"]},
            )
        response.raise_for_status()

        email = response.json().get("email")
        if not email:
            raise ValueError("token info does not include an email address")
        return email
