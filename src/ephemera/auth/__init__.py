"""Authentication: request identity, credential checks and the OAuth handshake."""

from ephemera.auth.authenticator import (
    AuthenticatedUser,
    Authenticator,
    CredentialCheck,
    GoogleAuthenticator,
    parse_bearer_token,
)
from ephemera.auth.google import (
    GoogleOAuthClient,
    OAuthClient,
    ProviderConfig,
    create_google_provider,
)
from ephemera.auth.handshake import AccessTokenHandshake

__all__ = [
    "AccessTokenHandshake",
    "AuthenticatedUser",
    "Authenticator",
    "CredentialCheck",
    "GoogleAuthenticator",
    "GoogleOAuthClient",
    "OAuthClient",
    "ProviderConfig",
    "create_google_provider",
    "parse_bearer_token",
]
