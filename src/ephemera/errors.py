"""Exception hierarchy for ephemera.

Request-path errors propagate to the HTTP layer, which maps them to status
codes. Background loops catch them per item and hand them to the
ErrorReporter instead.
"""

from __future__ import annotations


class EphemeraError(Exception):
    """Base class for all ephemera errors."""


class AuthenticationError(EphemeraError):
    """The request could not be authenticated."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CredentialCheckError(EphemeraError):
    """The identity provider could not say whether a credential is valid.

    Callers must treat this as indeterminate, never as a revocation.
    """


class PortExhaustedError(EphemeraError):
    """No free instance port was found within the attempt limit."""

    def __init__(self, attempts: int):
        super().__init__(f"No free port found after {attempts} attempts")
        self.attempts = attempts


class HandshakeError(EphemeraError):
    """An OAuth handshake ended without a usable token."""


class HandshakeTimeoutError(HandshakeError):
    """No callback arrived for the pending state in time."""


class StateConflictError(HandshakeError):
    """A handshake with the same state is already waiting."""


class ProviderError(HandshakeError):
    """The identity provider redirected back with an error parameter."""


class MissingCodeError(HandshakeError):
    """The callback carried neither an authorization code nor an error."""


class TokenExchangeError(HandshakeError):
    """Exchanging the authorization code for a token failed."""


class ReauthenticationRequired(HandshakeError):
    """The provider issued a token without a refresh component.

    The freshly issued access token has been revoked; the user has to run
    through the consent flow a second time.
    """


class CommandError(EphemeraError):
    """An external command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        super().__init__(
            f"command {' '.join(args)!r} exited with status {returncode}: {stderr.strip()}"
        )
        self.args_list = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class FirewallError(EphemeraError):
    """The host firewall could not be read or changed."""


class RuleParseError(FirewallError):
    """An existing firewall rule could not be mapped back to a RuleEntry."""


class StoreError(EphemeraError):
    """A store operation failed."""


class NotFoundError(StoreError):
    """The requested record does not exist."""


class DuplicatePortError(StoreError):
    """Another instance already holds the requested port."""

    def __init__(self, port: int):
        super().__init__(f"port {port} is already allocated")
        self.port = port
