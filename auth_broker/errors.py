"""
Error taxonomy for the login broker. Every error is terminal for the current request.
Messages are machine-stable: client integrations match on substrings, so keep them as they are.
"""


class AuthBrokerError(Exception):
    """Base error; carries the HTTP status and the user-visible message."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class UnsupportedProvider(AuthBrokerError):
    status_code = 400
    default_message = "Unsupported provider"


class InvalidRedirectURI(AuthBrokerError):
    status_code = 400
    default_message = "Invalid redirect URI"


class MalformedState(AuthBrokerError):
    status_code = 400
    default_message = "Invalid state parameter"


class InvalidOrExpiredState(AuthBrokerError):
    status_code = 400
    default_message = "Invalid or expired state token"


class AuthorizationDenied(AuthBrokerError):
    """Provider redirected back with ?error=... instead of a code."""

    status_code = 400
    default_message = "Authorization failed"


class MissingAuthorizationCode(AuthBrokerError):
    status_code = 400
    default_message = "Authorization code not provided"


class ExchangeFailed(AuthBrokerError):
    status_code = 500
    default_message = "Failed to exchange token"


class UserInfoFetchFailed(AuthBrokerError):
    status_code = 500
    default_message = "Failed to fetch user information"


class StorageFailure(AuthBrokerError):
    status_code = 500
    default_message = "Storage failure"


class RefreshFailed(AuthBrokerError):
    status_code = 500
    default_message = "Failed to refresh token"


class CredentialNotFound(AuthBrokerError):
    status_code = 404
    default_message = "Token not found"


class MissingSession(AuthBrokerError):
    status_code = 400
    default_message = "Session ID is required"


class MissingRequiredParameter(AuthBrokerError):
    status_code = 400
    default_message = "Missing required parameter"


class ProviderError(Exception):
    """Raised by provider_client when an upstream call fails; mapped by the caller."""
