"""
Error taxonomy. ProtocolError subclasses are client-facing and rendered as
{"error", "error_description"}; store errors never cross the component boundary raw.
"""


class ProtocolError(Exception):
    """OAuth 2.0 / OIDC error surfaced verbatim to the caller."""

    error = "invalid_request"
    status_code = 400
    default_description = "Invalid request"

    def __init__(self, error_description: str | None = None, status_code: int | None = None):
        self.error_description = error_description or self.default_description
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.error_description)

    @property
    def headers(self) -> dict[str, str] | None:
        return None

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.error_description}


class InvalidRequestError(ProtocolError):
    error = "invalid_request"


class InvalidClientError(ProtocolError):
    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"


class InvalidScopeError(ProtocolError):
    error = "invalid_scope"
    default_description = "No valid scopes requested"


class InvalidGrantError(ProtocolError):
    error = "invalid_grant"
    default_description = "Invalid or expired authorization code"


class UnsupportedGrantTypeError(ProtocolError):
    error = "unsupported_grant_type"
    default_description = "Only authorization_code grant type is supported"


class LoginRequiredError(ProtocolError):
    error = "login_required"
    status_code = 401
    default_description = "Subject is not authenticated"


class AccessDeniedError(ProtocolError):
    error = "access_denied"
    status_code = 401
    default_description = "Invalid username or password"


class InvalidTokenError(ProtocolError):
    error = "invalid_token"
    status_code = 401
    default_description = "Invalid or expired access token"

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": 'Bearer error="invalid_token"'}


class RateLimitedError(ProtocolError):
    error = "temporarily_unavailable"
    status_code = 429
    default_description = "Too many requests"

    def __init__(self, retry_after: int, error_description: str | None = None):
        self.retry_after = retry_after
        super().__init__(error_description)

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class ServerError(ProtocolError):
    error = "server_error"
    status_code = 500
    default_description = "The server could not complete the request"


class KeyFormatError(ValueError):
    """Configured key descriptor is missing required fields or is malformed."""


class StoreError(Exception):
    pass


class StoreUnavailableError(StoreError):
    """Transient failure of the credential store; safe for the caller to retry."""


class DuplicateValueError(StoreError):
    pass


class NotFoundError(StoreError):
    pass


class AlreadyConsumedError(StoreError):
    pass
