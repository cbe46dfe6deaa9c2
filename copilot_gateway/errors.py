from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 500
    error_type = "gateway_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AccountUnauthorized(GatewayError):
    """No usable delegated grant for the account; the caller must onboard again."""

    status_code = 401
    error_type = "account_unauthorized"


class UpstreamDenied(GatewayError):
    """The identity provider refused on policy grounds (consent, license)."""

    status_code = 403
    error_type = "upstream_denied"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail


class IdentityProviderError(GatewayError):
    status_code = 502
    error_type = "identity_provider_error"

    def __init__(self, message: str, *, error: str | None = None) -> None:
        super().__init__(message)
        self.error = error


class UpstreamError(GatewayError):
    """Non-2xx response from the Graph Copilot API."""

    status_code = 502
    error_type = "upstream_error"

    def __init__(self, *, operation: str, status: int, body: str, correlation_id: str | None) -> None:
        super().__init__(f"{operation} failed: upstream status {status}")
        self.operation = operation
        self.status = status
        self.body = body
        self.correlation_id = correlation_id


class KeyNotFound(GatewayError):
    status_code = 404
    error_type = "key_not_found"
