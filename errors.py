"""Exceptions raised by the Deribit HTTP client."""


class HttpError(Exception):
    """Base class for all client errors."""


class RequestFailed(HttpError):
    """The request completed but the server reported a failure."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class ApiError(RequestFailed):
    """JSON-RPC error object returned by Deribit."""

    def __init__(self, code: int, message: str, data=None, status: int | None = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"API error {code}: {message}", status=status)


class AuthenticationFailed(HttpError):
    """Credentials are missing, were rejected, or the token exchange failed."""


class RateLimitExceeded(HttpError):
    """The exchange kept answering 429 after all retries."""


class InvalidResponse(HttpError):
    """The response body could not be decoded into the expected shape."""


class NetworkError(HttpError):
    """Connection failure or timeout after all retries."""
