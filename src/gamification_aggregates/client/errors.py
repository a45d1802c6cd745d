from __future__ import annotations


class BackendError(RuntimeError):
    """Base exception for analytics-backend failures."""


class BackendRequestError(BackendError):
    """HTTP/network/transport layer failures (timeouts, connection errors, non-2xx, etc.)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendRateLimited(BackendRequestError):
    """Backend throttled the request (HTTP 429)."""


class BackendResponseError(BackendError):
    """Backend answered, but the payload could not be used (invalid JSON, wrong shape)."""


class DocumentNotFoundError(BackendError):
    """A keyed document lookup returned nothing."""

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"No document {key!r} in collection {collection!r}")
        self.collection = collection
        self.key = key
