"""
Error taxonomy for the Open Finance engine.

- AuthenticationError: bad credentials or an exhausted 401 retry
- RateLimitError: local limiter or provider 429, carries retry_after
- PermissionDeniedError: 403 on a per-account scope, callers treat as empty
- ParseError: HTML error page, unparsable body, or payload that fails validation
- ConnectionSyncError: aggregated failure of one connection
"""

from typing import List, Optional


class ProviderError(Exception):
    """Base class for failures talking to the aggregation provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class AuthenticationError(ProviderError):
    pass


class InvalidCredentialsError(AuthenticationError):
    """Client id/secret rejected before any network call."""


class RateLimitError(ProviderError):

    def __init__(self, message: str, retry_after: float, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class PermissionDeniedError(ProviderError):

    def __init__(self, endpoint: str, code: Optional[str] = None):
        super().__init__(
            f"Access forbidden to {endpoint}; the scope is not granted for this account",
            status_code=403,
            code=code
        )
        self.endpoint = endpoint


class ParseError(ProviderError):
    pass


class ConnectionSyncError(Exception):
    """All errors collected while syncing a single connection."""

    def __init__(self, item_id: str, errors: List[str]):
        super().__init__(f"Connection {item_id}: {'; '.join(errors)}")
        self.item_id = item_id
        self.errors = errors


class CredentialsNotConfiguredError(Exception):
    """The user has not stored provider credentials yet."""

    def __init__(self, user_id: int):
        super().__init__(f"Provider credentials not configured for user {user_id}")
        self.user_id = user_id
