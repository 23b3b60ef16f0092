"""
Error taxonomy for the feed aggregation pipeline.

Channel-local and source-local failures are contained by the batch fetcher
and the fallback chain; only failures that make a whole pass meaningless
reach the caller. "Not found" is a normal outcome and is returned as None.
"""


class FeedError(Exception):
    """Base exception for feed aggregation errors."""
    pass


class InvalidInputError(FeedError):
    """Input (identifier, cursor, filter) was rejected. Not retried."""
    pass


class AuthRequiredError(FeedError):
    """Access token is missing, expired or revoked. Caller should re-authenticate."""
    pass


class QuotaExhaustedError(FeedError):
    """Daily API quota is used up. Callers switch to the fallback path."""
    pass


class RemoteUnavailableError(FeedError):
    """Network failure, timeout or error status from a single remote source."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status
