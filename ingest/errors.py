"""
Error taxonomy for data acquisition.

Transient failures are retried inside storage.retry; what reaches callers is either a
terminal failure for one resource (RetryExhaustedError, FetchError) or a repository
level failure (RepositoryError).
"""


class FetchError(Exception):
    """A remote resource could not be fetched."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RetryExhaustedError(FetchError):
    """All retry attempts for a request failed."""


class RateLimitError(FetchError):
    """The rate limit stayed exhausted after waiting the allowed number of times."""


class GraphQLError(FetchError):
    """The GraphQL endpoint answered with an ``errors`` payload."""


class RepositoryError(Exception):
    """A local clone could not be created, updated or read."""


__all__ = ["FetchError", "RetryExhaustedError", "RateLimitError", "GraphQLError", "RepositoryError"]
