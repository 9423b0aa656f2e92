class SwipeRecError(Exception):
    """Base class for recommender errors."""


class InvalidSignalError(SwipeRecError, ValueError):
    """Raw interaction is missing a required field or carries an unusable one."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class CatalogError(SwipeRecError):
    """The content metadata provider failed or timed out."""


class ProfileStoreError(SwipeRecError):
    """The persisted record store rejected a read or write."""
