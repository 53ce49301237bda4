class FeedTaskError(Exception):
    """Base class for feed task engine errors."""
    pass


class FeedTaskValidationError(FeedTaskError):
    """Raised when a transition request is invalid. Nothing was written."""
    pass


class FeedTaskStoreError(FeedTaskError):
    """Raised when the task state store fails to read or write a record."""
    pass
