"""Exceptions shared by the training back office."""


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


class FetchError(RuntimeError):
    """Raised when a query against the row store fails."""


class ComputationError(RuntimeError):
    """Raised when billing arithmetic receives inputs it cannot total."""
