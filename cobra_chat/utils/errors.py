"""Exception classes shared across the Cobra Chat services."""


class CobraChatError(Exception):
    """Base exception for all Cobra Chat errors."""
    pass


class ConfigurationError(CobraChatError):
    """Raised when required configuration is missing or invalid."""
    pass


class ValidationError(CobraChatError):
    """Raised when user input is rejected before any remote call."""
    pass


class EmbeddingError(CobraChatError):
    """Raised when an embedding cannot be generated."""
    pass


class DimensionMismatchError(CobraChatError):
    """Raised when a vector does not match the dimension of its index."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected a {expected}-dimensional vector, got {actual}")
        self.expected = expected
        self.actual = actual


class StorageError(CobraChatError):
    """Raised when the persistence store fails."""
    pass


class ExtractionError(CobraChatError):
    """Raised when text cannot be extracted from an uploaded document."""
    pass


class GenerationError(CobraChatError):
    """Raised when no generation provider could produce an answer."""
    pass


class QuotaExceededError(CobraChatError):
    """Raised when a user tries to consume quota they no longer have."""

    def __init__(self, status):
        super().__init__("Chat limit reached")
        self.status = status
