"""
Bot Resilience — Error Taxonomy

Admission denials are never raised (see rate_limiter.Decision). These types
cover the failures that are.
"""
from resilience.classifier import ErrorKind


class ConfigurationError(ValueError):
    """Unknown operation class or invalid limiter/policy settings. A programmer error."""
    pass


class TransientOperationError(Exception):
    """A failure the caller knows is worth retrying, tagged with its kind."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.CONNECTION_RESET):
        super().__init__(message)
        self.kind = kind


class PermanentOperationError(Exception):
    """A failure the caller knows must not be retried."""

    def __init__(self, message: str):
        super().__init__(message)
        self.kind = ErrorKind.PERMANENT
