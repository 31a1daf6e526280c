"""Exception handling and custom exceptions."""

from datetime import date
from typing import Optional


class ReconcilerError(Exception):
    """Base class for custom exceptions."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class TransientStoreError(ReconcilerError):
    """Exception raised when the backing store is temporarily unreachable."""

    def __init__(self, message: str = "Backing store unavailable"):
        super().__init__(message)


class ExternalLookupError(ReconcilerError):
    """Exception raised when the difficulty lookup fails."""

    def __init__(self, message: str = "External lookup failed"):
        super().__init__(message)


class InvalidParameterError(ReconcilerError):
    """Exception raised for bad input. Never retried."""

    def __init__(self, message: str = "Invalid parameter"):
        super().__init__(message)


class ConfigurationError(InvalidParameterError):
    """Exception raised for invalid settings or arguments before work starts."""

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__(message)


class DataQualityWarning(ReconcilerError):
    """Non-fatal data finding surfaced to the operator.

    Instances are recorded on analysis results and logged; they are not
    raised past the analyzer.
    """

    def __init__(self, message: str, settlement_date: Optional[date] = None):
        self.settlement_date = settlement_date
        super().__init__(message)

    def __str__(self) -> str:
        if self.settlement_date is None:
            return self.message
        return f"{self.settlement_date.isoformat()}: {self.message}"


class IncompleteFixError(ReconcilerError):
    """Exception raised when a date still has missing periods after a fix."""

    def __init__(self, message: str = "Date still incomplete after fix"):
        super().__init__(message)
