"""
Custom exceptions for the Scholaris pipeline.
"""

from typing import Optional, Any, Dict


class ScholarisException(Exception):
    """Base exception for all Scholaris-related errors."""
    
    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class ValidationError(ScholarisException):
    """Raised when input is malformed or references something it may not."""
    pass


class StateError(ScholarisException):
    """Raised on an illegal lifecycle transition."""
    pass


class OutOfWindowError(ScholarisException):
    """Raised when an exam is touched outside the student's effective window.

    ``kind`` is ``"too_early"`` before the exam opens and ``"too_late"`` once
    the effective end has passed.
    """
    
    TOO_EARLY = "too_early"
    TOO_LATE = "too_late"
    
    def __init__(self, kind: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        if kind not in (self.TOO_EARLY, self.TOO_LATE):
            raise ValueError(f"Unknown window error kind: {kind}")
        if message is None:
            message = "exam is not open yet" if kind == self.TOO_EARLY else "exam window has closed"
        super().__init__(message, error_code=kind, details=details)
        self.kind = kind


class NotFoundError(ScholarisException):
    """Raised when a requested resource is not found."""
    pass


class PersistenceError(ScholarisException):
    """Raised when persistence operations fail."""
    pass


class ConcurrencyError(ScholarisException):
    """Raised when concurrency control fails."""
    pass


class ConfigurationError(ScholarisException):
    """Raised when configuration is invalid."""
    pass
