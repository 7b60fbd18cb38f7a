"""
Custom exceptions for PredictRadar.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class PredictRadarError(Exception):
    """Base exception for all PredictRadar errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for batch results."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(PredictRadarError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Database record not found."""
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(PredictRadarError):
    """Malformed or unusable signal or quote data for a single item."""
    pass


class InvalidQuoteError(ValidationError):
    """Quote provider returned an unusable quote (zero or missing price)."""
    pass


# ============================================================================
# External Service Errors
# ============================================================================

class ExternalServiceError(PredictRadarError):
    """External service integration failed."""
    pass


class TransientFetchError(ExternalServiceError):
    """Single-entity network or provider failure, retried next cycle."""
    pass


# ============================================================================
# Business Logic Errors
# ============================================================================

class DataConsistencyError(PredictRadarError):
    """Prediction state does not allow the requested transition."""
    pass


class ScoringError(PredictRadarError):
    """Failed to score a signal aggregate."""
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(PredictRadarError):
    """Application or adapter configuration error."""
    pass
