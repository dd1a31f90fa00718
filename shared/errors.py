"""
Shared error handling for the Health Status layer.

The status engine and record codec never let these escape to their callers;
they are raised internally and translated into absent results. Only the HTTP
layer turns them into error responses.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthLayerException(Exception):
    """Base exception for Health Status services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(HealthLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RuleDocumentError(HealthLayerException):
    """Rule document could not be loaded."""

    def __init__(self, message: str = "Invalid rule document", details: Optional[Dict[str, Any]] = None):
        super().__init__("RULE_DOCUMENT_ERROR", message, details)


class DecryptionError(HealthLayerException):
    """Key unwrapping or payload decryption failed."""

    def __init__(self, message: str = "Decryption failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("DECRYPTION_ERROR", message, details)


class StatusCycleError(HealthLayerException):
    """Named status references loop or nest too deeply."""

    def __init__(self, reference: str, depth: int):
        super().__init__(
            "STATUS_CYCLE_ERROR",
            f"Status reference '{reference}' does not terminate",
            {"reference": reference, "depth": depth}
        )


class ServiceError(HealthLayerException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)
