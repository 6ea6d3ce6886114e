"""
Shared error handling for the Heimdall door access core.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""
    
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for the access core."""
    
    http_status = 400
    
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)
    
    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(AccessLayerException):
    """Unknown tag or member."""
    
    http_status = 404
    
    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(AccessLayerException):
    """Tag is already bound to a different member."""
    
    http_status = 409
    
    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class ValidationError(AccessLayerException):
    """Validation-related errors."""
    
    http_status = 422
    
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class UnavailableError(AccessLayerException):
    """External membership-truth source unreachable."""
    
    http_status = 503
    
    def __init__(self, service: str, message: str = "Service unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAVAILABLE", f"{service}: {message}", details)


class ResolutionTimeoutError(AccessLayerException):
    """Resolution exceeded its deadline."""
    
    http_status = 504
    
    def __init__(self, message: str = "Deadline exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("TIMEOUT", message, details)


class StorageError(AccessLayerException):
    """Persistent store fault. Prior state is left intact."""
    
    http_status = 500
    
    def __init__(self, message: str = "Storage error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)
