"""
Error types shared by the autoscaler core and its collaborators.
"""

from enum import Enum
from typing import Optional


class ErrorType(Enum):
    """Classes of errors a tick can end with"""
    API_CALL_ERROR = "apiCallError"
    CLOUD_PROVIDER_ERROR = "cloudProviderError"
    INTERNAL_ERROR = "internalError"


class AutoscalerError(Exception):
    """Raised when a tick has to stop without applying further decisions"""

    def __init__(self, error_type: ErrorType, message: str):
        super().__init__(message)
        self.error_type = error_type
        self.message = message

    def add_prefix(self, prefix: str) -> "AutoscalerError":
        """Return a copy of this error with a prefix prepended to the message"""
        return AutoscalerError(self.error_type, f"{prefix}{self.message}")

    def __str__(self) -> str:
        return f"{self.error_type.value}: {self.message}"


class CloudProviderError(Exception):
    """Raised by cloud provider adapters when a provider call fails"""
    pass


class ApiCallError(Exception):
    """Raised by cluster clients when listing or writing objects fails"""
    pass


class EvictionError(ApiCallError):
    """Raised when a pod cannot be evicted, e.g. its disruption budget is exhausted"""
    pass


def to_autoscaler_error(error_type: ErrorType, err: Optional[BaseException]) -> Optional[AutoscalerError]:
    """
    Wrap an arbitrary exception into an AutoscalerError.

    Errors that already are AutoscalerErrors keep their original type.
    """
    if err is None:
        return None
    if isinstance(err, AutoscalerError):
        return err
    return AutoscalerError(error_type, str(err))
