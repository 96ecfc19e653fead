import logging
from enum import Enum
from typing import List, Optional

from app.models.schemas import CalculationResult, Warning

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE_ERROR"
    BUSINESS_RULE = "BUSINESS_RULE_ERROR"
    INTERNAL = "INTERNAL_ERROR"
    RATE_LIMITED = "RATE_LIMITED"


GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


class AppError(Exception):
    """
    Base error aplikasi. Pesan (message) harus aman ditampilkan ke pemanggil,
    jangan pernah berisi detail implementasi.
    """

    category: ErrorCategory = ErrorCategory.INTERNAL
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    @property
    def code(self) -> str:
        return self.category.value


class ValidationError(AppError):
    category = ErrorCategory.VALIDATION
    status_code = 400


class ExternalServiceError(AppError):
    category = ErrorCategory.EXTERNAL_SERVICE
    status_code = 502
    retryable = True


class BusinessRuleError(AppError):
    category = ErrorCategory.BUSINESS_RULE
    status_code = 422


class InternalError(AppError):
    category = ErrorCategory.INTERNAL
    status_code = 500


class RateLimitExceeded(AppError):
    category = ErrorCategory.RATE_LIMITED
    status_code = 429
    retryable = True


def status_code_for(error_code: Optional[str]) -> int:
    for cls in (ValidationError, ExternalServiceError, BusinessRuleError, RateLimitExceeded):
        if cls.category.value == error_code:
            return cls.status_code
    return 500


def to_error_result(error: BaseException, warnings: Optional[List[Warning]] = None) -> CalculationResult:
    """
    Ubah exception apa pun menjadi CalculationResult gagal.
    Exception tak dikenal → INTERNAL dengan pesan generik.
    """
    if isinstance(error, AppError):
        return CalculationResult(
            success=False,
            warnings=list(warnings or []),
            error_code=error.code,
            message=error.message,
            retryable=error.retryable,
        )

    logger.error("Unexpected error: %s", error, exc_info=error)
    return CalculationResult(
        success=False,
        warnings=list(warnings or []),
        error_code=ErrorCategory.INTERNAL.value,
        message=GENERIC_ERROR_MESSAGE,
        retryable=False,
    )
