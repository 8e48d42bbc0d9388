"""
API error handling

Error codes, exception classes and the structured error response format.
"""

import logging
import time
import traceback
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from calltree.analytics.exceptions import BackendUnavailableError

logger = logging.getLogger(__name__)


# ===== Error codes =====

class ErrorCode:
    """Standard error codes"""

    # Client errors
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Server errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


# ===== Exceptions =====

class APIException(Exception):
    """
    API exception base class

    Carries a structured error for the JSON error response.
    """

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.INTERNAL_ERROR,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationException(APIException):
    """Invalid request parameters"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        if field:
            error_details["field"] = field

        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=error_details
        )


class NotFoundException(APIException):
    """Resource not found"""

    def __init__(
        self,
        message: str,
        resource_type: str = "Resource",
        resource_id: Optional[str] = None
    ):
        details = {"resource_type": resource_type}
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details
        )


class ServiceUnavailableException(APIException):
    """Analytics service not ready"""

    def __init__(
        self,
        message: str = "Analytics service is not available",
        code: str = ErrorCode.SERVICE_UNAVAILABLE,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details or {}
        )


# ===== Response models =====

class ErrorDetail(BaseModel):
    """Error detail"""
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response"""
    success: bool = False
    error: ErrorDetail


# ===== Handlers =====

def error_response(
    message: str,
    code: str = ErrorCode.INTERNAL_ERROR,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    details: Optional[Dict[str, Any]] = None,
    include_stack: bool = False
) -> JSONResponse:
    """
    Build an error response

    Args:
        message: Error message
        code: Error code
        status_code: HTTP status code
        details: Error details
        include_stack: Include the stack trace (DEBUG logging only)

    Returns:
        JSON response
    """
    error_detail = {
        "code": code,
        "message": message,
        "details": details
    }

    if include_stack and logger.isEnabledFor(logging.DEBUG):
        error_detail["stack_trace"] = traceback.format_exc()

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(**error_detail)).model_dump()
    )


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle APIException"""
    if exc.status_code >= 500:
        logger.error(f"API exception: {exc.message}", exc_info=True)
    else:
        logger.warning(f"API exception: {exc.code} - {exc.message}")

    return error_response(
        message=exc.message,
        code=exc.code,
        status_code=exc.status_code,
        details=exc.details,
        include_stack=exc.status_code >= 500
    )


async def backend_unavailable_handler(request: Request, exc: BackendUnavailableError) -> JSONResponse:
    """Handle BackendUnavailableError raised by storage-backed queries"""
    logger.warning(f"Storage backend unavailable: {exc.message}")

    return error_response(
        message=exc.message,
        code=ErrorCode.SERVICE_UNAVAILABLE,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    code = ErrorCode.NOT_FOUND if exc.status_code == status.HTTP_404_NOT_FOUND else ErrorCode.BAD_REQUEST
    if exc.status_code >= 500:
        code = ErrorCode.INTERNAL_ERROR

    return error_response(
        message=detail,
        code=code,
        status_code=exc.status_code
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle anything else"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return error_response(
        message="Internal server error",
        code=ErrorCode.INTERNAL_ERROR,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        include_stack=True
    )


# ===== Request logging middleware =====

class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Request logging middleware

    Logs each request and response with its processing time.
    """

    def __init__(self, app, log_level: str = "INFO"):
        super().__init__(app)
        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(__name__)

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        self.logger.log(
            self.log_level,
            f"Request: {request.method} {request.url.path} from {self._get_client_ip(request)}"
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            self.logger.error(
                f"Request failed: {request.method} {request.url.path} - {exc}",
                exc_info=True
            )
            raise

        process_time = (time.time() - start_time) * 1000

        self.logger.log(
            self.log_level,
            f"Response: {request.method} {request.url.path} "
            f"status={response.status_code} time={process_time:.2f}ms"
        )

        response.headers["X-Process-Time"] = f"{process_time:.2f}"
        return response

    def _get_client_ip(self, request: Request) -> str:
        """Client IP, honoring proxy headers"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"


__all__ = [
    "ErrorCode",
    "APIException",
    "ValidationException",
    "NotFoundException",
    "ServiceUnavailableException",
    "ErrorResponse",
    "ErrorDetail",
    "error_response",
    "api_exception_handler",
    "backend_unavailable_handler",
    "http_exception_handler",
    "global_exception_handler",
    "LoggingMiddleware",
]
