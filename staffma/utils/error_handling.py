"""
Centralized Error Handling for Staffma Payroll

This module provides:
- The payroll error taxonomy (validation, guard, remote, cancellation)
- Standardized error responses
- Error logging for every handled failure
- Kenyan-specific input validation (wallet phone numbers)
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging
import re

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

# Configure logging
logger = logging.getLogger("staffma.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PHONE_NUMBER = "INVALID_PHONE_NUMBER"
    INVALID_PAYROLL_PERIOD = "INVALID_PAYROLL_PERIOD"
    EMPTY_SELECTION = "EMPTY_SELECTION"
    SETTINGS_MISSING = "SETTINGS_MISSING"
    NO_ACTIVE_EMPLOYEES = "NO_ACTIVE_EMPLOYEES"
    INELIGIBLE_SELECTION = "INELIGIBLE_SELECTION"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    EMPLOYEE_NOT_FOUND = "EMPLOYEE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    VERSION_CONFLICT = "VERSION_CONFLICT"

    # Guard Violations (409)
    GUARD_VIOLATION = "GUARD_VIOLATION"
    PERIOD_ALREADY_PAID = "PERIOD_ALREADY_PAID"
    CHANNEL_CONFLICT = "CHANNEL_CONFLICT"

    # Cancellation (400)
    OPERATION_CANCELLED = "OPERATION_CANCELLED"

    # External Service Errors (502)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TAX_ENGINE_ERROR = "TAX_ENGINE_ERROR"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """
    Malformed input caught before any remote call.

    Always recoverable locally; the collaborator is never contacted.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            field=field,
        )


class InvalidAmountException(ValidationException):
    """Invalid monetary amount"""

    def __init__(self, amount: Any, field: str = "amount", message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid amount: {amount}. Amount must be a positive number.",
            field=field,
            code=ErrorCode.INVALID_AMOUNT,
            details={"provided_amount": str(amount)},
        )


class InvalidPhoneNumberException(ValidationException):
    """Wallet phone number not in an accepted Kenyan format"""

    def __init__(self, phone_number: str):
        super().__init__(
            message=f"Invalid phone number: {phone_number}. Use 07XXXXXXXX, 7XXXXXXXX, +254XXXXXXXXX or 254XXXXXXXXX.",
            field="phone_number",
            code=ErrorCode.INVALID_PHONE_NUMBER,
            details={"provided": phone_number},
        )


class InvalidPayrollPeriodException(ValidationException):
    """Payroll period outside the processable window"""

    def __init__(self, month: int, year: int, reason: str):
        super().__init__(
            message=f"Invalid payroll period {month:02d}/{year}: {reason}",
            field="month",
            code=ErrorCode.INVALID_PAYROLL_PERIOD,
            details={"month": month, "year": year},
        )


class EmptySelectionException(ValidationException):
    """A batch action was issued with no record ids"""

    def __init__(self, action: str):
        super().__init__(
            message=f"No records selected for {action}",
            field="record_ids",
            code=ErrorCode.EMPTY_SELECTION,
            details={"action": action},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class EmployeeNotFoundException(NotFoundException):
    """Employee not found"""

    def __init__(self, employee_id: Union[str, UUID]):
        super().__init__(
            resource_type="Employee",
            resource_id=employee_id,
            code=ErrorCode.EMPLOYEE_NOT_FOUND,
        )


class ConcurrencyException(AppException):
    """A compare-and-swap commit found a different prior state"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=ErrorCode.VERSION_CONFLICT,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


# ============================================================================
# Guard Violations
# ============================================================================

class GuardViolationException(AppException):
    """A lifecycle or invariant rule blocks the action"""

    def __init__(
        self,
        message: str,
        rule: str,
        code: ErrorCode = ErrorCode.GUARD_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["violated_rule"] = rule
        self.rule = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class PeriodAlreadyPaidException(GuardViolationException):
    """Reprocessing a period that already holds a Paid record"""

    def __init__(self, month: int, year: int):
        super().__init__(
            message=f"Payroll for {month:02d}/{year} has already been paid and cannot be reprocessed",
            rule="PAID_PERIOD_IMMUTABLE",
            code=ErrorCode.PERIOD_ALREADY_PAID,
            details={"month": month, "year": year},
        )


class ChannelConflictException(GuardViolationException):
    """Adding a channel while the other channel is populated"""

    def __init__(self, employee_id: Union[str, UUID], active_channel: str, requested_channel: str):
        super().__init__(
            message=(
                f"Employee {employee_id} already receives payment by {active_channel}; "
                f"switch channels with the {requested_channel} channel operation instead"
            ),
            rule="SINGLE_PAYMENT_CHANNEL",
            code=ErrorCode.CHANNEL_CONFLICT,
            details={
                "employee_id": str(employee_id),
                "active_channel": active_channel,
                "requested_channel": requested_channel,
            },
        )


# ============================================================================
# Cancellation
# ============================================================================

class OperationCancelledException(AppException):
    """The caller cancelled an in-flight operation"""

    def __init__(self, operation: str, reason: Optional[str] = None, partial_result: Any = None):
        self.partial_result = partial_result
        super().__init__(
            code=ErrorCode.OPERATION_CANCELLED,
            message=f"{operation} was cancelled" + (f": {reason}" if reason else ""),
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"operation": operation},
        )


# ============================================================================
# External Service Exceptions
# ============================================================================

class RemoteServiceException(AppException):
    """Network, auth or non-2xx failure from a collaborator call"""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["service"] = service_name
        self.service_name = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=_details,
            original_error=original_error,
        )


class TaxEngineException(RemoteServiceException):
    """Tax engine error"""

    def __init__(self, message: str, original_error: Optional[Exception] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            service_name="Tax Engine",
            message=message,
            code=ErrorCode.TAX_ENGINE_ERROR,
            original_error=original_error,
            details=details,
        )


class PaymentGatewayException(RemoteServiceException):
    """Payment gateway error"""

    def __init__(self, message: str, original_error: Optional[Exception] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            service_name="Payment Gateway",
            message=message,
            code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            original_error=original_error,
            details=details,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

# Unique constraint markers (SQLite column list or PostgreSQL constraint name)
DUPLICATE_HINTS = (
    (("employee_wallets.wallet_id", "wallet_id"), "wallet_id", "This wallet ID is already assigned to another employee"),
    (("employee_number", "uq_employee_business_number"), "employee_number", "An employee with this number already exists"),
    (("uq_payroll_period_business_month_year", "payroll_periods.business_id"), None, "This payroll period was created by another request, retry"),
)


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Error body shared by every handler: {"detail": {code, message, timestamp, field?, details?}}"""
    body: Dict[str, Any] = {
        "code": code.value,
        "message": message,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
    if field:
        body["field"] = field
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"detail": body})


def _request_context(request: Request) -> Dict[str, str]:
    return {"path": request.url.path, "method": request.method}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Payroll errors: guard violations and conflicts log as warnings, remote failures as errors."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    rule = exc.details.get("violated_rule")
    log(
        f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}"
        + (f" [rule {rule}]" if rule else ""),
        extra={**_request_context(request), "code": exc.code.value, "details": exc.details},
        exc_info=exc.original_error,
    )
    return create_error_response(exc.code, exc.message, exc.status_code, exc.details, exc.field)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Framework errors, mostly business resolution (400/404) and unknown routes."""
    code = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        405: ErrorCode.INVALID_INPUT,
        409: ErrorCode.RESOURCE_CONFLICT,
    }.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {message}",
                   extra=_request_context(request))
    return create_error_response(code, message, exc.status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body and query validation errors, one entry per offending field."""
    errors = [
        {
            # "body.accounts.0.bank_name" -> "accounts.0.bank_name"
            "field": ".".join(str(loc) for loc in error["loc"] if loc not in ("body", "query")),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"{len(errors)} validation error(s) on {request.method} {request.url.path}",
        extra={**_request_context(request), "errors": errors},
    )
    return create_error_response(
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


def _classify_integrity_error(exc: IntegrityError):
    """(code, status, message, field) for a constraint violation."""
    text = str(exc.orig if exc.orig is not None else exc).lower()
    if "unique" in text or "duplicate" in text:
        for markers, field, message in DUPLICATE_HINTS:
            if any(marker in text for marker in markers):
                code = ErrorCode.DUPLICATE_ENTRY if field else ErrorCode.VERSION_CONFLICT
                return code, status.HTTP_409_CONFLICT, message, field
        return ErrorCode.DUPLICATE_ENTRY, status.HTTP_409_CONFLICT, "A record with this value already exists", None
    if "foreign key" in text:
        return ErrorCode.DATA_INTEGRITY_ERROR, status.HTTP_422_UNPROCESSABLE_ENTITY, "Referenced record does not exist", None
    return ErrorCode.DATA_INTEGRITY_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR, "Data integrity constraint violated", None


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database errors that escaped the services."""
    field = None
    if isinstance(exc, IntegrityError):
        code, status_code, message, field = _classify_integrity_error(exc)
    elif isinstance(exc, OperationalError):
        code, status_code, message = ErrorCode.CONNECTION_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR, "Database operation failed"
    elif isinstance(exc, DataError):
        code, status_code, message = ErrorCode.DATABASE_ERROR, status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid data format for database"
    else:
        code, status_code, message = ErrorCode.DATABASE_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR, "A database error occurred"

    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {message}",
        extra=_request_context(request),
        exc_info=status_code >= 500,
    )
    return create_error_response(code, message, status_code, field=field)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    return create_error_response(
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred. Please try again later.",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


# ============================================================================
# Utility Functions
# ============================================================================

KENYAN_PHONE_PATTERN = re.compile(r"^(?:07\d{8}|7\d{8}|\+254\d{9}|254\d{9})$")


def validate_phone_number(phone_number: str) -> str:
    """
    Validate a wallet phone number and normalise it to 254XXXXXXXXX.

    Accepted: 07XXXXXXXX, 7XXXXXXXX, +254XXXXXXXXX, 254XXXXXXXXX
    """
    cleaned = (phone_number or "").replace(" ", "").replace("-", "")
    if not KENYAN_PHONE_PATTERN.match(cleaned):
        raise InvalidPhoneNumberException(phone_number)
    if cleaned.startswith("+"):
        return cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    return "254" + cleaned


def validate_amount(amount: Any, field: str = "amount", allow_zero: bool = False) -> Decimal:
    """Validate monetary amount"""
    try:
        value = Decimal(str(amount))
    except (TypeError, ValueError, InvalidOperation):
        raise InvalidAmountException(amount, field)
    if not value.is_finite() or value < 0 or (not allow_zero and value == 0):
        raise InvalidAmountException(amount, field)
    return value


# Export all exceptions for easy importing
__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "InvalidAmountException",
    "InvalidPhoneNumberException",
    "InvalidPayrollPeriodException",
    "EmptySelectionException",

    # Resource
    "NotFoundException",
    "EmployeeNotFoundException",
    "ConcurrencyException",

    # Guards
    "GuardViolationException",
    "PeriodAlreadyPaidException",
    "ChannelConflictException",

    # Cancellation
    "OperationCancelledException",

    # External Services
    "RemoteServiceException",
    "TaxEngineException",
    "PaymentGatewayException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",

    # Utilities
    "validate_phone_number",
    "validate_amount",
]
