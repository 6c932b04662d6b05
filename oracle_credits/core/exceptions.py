from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND"):
        super().__init__(message, code=code, status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", code: str = "CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", code: str = "BAD_REQUEST", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger

class InvalidAmountError(BadRequestError):
    def __init__(self, amount: int):
        super().__init__("Amount must be a positive integer", code="INVALID_AMOUNT", details={"amount": amount})


class ZeroAmountError(BadRequestError):
    def __init__(self) -> None:
        super().__init__("Amount cannot be zero", code="ZERO_AMOUNT")


class InsufficientCreditsError(AppError):
    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient credits: have {balance}, need {required}",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"balance": balance, "required": required},
        )


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: Any = None):
        self.user_id = user_id
        super().__init__("User not found", code="USER_NOT_FOUND")


class AccountNotFoundError(NotFoundError):
    def __init__(self, user_id: Any = None):
        self.user_id = user_id
        super().__init__("Credit account not found", code="ACCOUNT_NOT_FOUND")


class TransactionNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("Transaction not found", code="TRANSACTION_NOT_FOUND")


class GrantAlreadyAppliedError(ConflictError):
    """A one-shot grant (achievement, referral reward, refund) was already applied to the account."""

    def __init__(self, once_key: str):
        self.once_key = once_key
        super().__init__("Already applied", code="ALREADY_APPLIED", details={"key": once_key})


class LedgerUnavailableError(AppError):
    """Storage failure or write contention; nothing was applied and the call may be retried."""

    def __init__(self, message: str = "Credits are temporarily unavailable, please try again"):
        super().__init__(message, code="LEDGER_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


# Payments

class InvalidPackageError(BadRequestError):
    def __init__(self, package_id: str):
        super().__init__("Invalid package", code="INVALID_PACKAGE", details={"package_id": package_id})


class ProviderNotConfiguredError(BadRequestError):
    def __init__(self, provider: str):
        super().__init__(f"{provider} payments not configured", code="PROVIDER_NOT_CONFIGURED")


class CaptureFailedError(AppError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(
            "Payment capture failed, please try again",
            code="CAPTURE_FAILED",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
        )


class InvalidWebhookError(BadRequestError):
    def __init__(self, message: str = "Invalid webhook signature or payload"):
        super().__init__(message, code="INVALID_WEBHOOK")


class NoPendingTransactionError(BadRequestError):
    """Confirmation for a payment no checkout was recorded for. Detail stays in logs, never in the response."""

    def __init__(self, provider: str, payment_id: str):
        self.provider = provider
        self.payment_id = payment_id
        super().__init__("Payment could not be processed", code="PAYMENT_NOT_PROCESSED")


class ProviderMismatchError(ConflictError):
    def __init__(self, provider: str, payment_id: str, reason: str):
        self.provider = provider
        self.payment_id = payment_id
        self.reason = reason
        super().__init__("Payment could not be processed", code="PAYMENT_NOT_PROCESSED")


# Idempotency

class IdempotencyInProgressError(ConflictError):
    def __init__(self, key: str):
        super().__init__(
            "A request with this idempotency key is already in progress",
            code="DUPLICATE_REQUEST_IN_PROGRESS",
            details={"idempotency_key": key},
        )


class IdempotencyKeyReusedError(ConflictError):
    def __init__(self, key: str):
        super().__init__(
            "Idempotency key was already used for a different request",
            code="IDEMPOTENCY_KEY_REUSED",
            details={"idempotency_key": key},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from oracle_credits.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
