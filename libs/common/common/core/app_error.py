from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from common.utils.json_model import JsonModel


class ErrorDetails(JsonModel):
    scope: str
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorConfig(JsonModel):
    scope: str
    code: str
    default_message: str
    http_status: int | None = None
    retryable: bool = False

    def create(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        http_status: int | None = None,
        cause: BaseException | None = None,
        retryable: bool | None = None,
    ) -> AppException:
        msg = message if message is not None else self.default_message
        http = http_status if http_status is not None else self.http_status
        retry = self.retryable if retryable is None else retryable
        scope = self.scope
        code = self.code

        # Wrapping another app error keeps its identity and merges the context
        if isinstance(cause, AppException):
            scope = cause.details.scope
            code = cause.details.code
            http = cause.http_status
            retry = cause.retryable
            if cause.details.details:
                details = {**cause.details.details, **(details or {})}
            if cause.details.message and cause.details.message != msg:
                msg = f"{msg}: {cause.details.message}"

        app_error = AppError(
            details=ErrorDetails(scope=scope, code=code, message=msg, details=details),
            http_status=http,
            cause=cause,
            retryable=retry,
        )
        return AppException(app_error)

    def is_(self, error: BaseException) -> bool:
        return AppException.is_(error, self)


class Errors:
    class Generic:
        INVALID_INPUT = ErrorConfig(scope="generic", code="invalid_input", default_message="Invalid input", http_status=400)
        INTERNAL_ERROR = ErrorConfig(scope="generic", code="internal_error", default_message="Internal error", http_status=500)
        FEATURE_DISABLED = ErrorConfig(scope="generic", code="feature_disabled", default_message="Feature is disabled", http_status=404)

    class Auth:
        UNAUTHORIZED = ErrorConfig(scope="auth", code="unauthorized", default_message="Could not validate credentials", http_status=401)
        FORBIDDEN = ErrorConfig(scope="auth", code="forbidden", default_message="Not enough permissions", http_status=403)

    class Ledger:
        DUPLICATE_SOURCE = ErrorConfig(
            scope="ledger", code="duplicate_source", default_message="An entry already exists for this source", http_status=409
        )
        INVALID_ENTRY = ErrorConfig(scope="ledger", code="invalid_entry", default_message="Invalid ledger entry", http_status=400)

    class Credits:
        INSUFFICIENT_BALANCE = ErrorConfig(
            scope="credits", code="insufficient_balance", default_message="Insufficient credits", http_status=402
        )
        UNKNOWN_PACK = ErrorConfig(scope="credits", code="unknown_pack", default_message="Unknown credit pack", http_status=400)

    class Payments:
        INVALID_EVENT = ErrorConfig(scope="payments", code="invalid_event", default_message="Invalid payment event", http_status=400)
        RECONCILE_FAILED = ErrorConfig(
            scope="payments", code="reconcile_failed", default_message="Payment event could not be applied", http_status=500, retryable=True
        )
        TIMEOUT = ErrorConfig(
            scope="payments", code="timeout", default_message="Payment event processing timed out", http_status=503, retryable=True
        )
        NOT_CONFIGURED = ErrorConfig(
            scope="payments", code="not_configured", default_message="Payment provider is not configured", http_status=503
        )

    class Storage:
        UNAVAILABLE = ErrorConfig(
            scope="storage", code="unavailable", default_message="Storage is temporarily unavailable", http_status=503, retryable=True
        )

    class Sweep:
        PARTIAL_FAILURE = ErrorConfig(scope="sweep", code="partial_failure", default_message="Expiry sweep failed for some users")


class AppError(BaseModel):
    model_config = {"arbitrary_types_allowed": True}

    details: ErrorDetails = Field(..., description="Error details")
    http_status: int | None = Field(default=None, description="HTTP status code")
    retryable: bool = Field(default=False, description="Whether the error is retryable")
    cause: BaseException | None = Field(default=None, description="Underlying cause")

    @staticmethod
    def is_(error: AppError, error_config: ErrorConfig) -> bool:
        return error.details.scope == error_config.scope and error.details.code == error_config.code


class AppException(Exception):
    """Exception wrapper for AppError that can be raised."""

    def __init__(self, app_error: AppError) -> None:
        self.app_error = app_error
        super().__init__(app_error.details.message)

    @property
    def details(self) -> ErrorDetails:
        return self.app_error.details

    @property
    def http_status(self) -> int | None:
        return self.app_error.http_status

    @property
    def retryable(self) -> bool:
        return self.app_error.retryable

    @property
    def cause(self) -> BaseException | None:
        return self.app_error.cause

    @staticmethod
    def is_any_of(error: BaseException, *errors: ErrorConfig) -> bool:
        return any(AppException.is_(error, e) for e in errors)

    @staticmethod
    def is_(error: BaseException, error_config: ErrorConfig) -> bool:
        return isinstance(error, AppException) and AppError.is_(error.app_error, error_config)

    @staticmethod
    def get_details(error: BaseException) -> ErrorDetails | None:
        return error.details if isinstance(error, AppException) else None
