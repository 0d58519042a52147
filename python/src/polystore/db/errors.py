"""
Unified Database Errors

One exception type, DatabaseError, tagged with an ErrorKind. Each kind has a
stable code and a retryable flag. Native backend errors are translated into
exactly one kind by pure translator functions, once, where the native call
returns.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from botocore import exceptions as boto_exc
from bson import errors as bson_errors
from pymongo import errors as mongo_errors


class ErrorKind(Enum):
    ITEM_NOT_FOUND = ("ITEM_NOT_FOUND", False)
    CONDITIONAL_CHECK_FAILED = ("CONDITIONAL_CHECK_FAILED", False)
    CONNECTION = ("CONNECTION_ERROR", True)
    VALIDATION = ("VALIDATION_ERROR", False)
    TRANSACTION = ("TRANSACTION_ERROR", False)
    THROUGHPUT_EXCEEDED = ("THROUGHPUT_EXCEEDED", True)
    RESOURCE_NOT_FOUND = ("RESOURCE_NOT_FOUND", False)
    ACCESS_DENIED = ("ACCESS_DENIED", False)
    TIMEOUT = ("TIMEOUT", True)
    INTERNAL_SERVER_ERROR = ("INTERNAL_SERVER_ERROR", True)
    CONFIGURATION = ("CONFIGURATION_ERROR", False)
    DUPLICATE_KEY = ("DUPLICATE_KEY", False)

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def retryable(self) -> bool:
        return self.value[1]


RETRYABLE_CODES = frozenset(kind.code for kind in ErrorKind if kind.retryable)


class DatabaseError(Exception):
    """
    Error raised by every public data-access operation.

    Attributes:
        kind: Tagged error kind (carries code and retryable flag)
        provider: Backend tag the error originated from, if known
        original: Wrapped native error, if any
        timestamp: When the error was created (UTC)
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        provider: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        self.kind = kind
        self.message = message or kind.code.replace("_", " ").capitalize()
        self.provider = provider
        self.original = original
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)
        if original is not None:
            self.__cause__ = original

    @property
    def code(self) -> str:
        return self.kind.code

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "provider": self.provider,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"DatabaseError({self.code}, {self.message!r}, provider={self.provider!r})"


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, DatabaseError) and error.retryable


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, DatabaseError) and error.kind in (
        ErrorKind.ITEM_NOT_FOUND,
        ErrorKind.RESOURCE_NOT_FOUND,
    )


def validation_error(message: str, provider: str | None = None) -> DatabaseError:
    return DatabaseError(ErrorKind.VALIDATION, message, provider=provider)


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------

Translator = Callable[[BaseException, str], DatabaseError]

_DYNAMODB_CODES: dict[str, ErrorKind] = {
    "ResourceNotFoundException": ErrorKind.RESOURCE_NOT_FOUND,
    "ConditionalCheckFailedException": ErrorKind.CONDITIONAL_CHECK_FAILED,
    "ProvisionedThroughputExceededException": ErrorKind.THROUGHPUT_EXCEEDED,
    "ThrottlingException": ErrorKind.THROUGHPUT_EXCEEDED,
    "RequestLimitExceeded": ErrorKind.THROUGHPUT_EXCEEDED,
    "ValidationException": ErrorKind.VALIDATION,
    "AccessDeniedException": ErrorKind.ACCESS_DENIED,
    "UnrecognizedClientException": ErrorKind.ACCESS_DENIED,
    "TimeoutError": ErrorKind.TIMEOUT,
    "RequestTimeout": ErrorKind.TIMEOUT,
    "NetworkingError": ErrorKind.CONNECTION,
    "ConnectionError": ErrorKind.CONNECTION,
    "TransactionCanceledException": ErrorKind.TRANSACTION,
    "TransactionConflictException": ErrorKind.TRANSACTION,
    "InternalServerError": ErrorKind.INTERNAL_SERVER_ERROR,
    "ServiceUnavailable": ErrorKind.INTERNAL_SERVER_ERROR,
}

_MONGODB_CODES: dict[int, ErrorKind] = {
    11000: ErrorKind.DUPLICATE_KEY,
    11001: ErrorKind.DUPLICATE_KEY,
    50: ErrorKind.TIMEOUT,
    13: ErrorKind.ACCESS_DENIED,
    26: ErrorKind.RESOURCE_NOT_FOUND,
    112: ErrorKind.CONDITIONAL_CHECK_FAILED,
    244: ErrorKind.TRANSACTION,
    251: ErrorKind.TRANSACTION,
}


def _generic(error: BaseException, provider: str) -> DatabaseError:
    message = str(error) or f"Unknown {provider} error"
    return DatabaseError(
        ErrorKind.INTERNAL_SERVER_ERROR, message, provider=provider, original=error
    )


def _cancellation_reasons(error: boto_exc.ClientError) -> list[str]:
    reasons = error.response.get("CancellationReasons") or []
    return [r.get("Code", "None") for r in reasons]


def translate_dynamodb_error(error: BaseException, provider: str = "dynamodb") -> DatabaseError:
    """Map a botocore error to a DatabaseError."""
    if isinstance(error, DatabaseError):
        return error

    if isinstance(error, boto_exc.ClientError):
        err = error.response.get("Error", {})
        code = err.get("Code", "")
        message = err.get("Message") or str(error)
        kind = _DYNAMODB_CODES.get(code)

        if code == "TransactionCanceledException":
            reasons = [r for r in _cancellation_reasons(error) if r != "None"]
            if reasons and all(r == "ConditionalCheckFailed" for r in reasons):
                kind = ErrorKind.CONDITIONAL_CHECK_FAILED

        if kind is None:
            return _generic(error, provider)
        return DatabaseError(kind, message, provider=provider, original=error)

    if isinstance(error, (boto_exc.ReadTimeoutError, boto_exc.ConnectTimeoutError)):
        return DatabaseError(ErrorKind.TIMEOUT, str(error), provider=provider, original=error)
    if isinstance(error, (boto_exc.EndpointConnectionError, boto_exc.ConnectionClosedError)):
        return DatabaseError(ErrorKind.CONNECTION, str(error), provider=provider, original=error)
    if isinstance(error, boto_exc.NoCredentialsError):
        return DatabaseError(ErrorKind.CONFIGURATION, str(error), provider=provider, original=error)
    if isinstance(error, boto_exc.ParamValidationError):
        return DatabaseError(ErrorKind.VALIDATION, str(error), provider=provider, original=error)
    if isinstance(error, TimeoutError):
        return DatabaseError(ErrorKind.TIMEOUT, str(error), provider=provider, original=error)
    if isinstance(error, ConnectionError):
        return DatabaseError(ErrorKind.CONNECTION, str(error), provider=provider, original=error)

    return _generic(error, provider)


def translate_mongodb_error(error: BaseException, provider: str = "mongodb") -> DatabaseError:
    """Map a pymongo/bson error to a DatabaseError."""
    if isinstance(error, DatabaseError):
        return error

    message = str(error) or "Unknown MongoDB error"
    code = getattr(error, "code", None)
    if isinstance(code, int) and code in _MONGODB_CODES:
        return DatabaseError(_MONGODB_CODES[code], message, provider=provider, original=error)

    if isinstance(error, mongo_errors.DuplicateKeyError):
        kind = ErrorKind.DUPLICATE_KEY
    elif isinstance(error, (mongo_errors.ExecutionTimeout, mongo_errors.WTimeoutError, mongo_errors.NetworkTimeout)):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, (mongo_errors.ServerSelectionTimeoutError, mongo_errors.AutoReconnect, mongo_errors.ConnectionFailure)):
        kind = ErrorKind.CONNECTION
    elif isinstance(error, mongo_errors.ConfigurationError):
        kind = ErrorKind.CONFIGURATION
    elif isinstance(error, (mongo_errors.InvalidOperation, mongo_errors.InvalidName, bson_errors.InvalidDocument)):
        kind = ErrorKind.VALIDATION
    elif isinstance(error, mongo_errors.OperationFailure) and "not authorized" in message.lower():
        kind = ErrorKind.ACCESS_DENIED
    elif isinstance(error, TimeoutError):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, ConnectionError):
        kind = ErrorKind.CONNECTION
    else:
        return _generic(error, provider)

    return DatabaseError(kind, message, provider=provider, original=error)


class ErrorTranslatorRegistry:
    """
    Provider tag -> translator function.

    Built once at startup (see default_translators) and handed to adapters,
    the transaction manager and the factory.
    """

    def __init__(self, translators: dict[str, Translator] | None = None) -> None:
        self._translators: dict[str, Translator] = {}
        for provider, translator in (translators or {}).items():
            self.register(provider, translator)

    def register(self, provider: str, translator: Translator) -> None:
        self._translators[provider.lower()] = translator

    def get(self, provider: str) -> Translator:
        translator = self._translators.get(provider.lower())
        if translator is None:
            raise DatabaseError(
                ErrorKind.CONFIGURATION,
                f"No error translator registered for provider: {provider}",
                provider=provider,
            )
        return translator

    def translate(self, error: BaseException, provider: str) -> DatabaseError:
        if isinstance(error, DatabaseError):
            return error
        return self.get(provider)(error, provider)

    def providers(self) -> list[str]:
        return sorted(self._translators)


def default_translators() -> ErrorTranslatorRegistry:
    return ErrorTranslatorRegistry(
        {
            "dynamodb": translate_dynamodb_error,
            "mongodb": translate_mongodb_error,
        }
    )
