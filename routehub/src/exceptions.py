"""
Centralized exception handling for RouteHub API.

This module provides:
- A closed set of error kinds (`ErrorKind`) shared by every exception.
- Base APIException class extending FastAPI's HTTPException, whose status code
  is derived from its kind.
- Custom domain-specific exceptions with appropriate kinds and headers.
- Utility functions for formatting DB errors, logging, and routing exceptions.

Usage:
    - Raise specific exceptions in the core modules, services or route handlers.
    - Use `handle()` to normalize raw exceptions (DB, Redis, Pydantic) into API-friendly responses.
"""

from enum import Enum
from traceback import format_exception
from logging import getLogger
from fastapi import status, HTTPException
from sqlalchemy.exc import IntegrityError
from psycopg2.errorcodes import UNIQUE_VIOLATION, FOREIGN_KEY_VIOLATION
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import Column

from routehub.src.constants import TRANSACTION_RETRY_AFTER


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------
class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


STATUS_OF_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------
def formatIntegrityError(e: IntegrityError) -> str:
    """
    Format a database integrity error into a user-friendly message.
    """
    diag = getattr(e.orig, "diag", None)
    errorMessage = getattr(diag, "message_detail", None)
    if not errorMessage:
        return str(e.orig)
    errorMessage = errorMessage.translate({ord(i): None for i in '\\"\\.\\(\\)'})
    errorMessage = errorMessage.replace("Key ", "For ")
    errorMessage = errorMessage.replace("=", " value ")
    return errorMessage


def logException(e: Exception) -> None:
    """Log an exception with traceback using Uvicorn's error logger."""
    detail = str(format_exception(type(e), e, e.__traceback__))
    logger = getLogger("uvicorn.error")
    logger.error(detail)


# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------
class APIException(HTTPException):
    """
    Base class for all application-specific exceptions.

    The HTTP status code is never chosen by the raiser; it follows from the
    `kind` of the exception through `STATUS_OF_KIND`.
    """

    kind = ErrorKind.VALIDATION
    detail = None
    headers = None

    def __init__(self, *args, **kwargs):
        kwargs.setdefault("status_code", STATUS_OF_KIND[self.kind])
        kwargs.setdefault("detail", self.detail)
        kwargs.setdefault("headers", self.headers)
        super().__init__(*args, **kwargs)


# ---------------------------------------------------------------------------
# Exception handling entrypoint
# ---------------------------------------------------------------------------
def handle(e: Exception):
    """
    Normalize and re-raise exceptions as API-friendly errors.

    Converts raw exceptions from DB, Pydantic, Redis, etc. into
    corresponding APIException subclasses. Integrity errors are
    classified by SQLSTATE, never by message text.
    """
    if isinstance(e, IntegrityError):
        sqlState = getattr(e.orig, "pgcode", None)
        if sqlState == UNIQUE_VIOLATION:
            raise UniqueViolation(formatIntegrityError(e))
        if sqlState == FOREIGN_KEY_VIOLATION:
            raise ForeignKeyViolation(formatIntegrityError(e))
    if isinstance(e, ValidationError):
        raise PydanticError(detail=e.errors())
    if isinstance(e, APIException):
        raise e
    if isinstance(e, RedisError):
        raise RedisDBError(detail=str(e))

    logException(e)
    raise e


# ---------------------------------------------------------------------------
# Exception Classes
# ---------------------------------------------------------------------------
class PydanticError(APIException):
    kind = ErrorKind.VALIDATION
    headers = {"X-Error": "PydanticError"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)


class UniqueViolation(APIException):
    kind = ErrorKind.CONFLICT
    headers = {"X-Error": "UniqueViolation"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)


class ForeignKeyViolation(APIException):
    kind = ErrorKind.VALIDATION
    headers = {"X-Error": "ForeignKeyViolation"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)


class UnknownValue(APIException):
    kind = ErrorKind.NOT_FOUND
    headers = {"X-Error": "UnknownValue"}

    def __init__(self, column_name: Column, value=None):
        if value is None:
            detail = f"Invalid {column_name.name} is provided"
        else:
            detail = f"Unknown {column_name.name} {value} is provided"
        super().__init__(detail=detail)


class DuplicateValue(APIException):
    kind = ErrorKind.CONFLICT
    headers = {"X-Error": "DuplicateValue"}

    def __init__(self, column_name: Column):
        detail = f"The {column_name.name} already exists in this organization"
        super().__init__(detail=detail)


class ReservedValue(APIException):
    kind = ErrorKind.CONFLICT
    headers = {"X-Error": "ReservedValue"}

    def __init__(self, column_name: Column):
        detail = f"The {column_name.name} is reserved for the platform"
        super().__init__(detail=detail)


class InvalidCredentials(APIException):
    kind = ErrorKind.UNAUTHORIZED
    detail = "Invalid email or password"
    headers = {"X-Error": "InvalidCredentials"}


class InactiveAccount(APIException):
    kind = ErrorKind.FORBIDDEN
    detail = "The account is not in active status"
    headers = {"X-Error": "InactiveAccount"}


class InvalidToken(APIException):
    kind = ErrorKind.UNAUTHORIZED
    detail = "Invalid token"
    headers = {"X-Error": "InvalidToken"}


class NoPermission(APIException):
    kind = ErrorKind.FORBIDDEN
    detail = "This user has insufficient permission to perform this action"
    headers = {"X-Error": "NoPermission"}


class OwnRecordsOnly(APIException):
    kind = ErrorKind.FORBIDDEN
    detail = "This user can only access own records"
    headers = {"X-Error": "OwnRecordsOnly"}


class InvalidIdentifier(APIException):
    kind = ErrorKind.NOT_FOUND
    detail = "Invalid ID provided"
    headers = {"X-Error": "InvalidIdentifier"}


class UnknownOrganization(APIException):
    kind = ErrorKind.NOT_FOUND
    detail = "The organization does not exist or is not active"
    headers = {"X-Error": "UnknownOrganization"}


class InvalidStateTransition(APIException):
    kind = ErrorKind.CONFLICT
    headers = {"X-Error": "InvalidStateTransition"}

    def __init__(self, column_name: Column):
        detail = f"The {column_name.name} cannot be set to the provided value"
        super().__init__(detail=detail)


class ActiveTripExists(APIException):
    kind = ErrorKind.CONFLICT
    detail = "The bus already has an active trip"
    headers = {"X-Error": "ActiveTripExists"}


class CapacityExceeded(APIException):
    kind = ErrorKind.CONFLICT
    headers = {"X-Error": "CapacityExceeded"}

    def __init__(self, capacity: int):
        detail = f"The bus capacity of {capacity} students would be exceeded"
        super().__init__(detail=detail)


class TripInProgress(APIException):
    kind = ErrorKind.CONFLICT
    detail = "The trip is in progress and cannot be removed"
    headers = {"X-Error": "TripInProgress"}


class DriverNotAssigned(APIException):
    kind = ErrorKind.FORBIDDEN
    detail = "The driver is not assigned to this bus"
    headers = {"X-Error": "DriverNotAssigned"}


class DataInUse(APIException):
    kind = ErrorKind.CONFLICT
    headers = {"X-Error": "DataInUse"}

    def __init__(self, orm_class, references: list[str] | None = None):
        detail = f"The {orm_class.__name__} is currently in use"
        if references:
            detail = f"{detail} by: {', '.join(references)}"
        super().__init__(detail=detail)


class ProtectedResource(APIException):
    kind = ErrorKind.FORBIDDEN
    headers = {"X-Error": "ProtectedResource"}

    def __init__(self, orm_class):
        detail = f"The default {orm_class.__name__} can only be removed by the platform superadmin"
        super().__init__(detail=detail)


class MissingParameter(APIException):
    kind = ErrorKind.VALIDATION
    headers = {"X-Error": "MissingParameter"}

    def __init__(self, column_name: Column):
        detail = f"The {column_name.name} is missing"
        super().__init__(detail=detail)


class ProvisioningFailed(APIException):
    kind = ErrorKind.INTERNAL
    headers = {"X-Error": "ProvisioningFailed"}

    def __init__(self, database: str, reason: str):
        detail = f"Failed to provision database {database}: {reason}"
        super().__init__(detail=detail)


class TransactionTimeout(APIException):
    kind = ErrorKind.UNAVAILABLE
    detail = "The transaction exceeded its time limit and was rolled back, retry later"
    headers = {
        "X-Error": "TransactionTimeout",
        "Retry-After": str(TRANSACTION_RETRY_AFTER),
    }


class LockAcquireTimeout(APIException):
    kind = ErrorKind.UNAVAILABLE
    headers = {"X-Error": "LockAcquireTimeout"}
    detail = "Lock acquisition timed out"


class RedisDBError(APIException):
    kind = ErrorKind.UNAVAILABLE
    headers = {"X-Error": "RedisAPIError"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)
