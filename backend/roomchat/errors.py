"""Database error types and user-facing error messages.

Every failure raised by the store carries a SQLSTATE-style ``code`` so that
callers (routers, the HTTP exception handler, the API client) can turn it into
a message a chat user can act on.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base class for errors raised by the chat store."""

    code: str = "XX000"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": create_error_with_help(self),
            "code": self.code,
            "message": self.message,
        }


class UndefinedTable(DatabaseError):
    code = "42P01"


class UniqueViolation(DatabaseError):
    code = "23505"
    status_code = 409


class ForeignKeyViolation(DatabaseError):
    code = "23503"
    status_code = 400


class NotNullViolation(DatabaseError):
    code = "23502"
    status_code = 400


class CheckViolation(DatabaseError):
    code = "23514"
    status_code = 400


class UndefinedColumn(DatabaseError):
    code = "42703"
    status_code = 400


class PermissionDenied(DatabaseError):
    code = "42501"
    status_code = 403


class AuthenticationFailed(DatabaseError):
    code = "28000"
    status_code = 401


class InvalidTextRepresentation(DatabaseError):
    code = "22P02"
    status_code = 400


class StatementTooComplex(DatabaseError):
    code = "54001"


class NoRows(DatabaseError):
    """Raised when exactly one row was expected and none is visible."""
    code = "PGRST116"
    status_code = 404


_FRIENDLY = {
    UndefinedTable.code: "The database table does not exist. Please run the schema setup.",
    UniqueViolation.code: "A record with this information already exists.",
    ForeignKeyViolation.code: "This operation references a record that does not exist.",
    PermissionDenied.code: "You do not have permission to perform this operation.",
    AuthenticationFailed.code: "Authentication failed. Please log in again.",
    InvalidTextRepresentation.code: "Invalid UUID or data format.",
}


def handle_database_error(error: BaseException) -> str:
    """Return a user-friendly message for any error raised while talking to the store."""
    if isinstance(error, DatabaseError):
        if error.code in _FRIENDLY:
            return _FRIENDLY[error.code]
        if error.code == StatementTooComplex.code:
            if "infinite recursion" in error.message:
                return "Infinite recursion detected in policy. Check the policy definitions."
            return "The database query is too complex."
        if isinstance(error, (NoRows, CheckViolation)):
            return error.message
        message = f"Database error: {error.message}"
        if error.details:
            message += f" ({error.details})"
        return message

    message = str(error)
    if message:
        if "infinite recursion" in message:
            return "Infinite recursion detected in policy. Check the policy definitions."
        return message
    return "An unknown error occurred. Please try again."


def is_table_not_found_error(error: BaseException) -> bool:
    if isinstance(error, DatabaseError):
        return error.code == UndefinedTable.code
    message = str(error)
    return "relation" in message and "does not exist" in message


def is_recursion_error(error: BaseException) -> bool:
    return "infinite recursion" in str(error)


def create_error_with_help(error: BaseException) -> str:
    """Like handle_database_error() but with troubleshooting steps appended."""
    base_message = handle_database_error(error)

    if is_table_not_found_error(error):
        return (
            f"{base_message} Make sure the store was initialised with the current "
            "schema (restart the server or delete the database file)."
        )

    if is_recursion_error(error):
        return f"{base_message} Policies must not query the table they protect."

    return base_message


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[errors] %s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("[errors] %s %s -> %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DatabaseError, database_error_handler)
