"""
exceptions.py — Error taxonomy and database error translation

Business Rules:
- Every error the core raises is a CallTrackError subclass carrying an HTTP status
- Store constraint violations map into the taxonomy:
  unique → Conflict "Duplicate value"
  foreign key → Validation "Operation blocked by related records"
  not null → Validation "Missing required fields"
  bad identifier text → Validation "Invalid identifier"
- Non-database errors passed to handle_db_error are re-raised untouched

Called by: services/*, main.py (exception handlers)
Depends on: sqlalchemy.exc
"""

from sqlalchemy.exc import DBAPIError, StatementError


class CallTrackError(Exception):
    status_code = 400

    def __init__(self, message: str = "", *, detail: list | None = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.detail = detail


class ValidationError(CallTrackError):
    status_code = 400


class SignatureError(CallTrackError):
    status_code = 403


class NotFoundError(CallTrackError):
    status_code = 404


class ConflictError(CallTrackError):
    status_code = 409


class CapacityExceededError(ConflictError):
    pass


class TransientError(CallTrackError):
    """Provider 429/5xx or network failure; safe to retry."""

    status_code = 503


class FatalError(CallTrackError):
    """Provider rejected the request outright; never retried."""

    status_code = 502


# ── Database error translation ─────────────────────────────────────────

_PG_UNIQUE = "23505"
_PG_FOREIGN_KEY = "23503"
_PG_NOT_NULL = "23502"
_PG_INVALID_TEXT = "22P02"
_PG_SERIALIZATION = "40001"
_PG_DEADLOCK = "40P01"


def db_error_kind(exc: BaseException) -> str | None:
    """Classify a SQLAlchemy error as unique / foreign_key / not_null / invalid_text.

    Works for psycopg2 (pgcode) and sqlite3 (message text).
    """
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code:
        return {
            _PG_UNIQUE: "unique",
            _PG_FOREIGN_KEY: "foreign_key",
            _PG_NOT_NULL: "not_null",
            _PG_INVALID_TEXT: "invalid_text",
            _PG_SERIALIZATION: "serialization",
            _PG_DEADLOCK: "deadlock",
        }.get(code)
    msg = str(orig).upper()
    if "UNIQUE CONSTRAINT" in msg:
        return "unique"
    if "FOREIGN KEY CONSTRAINT" in msg:
        return "foreign_key"
    if "NOT NULL CONSTRAINT" in msg:
        return "not_null"
    if "DATABASE IS LOCKED" in msg:
        return "serialization"
    return None


def is_retryable_db_error(exc: BaseException) -> bool:
    return db_error_kind(exc) in ("serialization", "deadlock", "unique")


def handle_db_error(exc: BaseException, fallback: str = "Database error") -> CallTrackError:
    """Translate a store error into the taxonomy and raise it.

    Call inside an ``except`` block. Non-database errors propagate as-is.
    """
    if isinstance(exc, CallTrackError):
        raise exc
    if not isinstance(exc, (DBAPIError, StatementError)):
        raise exc

    kind = db_error_kind(exc)
    if kind == "unique":
        raise ConflictError("Duplicate value") from exc
    if kind == "foreign_key":
        raise ValidationError("Operation blocked by related records") from exc
    if kind == "not_null":
        raise ValidationError("Missing required fields") from exc
    if kind == "invalid_text":
        raise ValidationError("Invalid identifier") from exc
    raise ValidationError(fallback) from exc
