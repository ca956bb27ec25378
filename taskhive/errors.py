"""Error types and helpers for taskhive."""

from __future__ import annotations

import re
from typing import Any

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class TaskhiveError(Exception):
    """Base class for typed outcomes returned across the service boundary."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.details}


class AuthenticationError(TaskhiveError):
    status_code = 401
    code = "unauthenticated"


class ValidationFailedError(TaskhiveError):
    status_code = 400
    code = "validation_failed"


class NotFoundError(TaskhiveError):
    status_code = 404
    code = "not_found"


class LimitExceededError(TaskhiveError):
    """Account-level limit reached. Callers retry later."""

    status_code = 429

    def __init__(self, message: str, *, limit: Any, current: Any) -> None:
        super().__init__(message, limit=limit, current=current)
        self.limit = limit
        self.current = current


class CapacityExceededError(LimitExceededError):
    code = "capacity_exceeded"


class QuotaExceededError(LimitExceededError):
    code = "quota_exceeded"


class InvalidTransitionError(TaskhiveError):
    status_code = 409
    code = "invalid_transition"


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `uv run alembic upgrade head`",
        "Or for a scratch database: `uv run taskhive init-db`",
    ]
    return "\n".join(lines)
