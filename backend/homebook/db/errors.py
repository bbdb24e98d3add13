"""Translate PostgreSQL driver errors into HTTP errors.

Handlers catch ``psycopg.Error`` around their writes and hand it to
``raise_for_db_error``; anything without a mapping is re-raised untouched
and ends up in the generic 500 handler.
"""

from typing import NoReturn

import psycopg
from fastapi import HTTPException
from psycopg import errors as pg_errors

DEFAULT_MESSAGES: dict[type[psycopg.Error], tuple[int, str]] = {
    pg_errors.UniqueViolation: (409, "Duplicate entry"),
    pg_errors.ForeignKeyViolation: (409, "Record is referenced by other data"),
    pg_errors.CheckViolation: (400, "Value violates a check constraint"),
    pg_errors.NotNullViolation: (400, "Missing required field"),
    pg_errors.InvalidTextRepresentation: (400, "Invalid value for one of the fields"),
}


def map_db_error(exc: psycopg.Error, overrides: dict[type[psycopg.Error], str] | None = None) -> HTTPException | None:
    for err_type, (status, message) in DEFAULT_MESSAGES.items():
        if isinstance(exc, err_type):
            if overrides and err_type in overrides:
                message = overrides[err_type]
            return HTTPException(status_code=status, detail=message)
    return None


def raise_for_db_error(exc: psycopg.Error, overrides: dict[type[psycopg.Error], str] | None = None) -> NoReturn:
    mapped = map_db_error(exc, overrides)
    if mapped is None:
        raise exc
    raise mapped from exc
