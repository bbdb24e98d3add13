from typing import Any

from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.auth import require_user_id
from homebook.services.common import month_range, ok, read_json
from homebook.services.investment import (
    JOURNAL_FIELDS,
    JOURNAL_SELECT,
    insert_child_rows,
    load_child_rows,
    parse_child_rows,
    parse_journal_payload,
    parse_optional_id,
    replace_child_rows,
    require_category,
    require_plan_for_subcategory,
    require_subcategory_in_category,
    validate_option_fields,
)

log = get_logger(__name__)

router = APIRouter(prefix="/api/journal")


def _check_ownership(cur, user_id: int, values: dict[str, Any]) -> bool:
    """Verify category, subcategory and plan; returns whether the segment is options."""
    require_category(cur, user_id, values["category_id"])
    is_options = require_subcategory_in_category(cur, user_id, values["category_id"], values["subcategory_id"])
    values["strike_price"], values["option_type"] = validate_option_fields(
        is_options, values["strike_price"], values["option_type"]
    )
    if values["plan_id"] is not None:
        require_plan_for_subcategory(cur, user_id, values["plan_id"], values["subcategory_id"])
    return is_options


def _fetch_entry(cur, user_id: int, journal_id: int):
    cur.execute(f"{JOURNAL_SELECT} WHERE j.journal_id=%s AND j.user_id=%s", (journal_id, user_id))
    return cur.fetchone()


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_entry(req: Request):
    user_id = require_user_id(req)
    data = await read_json(req)
    values = parse_journal_payload(data)

    with db_conn() as conn, conn.cursor() as cur:
        is_options = _check_ownership(cur, user_id, values)
        children = parse_child_rows(is_options, data.get("options"), data.get("stocks"))
        columns = ", ".join(JOURNAL_FIELDS)
        placeholders = ", ".join(["%s"] * len(JOURNAL_FIELDS))
        try:
            cur.execute(
                f"""
                INSERT INTO investment_tradingjournal (user_id, {columns})
                VALUES (%s, {placeholders})
                RETURNING journal_id
                """,
                (user_id, *(values[f] for f in JOURNAL_FIELDS)),
            )
            journal_id = cur.fetchone()["journal_id"]
            insert_child_rows(cur, journal_id, is_options, children)
            entry = _fetch_entry(cur, user_id, journal_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)

    log.info("journal_created", user_id=user_id, journal_id=journal_id, child_rows=len(children))
    return ok(entry, "Journal entry created")


@router.get("")
@router.get("/", include_in_schema=False)
def list_entries(
    req: Request,
    month: str | None = None,
    category_id: str | None = None,
    subcategory_id: str | None = None,
):
    user_id = require_user_id(req)
    clauses = ["j.user_id=%s"]
    params: list[Any] = [user_id]
    if month:
        start, end = month_range(month)
        clauses.append("j.trade_date >= %s AND j.trade_date < %s")
        params.extend([start, end])
    parsed_category = parse_optional_id(category_id, "category_id")
    if parsed_category is not None:
        clauses.append("j.category_id=%s")
        params.append(parsed_category)
    parsed_subcategory = parse_optional_id(subcategory_id, "subcategory_id")
    if parsed_subcategory is not None:
        clauses.append("j.subcategory_id=%s")
        params.append(parsed_subcategory)

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"{JOURNAL_SELECT} WHERE {' AND '.join(clauses)} ORDER BY j.trade_date DESC, j.journal_id DESC",
            params,
        )
        return ok(cur.fetchall())


@router.get("/{journal_id}")
def get_entry(journal_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        entry = _fetch_entry(cur, user_id, journal_id)
        if not entry:
            raise HTTPException(status_code=404, detail="Journal entry not found")
        children = load_child_rows(cur, journal_id)
    return ok({**entry, **children})


@router.put("/{journal_id}")
async def update_entry(journal_id: int, req: Request):
    user_id = require_user_id(req)
    data = await read_json(req)

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {', '.join(JOURNAL_FIELDS)} FROM investment_tradingjournal WHERE journal_id=%s AND user_id=%s",
            (journal_id, user_id),
        )
        current = cur.fetchone()
        if not current:
            raise HTTPException(status_code=404, detail="Journal entry not found")

        values = parse_journal_payload(data, current)
        is_options = _check_ownership(cur, user_id, values)
        replace_children = "options" in data or "stocks" in data
        children = parse_child_rows(is_options, data.get("options"), data.get("stocks")) if replace_children else []

        assignments = ", ".join(f"{f}=%s" for f in JOURNAL_FIELDS)
        try:
            cur.execute(
                f"UPDATE investment_tradingjournal SET {assignments} WHERE journal_id=%s AND user_id=%s",
                (*(values[f] for f in JOURNAL_FIELDS), journal_id, user_id),
            )
            if replace_children:
                replace_child_rows(cur, journal_id, is_options, children)
            entry = _fetch_entry(cur, user_id, journal_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)

    log.info("journal_updated", user_id=user_id, journal_id=journal_id, replaced_children=replace_children)
    return ok(entry, "Journal entry updated")


@router.delete("/{journal_id}")
def delete_entry(journal_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM investment_tradingjournal WHERE journal_id=%s AND user_id=%s RETURNING journal_id",
            (journal_id, user_id),
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Journal entry not found")
    log.info("journal_deleted", user_id=user_id, journal_id=journal_id)
    return ok(message="Journal entry deleted")
