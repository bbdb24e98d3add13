from typing import Any

from fastapi import APIRouter, HTTPException, Request

from homebook.core.logging import get_logger
from homebook.db.pool import db_conn
from homebook.services.auth import require_user_id
from homebook.services.common import clean_str, month_range, ok, parse_date_field, read_json
from homebook.services.investment import (
    parse_optional_id,
    parse_positive,
    parse_txn_type,
    require_category,
    require_subcategory,
    running_balance,
)

log = get_logger(__name__)

router = APIRouter(prefix="/api/dipwid")


def _filters(user_id: int, category_id: str | None, subcategory_id: str | None) -> tuple[str, list[Any]]:
    clauses = ["d.user_id=%s"]
    params: list[Any] = [user_id]
    parsed_category = parse_optional_id(category_id, "category_id")
    parsed_subcategory = parse_optional_id(subcategory_id, "subcategory_id")
    if parsed_category is not None:
        clauses.append("d.category_id=%s")
        params.append(parsed_category)
    if parsed_subcategory is not None:
        clauses.append("d.subcategory_id=%s")
        params.append(parsed_subcategory)
    return " AND ".join(clauses), params


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_dipwid(req: Request):
    user_id = require_user_id(req)
    data = await read_json(req)
    txn_type = parse_txn_type(data.get("txn_type"))
    amount = parse_positive(data.get("amount"), "amount")
    txn_date = parse_date_field(data.get("txn_date"), "txn_date")
    category_id = parse_optional_id(data.get("category_id"), "category_id")
    subcategory_id = parse_optional_id(data.get("subcategory_id"), "subcategory_id")
    note = clean_str(data.get("note"))

    with db_conn() as conn, conn.cursor() as cur:
        if category_id is not None:
            require_category(cur, user_id, category_id)
        if subcategory_id is not None:
            sub = require_subcategory(cur, user_id, subcategory_id)
            if category_id is not None and sub["category_id"] != category_id:
                raise HTTPException(status_code=400, detail="subcategory_id does not belong to category_id")
            category_id = sub["category_id"]

        cur.execute(
            """
            INSERT INTO investment_dipwid (user_id, category_id, subcategory_id, txn_type, amount, txn_date, note)
            VALUES (%s, %s, %s, %s, %s, COALESCE(%s, CURRENT_DATE), %s)
            RETURNING dipwid_id, category_id, subcategory_id, txn_type, amount, txn_date, note, created_at
            """,
            (user_id, category_id, subcategory_id, txn_type, amount, txn_date, note),
        )
        row = cur.fetchone()
        conn.commit()

    log.info("dipwid_saved", user_id=user_id, dipwid_id=row["dipwid_id"], txn_type=txn_type)
    return ok(row, "Transaction saved")


@router.get("")
@router.get("/", include_in_schema=False)
def list_dipwid(req: Request, category_id: str | None = None, subcategory_id: str | None = None):
    user_id = require_user_id(req)
    where, params = _filters(user_id, category_id, subcategory_id)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT d.dipwid_id, d.category_id, d.subcategory_id, d.txn_type, d.amount, d.txn_date, d.note,
                   d.created_at, c.category_name, s.subcategory_name
            FROM investment_dipwid d
            LEFT JOIN investment_category c ON c.category_id = d.category_id
            LEFT JOIN investment_subcategory s ON s.subcategory_id = d.subcategory_id
            WHERE {where}
            ORDER BY d.txn_date DESC, d.dipwid_id DESC
            """,
            params,
        )
        return ok(cur.fetchall())


@router.get("/ledger")
def dipwid_ledger(req: Request, category_id: str | None = None, subcategory_id: str | None = None):
    user_id = require_user_id(req)
    where, params = _filters(user_id, category_id, subcategory_id)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT d.dipwid_id, d.category_id, d.subcategory_id, d.txn_type, d.amount, d.txn_date, d.note
            FROM investment_dipwid d
            WHERE {where}
            ORDER BY d.txn_date ASC, d.dipwid_id ASC
            """,
            params,
        )
        rows = running_balance(cur.fetchall())
    closing = rows[-1]["balance"] if rows else 0
    return ok(rows, closing_balance=closing)


@router.get("/alert")
def dipwid_alert(req: Request, month: str | None = None):
    user_id = require_user_id(req)
    if not clean_str(month):
        raise HTTPException(status_code=400, detail="month is required in YYYY-MM (e.g., 2026-02)")
    start, end = month_range(month)

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                d.category_id, c.category_name, d.subcategory_id, s.subcategory_name,
                COALESCE(SUM(d.amount) FILTER (WHERE d.txn_type='DEPOSIT'), 0) AS deposit,
                COALESCE(SUM(d.amount) FILTER (WHERE d.txn_type='WITHDRAW'), 0) AS withdraw
            FROM investment_dipwid d
            LEFT JOIN investment_category c ON c.category_id = d.category_id
            LEFT JOIN investment_subcategory s ON s.subcategory_id = d.subcategory_id
            WHERE d.user_id=%s AND d.txn_date >= %s AND d.txn_date < %s
            GROUP BY d.category_id, c.category_name, d.subcategory_id, s.subcategory_name
            ORDER BY c.category_name NULLS LAST, s.subcategory_name NULLS LAST
            """,
            (user_id, start, end),
        )
        rows = cur.fetchall()

    data = [
        {**row, "net": row["deposit"] - row["withdraw"], "alert": row["withdraw"] > row["deposit"]}
        for row in rows
    ]
    return ok(data, month=month)


@router.delete("/{dipwid_id}")
def delete_dipwid(dipwid_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM investment_dipwid WHERE dipwid_id=%s AND user_id=%s RETURNING dipwid_id",
            (dipwid_id, user_id),
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found")
    log.info("dipwid_deleted", user_id=user_id, dipwid_id=dipwid_id)
    return ok(message="Transaction deleted")
