from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.common import (
    clean_str,
    ok,
    parse_date_field,
    parse_decimal,
    parse_optional_int,
    read_json,
    require_str,
    today_local,
)

log = get_logger(__name__)

router = APIRouter(prefix="/api/dailyTransaction")

TXN_TYPES = ("debit", "credit")
BULK_DELETE_BLOCKED = "Dangerous operation blocked. Add confirm=YES to proceed with deletion."
SEQUENCE_CLASH = "Another transaction took this sequence number, please retry"
WRITE_ERRORS = {
    pg_errors.ForeignKeyViolation: "Category or subcategory does not exist",
    pg_errors.UniqueViolation: SEQUENCE_CLASH,
}

TXN_COLUMNS = """
    t.daily_transaction_id, t.sequence_no, t.amount, t.type, t.category_id, t.subcategory_id,
    t.purpose, t.quantity, t.transaction_date, t.created_at,
    c.category_name, c.category_color, s.subcategory_name
"""


def _parse_amount(value: Any):
    try:
        amount = parse_decimal(value, "amount")
    except HTTPException:
        amount = None
    if amount is None or amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be a positive number")
    return amount


def _parse_quantity(value: Any) -> int | None:
    """``None`` means not sent; the column default or the stored value applies."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        quantity = parse_optional_int(value, "quantity")
    except HTTPException:
        quantity = -1
    if quantity is None or quantity < 0:
        raise HTTPException(status_code=400, detail="quantity must be a non-negative integer")
    return quantity


def _parse_body(data: dict[str, Any]) -> dict[str, Any]:
    amount = _parse_amount(data.get("amount"))
    if data.get("category_id") in (None, "", 0, "0"):
        raise HTTPException(status_code=400, detail="Category is required")
    txn_type = str(data.get("type") or "debit").strip().lower()
    if txn_type not in TXN_TYPES:
        raise HTTPException(status_code=400, detail="type must be debit or credit")
    return {
        "amount": amount,
        "type": txn_type,
        "category_id": parse_optional_int(data.get("category_id"), "category_id"),
        "subcategory_id": parse_optional_int(data.get("subcategory_id"), "subcategory_id") or None,
        "purpose": clean_str(data.get("purpose")),
        "transaction_date": parse_date_field(data.get("transaction_date"), "transaction_date"),
        "quantity": _parse_quantity(data.get("quantity")),
    }


def _list_for_day(cur, day: date) -> list[dict[str, Any]]:
    cur.execute(
        f"""
        SELECT {TXN_COLUMNS}
        FROM daily_transaction t
        LEFT JOIN txn_category c ON c.category_id = t.category_id
        LEFT JOIN txn_subcategory s ON s.subcategory_id = t.subcategory_id
        WHERE t.transaction_date=%s
        ORDER BY t.sequence_no
        """,
        (day,),
    )
    return cur.fetchall()


@router.get("")
@router.get("/", include_in_schema=False)
def list_today():
    with db_conn() as conn, conn.cursor() as cur:
        return ok(_list_for_day(cur, today_local()))


@router.post("")
@router.post("/", include_in_schema=False)
async def create_transaction(req: Request):
    fields = _parse_body(await read_json(req))
    txn_date = fields["transaction_date"] or today_local()

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO daily_transaction
                    (sequence_no, amount, type, category_id, subcategory_id, purpose, transaction_date, quantity)
                SELECT COALESCE(MAX(sequence_no), 0) + 1, %s, %s, %s, %s, %s, %s, COALESCE(%s, 0)
                FROM daily_transaction
                WHERE transaction_date=%s
                RETURNING daily_transaction_id, sequence_no
                """,
                (
                    fields["amount"],
                    fields["type"],
                    fields["category_id"],
                    fields["subcategory_id"],
                    fields["purpose"],
                    txn_date,
                    fields["quantity"],
                    txn_date,
                ),
            )
            created = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, WRITE_ERRORS)
        rows = _list_for_day(cur, today_local())

    log.info("daily_transaction_created", transaction_id=created["daily_transaction_id"], sequence_no=created["sequence_no"])
    return ok(rows, "Transaction added")


@router.put("/{transaction_id}")
async def update_transaction(transaction_id: int, req: Request):
    fields = _parse_body(await read_json(req))

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                UPDATE daily_transaction
                SET amount=%s, type=%s, category_id=%s, subcategory_id=%s, purpose=%s,
                    sequence_no=CASE
                        WHEN %s::date IS NULL OR %s::date = transaction_date THEN sequence_no
                        ELSE (
                            SELECT COALESCE(MAX(d.sequence_no), 0) + 1
                            FROM daily_transaction d
                            WHERE d.transaction_date=%s::date
                        )
                    END,
                    transaction_date=COALESCE(%s, transaction_date),
                    quantity=COALESCE(%s, quantity)
                WHERE daily_transaction_id=%s
                RETURNING daily_transaction_id
                """,
                (
                    fields["amount"],
                    fields["type"],
                    fields["category_id"],
                    fields["subcategory_id"],
                    fields["purpose"],
                    fields["transaction_date"],
                    fields["transaction_date"],
                    fields["transaction_date"],
                    fields["transaction_date"],
                    fields["quantity"],
                    transaction_id,
                ),
            )
            updated = cur.fetchone()
            if not updated:
                raise HTTPException(status_code=404, detail="Transaction not found")
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, WRITE_ERRORS)
        rows = _list_for_day(cur, today_local())

    return ok(rows, "Transaction updated")


@router.delete("/{transaction_id}")
def delete_transaction(transaction_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM daily_transaction WHERE daily_transaction_id=%s RETURNING daily_transaction_id",
            (transaction_id,),
        )
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Transaction not found")
        conn.commit()
        rows = _list_for_day(cur, today_local())

    log.info("daily_transaction_deleted", transaction_id=transaction_id)
    return ok(rows, "Transaction deleted")


@router.get("/daily-summary")
def daily_summary(date: str | None = None):
    summary_date = parse_date_field(date, "date") or today_local()
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                COALESCE(SUM(amount) FILTER (WHERE type='debit'), 0) AS total_debit,
                COALESCE(SUM(amount) FILTER (WHERE type='credit'), 0) AS total_credit,
                COUNT(*) AS total_transactions
            FROM daily_transaction
            WHERE transaction_date=%s
            """,
            (summary_date,),
        )
        row = cur.fetchone() or {}

    return ok(
        {
            "summary_date": summary_date.isoformat(),
            "total_debit": row.get("total_debit", 0),
            "total_credit": row.get("total_credit", 0),
            "total_transactions": row.get("total_transactions", 0),
        }
    )


@router.delete("")
@router.delete("/", include_in_schema=False)
def delete_day(date: str | None = None, confirm: str | None = None):
    target = parse_date_field(date, "date", required=True)
    if confirm != "YES":
        raise HTTPException(status_code=400, detail=BULK_DELETE_BLOCKED)

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            WITH del AS (
                DELETE FROM daily_transaction
                WHERE transaction_date=%s
                RETURNING amount, type
            )
            SELECT
                COUNT(*) AS deleted_count,
                COALESCE(SUM(amount) FILTER (WHERE type='debit'), 0) AS debit_sum,
                COALESCE(SUM(amount) FILTER (WHERE type='credit'), 0) AS credit_sum
            FROM del
            """,
            (target,),
        )
        stats = cur.fetchone()
        if not stats or not stats["deleted_count"]:
            conn.rollback()
            raise HTTPException(status_code=404, detail="No transactions found for that date.")
        conn.commit()

    log.warning("daily_transactions_bulk_deleted", date=target.isoformat(), deleted=stats["deleted_count"])
    return ok(
        message=f"Deleted {stats['deleted_count']} transaction(s) for {target.isoformat()}.",
        removed={
            "deleted_count": stats["deleted_count"],
            "debit_sum": stats["debit_sum"],
            "credit_sum": stats["credit_sum"],
        },
    )


@router.get("/categories")
def list_categories():
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT category_id, category_name, category_color FROM txn_category ORDER BY category_name")
        return ok(cur.fetchall())


@router.post("/categories", status_code=201)
async def create_category(req: Request):
    data = await read_json(req)
    name = require_str(data.get("category_name"), "category_name is required")
    color = clean_str(data.get("category_color"))
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO txn_category (category_name, category_color)
                VALUES (%s, %s)
                RETURNING category_id, category_name, category_color
                """,
                (name, color),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.UniqueViolation: "Category already exists"})
    return ok(row, "Category created")


@router.get("/categories/{category_id}/subcategories")
def list_subcategories(category_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT subcategory_id, category_id, subcategory_name
            FROM txn_subcategory
            WHERE category_id=%s
            ORDER BY subcategory_name
            """,
            (category_id,),
        )
        return ok(cur.fetchall())


@router.post("/subcategories", status_code=201)
async def create_subcategory(req: Request):
    data = await read_json(req)
    name = require_str(data.get("subcategory_name"), "subcategory_name is required")
    category_id = parse_optional_int(data.get("category_id"), "category_id")
    if category_id is None:
        raise HTTPException(status_code=400, detail="category_id is required")

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT 1 FROM txn_category WHERE category_id=%s", (category_id,))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Category not found")
        try:
            cur.execute(
                """
                INSERT INTO txn_subcategory (category_id, subcategory_name)
                VALUES (%s, %s)
                RETURNING subcategory_id, category_id, subcategory_name
                """,
                (category_id, name),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.UniqueViolation: "Subcategory already exists"})
    return ok(row, "Subcategory created")
