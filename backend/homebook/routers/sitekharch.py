from typing import Any

from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.common import build_update_clause, clean_str, ok, read_json
from homebook.services.sitekharch import (
    build_summary,
    normalize_kharch_row,
    parse_kharch_body,
    parse_received_body,
    render_summary_pdf,
    sitekharch_month_range,
)
from homebook.services.uploads import binary_response

log = get_logger(__name__)

router = APIRouter(prefix="/api/sitekharch")


def _month_filter(column: str, month: str | None) -> tuple[str, list[Any]]:
    if not clean_str(month):
        return "", []
    start, end = sitekharch_month_range(month.strip())
    return f"WHERE {column} >= %s AND {column} < %s", [start, end]


def _require_month(month: str | None) -> str:
    if not clean_str(month):
        raise HTTPException(status_code=400, detail="month is required")
    month = month.strip()
    sitekharch_month_range(month)
    return month


def _load_month(cur, month: str) -> dict[str, Any]:
    start, end = sitekharch_month_range(month)
    cur.execute(
        "SELECT * FROM site_kharch WHERE kharch_date >= %s AND kharch_date < %s ORDER BY kharch_date, seq_no",
        (start, end),
    )
    kharch = cur.fetchall()
    cur.execute(
        "SELECT * FROM user_sitekharch_amount WHERE payment_date >= %s AND payment_date < %s ORDER BY payment_date, id",
        (start, end),
    )
    return build_summary(month, kharch, cur.fetchall())


@router.post("/kharch", status_code=201)
async def create_kharch(req: Request):
    fields = parse_kharch_body(await read_json(req))
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO site_kharch (kharch_date, amount, details, extra_amount, extra_details, extra_items)
                VALUES (COALESCE(%s, CURRENT_DATE), %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    fields["kharch_date"],
                    fields["amount"],
                    fields["details"],
                    fields["extra_amount"],
                    fields["extra_details"],
                    Jsonb(fields["extra_items"]),
                ),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)
    log.info("site_kharch_added", kharch_id=row["id"])
    return ok(normalize_kharch_row(row), "Site kharch added")


@router.get("/kharch")
def list_kharch(month: str | None = None):
    where, params = _month_filter("kharch_date", month)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT * FROM site_kharch {where} ORDER BY kharch_date, seq_no", params)
        rows = [normalize_kharch_row(r) for r in cur.fetchall()]
    if not rows:
        return ok([], "No site kharch found for selected month", noData=True)
    return ok(rows, "Site kharch list")


@router.put("/kharch/{kharch_id}")
async def update_kharch(kharch_id: int, req: Request):
    data = await read_json(req)
    parsed = parse_kharch_body({"amount": 0, **data})
    fields = {key: parsed[key] for key in parsed if key in data}
    if "extra_items" in fields:
        fields["extra_items"] = Jsonb(fields["extra_items"])
    assignments, params = build_update_clause(fields)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(f"UPDATE site_kharch SET {assignments} WHERE id=%s RETURNING *", (*params, kharch_id))
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)
    if not row:
        raise HTTPException(status_code=404, detail="Site kharch not found")
    return ok(normalize_kharch_row(row), "Site kharch updated")


@router.delete("/kharch/{kharch_id}")
def delete_kharch(kharch_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM site_kharch WHERE id=%s RETURNING id", (kharch_id,))
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Site kharch not found")
    log.info("site_kharch_deleted", kharch_id=kharch_id)
    return ok({"id": kharch_id}, "Site kharch deleted")


@router.post("/received", status_code=201)
async def create_received(req: Request):
    fields = parse_received_body(await read_json(req))
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO user_sitekharch_amount (payment_date, amount_received, details, payment_mode)
                VALUES (COALESCE(%s, CURRENT_DATE), %s, %s, %s)
                RETURNING *
                """,
                (fields["payment_date"], fields["amount_received"], fields["details"], fields["payment_mode"]),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)
    log.info("site_received_added", received_id=row["id"])
    return ok(row, "Received amount added")


@router.get("/received")
def list_received(month: str | None = None):
    where, params = _month_filter("payment_date", month)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT * FROM user_sitekharch_amount {where} ORDER BY payment_date, id", params)
        rows = cur.fetchall()
    if not rows:
        return ok([], "No received amounts found for selected month", noData=True)
    return ok(rows, "Received list")


@router.put("/received/{received_id}")
async def update_received(received_id: int, req: Request):
    data = await read_json(req)
    parsed = parse_received_body({"amount_received": 0, **data})
    fields = {key: parsed[key] for key in parsed if key in data}
    assignments, params = build_update_clause(fields)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                f"UPDATE user_sitekharch_amount SET {assignments} WHERE id=%s RETURNING *",
                (*params, received_id),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)
    if not row:
        raise HTTPException(status_code=404, detail="Received amount not found")
    return ok(row, "Received amount updated")


@router.delete("/received/{received_id}")
def delete_received(received_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM user_sitekharch_amount WHERE id=%s RETURNING id", (received_id,))
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Received amount not found")
    return ok({"id": received_id}, "Received amount deleted")


@router.get("/summary")
def month_summary(month: str | None = None):
    month = _require_month(month)
    with db_conn() as conn, conn.cursor() as cur:
        summary = _load_month(cur, month)
    if not summary["kharch"] and not summary["received"]:
        return ok(summary, "No data for selected month", noData=True)
    return ok(summary, "Monthly summary")


@router.get("/download")
def download_pdf(month: str | None = None):
    month = _require_month(month)
    with db_conn() as conn, conn.cursor() as cur:
        summary = _load_month(cur, month)
    content = render_summary_pdf(summary)
    log.info("sitekharch_pdf_rendered", month=month, size=len(content))
    return binary_response(content, "application/pdf", f"sitekharch-{month}.pdf", inline=False)
