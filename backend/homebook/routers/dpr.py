from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.common import (
    clean_str,
    month_range,
    ok,
    parse_date_field,
    parse_optional_int,
    read_json,
    require_str,
)
from homebook.services.dpr import render_month_pdf, split_extra_entries, text_array
from homebook.services.uploads import binary_response

log = get_logger(__name__)

router = APIRouter(prefix="/api/dpr")

DPR_SELECT = """
    SELECT d.id, d.category_id, d.work_date, d.month_name, d.details, d.work_time,
           d.extra_details, d.extra_times, d.created_at, c.category_name
    FROM dpr d
    LEFT JOIN workcategory c ON c.id = d.category_id
"""


@router.get("/categories")
def list_categories():
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT id, category_name FROM workcategory ORDER BY category_name")
        return ok(cur.fetchall())


@router.post("/categories", status_code=201)
async def create_category(req: Request):
    data = await read_json(req)
    name = require_str(data.get("category_name"), "category_name is required")
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                "INSERT INTO workcategory (category_name) VALUES (%s) RETURNING id, category_name",
                (name,),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.UniqueViolation: "Category already exists"})
    return ok(row)


@router.get("")
@router.get("/", include_in_schema=False)
def list_entries(
    category_id: str | None = None,
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
):
    clauses: list[str] = []
    params: list[Any] = []
    parsed_category = parse_optional_int(category_id, "category_id")
    if parsed_category is not None:
        clauses.append("d.category_id=%s")
        params.append(parsed_category)
    start = parse_date_field(date_from, "from")
    if start is not None:
        clauses.append("d.work_date >= %s")
        params.append(start)
    end = parse_date_field(date_to, "to")
    if end is not None:
        clauses.append("d.work_date <= %s")
        params.append(end)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"{DPR_SELECT} {where} ORDER BY d.work_date, d.id", params)
        return ok(cur.fetchall())


@router.get("/month/{month_name}")
def list_month(month_name: str):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"{DPR_SELECT} WHERE lower(d.month_name)=lower(%s) ORDER BY d.work_date, d.id",
            (month_name.strip(),),
        )
        return ok(cur.fetchall())


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_entry(req: Request):
    data = await read_json(req)
    work_date = parse_date_field(data.get("work_date"), "work_date", required=True)
    details = require_str(data.get("details"), "details is required")
    work_time = require_str(data.get("work_time"), "work_time is required")
    extra_details, extra_times = split_extra_entries(data.get("extra_entries"))

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO dpr (category_id, work_date, month_name, details, work_time, extra_details, extra_times)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    parse_optional_int(data.get("category_id"), "category_id") or None,
                    work_date,
                    work_date.strftime("%B"),
                    details,
                    work_time,
                    extra_details,
                    extra_times,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.ForeignKeyViolation: "Work category not found"})
    log.info("dpr_created", dpr_id=row["id"], work_date=work_date.isoformat())
    return ok(row)


@router.put("/{entry_id}")
async def update_entry(entry_id: int, req: Request):
    data = await read_json(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT * FROM dpr WHERE id=%s", (entry_id,))
        current = cur.fetchone()
        if not current:
            raise HTTPException(status_code=404, detail="DPR entry not found")

        work_date = parse_date_field(data.get("work_date"), "work_date") or current["work_date"]
        details = clean_str(data.get("details")) or current["details"]
        work_time = clean_str(data.get("work_time")) or current["work_time"]
        category_id = parse_optional_int(data.get("category_id"), "category_id") or current["category_id"]
        if "extra_entries" in data:
            extra_details, extra_times = split_extra_entries(data.get("extra_entries"))
        else:
            extra_details = text_array(data.get("extra_details"))
            extra_times = text_array(data.get("extra_times"))
            if extra_details is None:
                extra_details = current["extra_details"]
            if extra_times is None:
                extra_times = current["extra_times"]

        try:
            cur.execute(
                """
                UPDATE dpr
                SET category_id=%s, work_date=%s, month_name=%s, details=%s, work_time=%s,
                    extra_details=%s, extra_times=%s
                WHERE id=%s
                RETURNING *
                """,
                (
                    category_id,
                    work_date,
                    work_date.strftime("%B"),
                    details,
                    work_time,
                    extra_details,
                    extra_times,
                    entry_id,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.ForeignKeyViolation: "Work category not found"})
    return ok(row)


@router.delete("/delete/{work_date}")
def delete_day(work_date: str):
    day = parse_date_field(work_date, "date", required=True)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM dpr WHERE work_date=%s RETURNING id", (day,))
        deleted = cur.fetchall()
        if not deleted:
            raise HTTPException(status_code=404, detail="No DPR entries found for this date")
        conn.commit()
    log.info("dpr_day_deleted", work_date=day.isoformat(), deleted=len(deleted))
    return ok({"deleted": len(deleted)})


@router.delete("/{entry_id}")
def delete_entry(entry_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM dpr WHERE id=%s RETURNING id", (entry_id,))
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="DPR entry not found")
    return ok()


@router.get("/export/{month}")
def export_month(month: str):
    start, end = month_range(month)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"{DPR_SELECT} WHERE d.work_date >= %s AND d.work_date < %s ORDER BY d.work_date, d.id",
            (start, end),
        )
        entries = cur.fetchall()
    content = render_month_pdf(month, entries)
    log.info("dpr_pdf_rendered", month=month, entries=len(entries))
    return binary_response(content, "application/pdf", f"DPR_{month}.pdf", inline=False)
