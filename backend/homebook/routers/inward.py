from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.common import ok, parse_date_field, read_json
from homebook.services.inward import (
    DUPLICATE_MESSAGE,
    assign_sr_no_per_date,
    base_url,
    check_bill,
    insert_items,
    insert_upload,
    item_upload_ids,
    merge_pdf_rows,
    parse_items,
    prune_uploads,
    render_range_pdf,
    render_single_pdf,
    validate_payload,
)
from homebook.services.uploads import UploadedFile, binary_response, read_upload

log = get_logger(__name__)

router = APIRouter(prefix="/api/inward")

HEADER_COLUMNS = "id, seq_no, work_date, store, created_at"


async def read_payload(req: Request) -> tuple[dict[str, Any], UploadedFile | None]:
    """JSON body, or multipart with ``items`` as a JSON string and an optional ``bill`` file."""
    content_type = req.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await req.form()
        bill = form.get("bill")
        upload = await read_upload(bill) if bill is not None and not isinstance(bill, str) else None
        payload = validate_payload(form.get("work_date"), form.get("store"), parse_items(form.get("items")))
        return payload, upload
    data = await read_json(req)
    return validate_payload(data.get("work_date"), data.get("store"), parse_items(data.get("items"))), None


def _date_range_where(date_from: str | None, date_to: str | None, column: str) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    start = parse_date_field(date_from, "from")
    if start is not None:
        clauses.append(f"{column} >= %s")
        params.append(start)
    end = parse_date_field(date_to, "to")
    if end is not None:
        clauses.append(f"{column} <= %s")
        params.append(end)
    return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), params


def fetch_upload(upload_id: int) -> dict[str, Any]:
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT id, file_name, mime_type, file_data FROM inward_uploads WHERE id=%s",
            (upload_id,),
        )
        row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="File not found")
    return row


def fetch_items(cur, inward_id: int, file_base: str) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT id, item_order, material, quantity, quantity_type, material_use,
               image_path, upload_id, created_at,
               CASE
                   WHEN upload_id IS NOT NULL THEN %s || '/upload/' || upload_id || '/view'
                   ELSE image_path
               END AS file_url
        FROM inward_items
        WHERE inward_id=%s
        ORDER BY item_order
        """,
        (file_base, inward_id),
    )
    return cur.fetchall()


@router.get("/upload/{upload_id}/view")
def view_upload(upload_id: int):
    row = fetch_upload(upload_id)
    return binary_response(row["file_data"], row["mime_type"], row["file_name"], inline=True)


@router.get("/upload/{upload_id}/download")
def download_upload(upload_id: int):
    row = fetch_upload(upload_id)
    return binary_response(row["file_data"], row["mime_type"], row["file_name"], inline=False)


@router.get("")
@router.get("/", include_in_schema=False)
def list_inward(
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
):
    where, params = _date_range_where(date_from, date_to, "work_date")
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT {HEADER_COLUMNS} FROM inward {where} ORDER BY seq_no DESC", params)
        return ok(cur.fetchall())


@router.get("/pdf")
def range_pdf(
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
):
    where, params = _date_range_where(date_from, date_to, "i.work_date")
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT i.work_date, i.created_at AS inward_time, i.store,
                   it.material, it.quantity, it.quantity_type, it.material_use
            FROM inward i
            JOIN inward_items it ON it.inward_id = i.id
            {where}
            ORDER BY i.work_date, i.created_at, i.store, it.material
            """,
            params,
        )
        rows = cur.fetchall()
    if not rows:
        raise HTTPException(status_code=404, detail="No records found")
    merged = assign_sr_no_per_date(merge_pdf_rows(rows))
    log.info("inward_pdf_rendered", source_rows=len(rows), merged_rows=len(merged))
    return binary_response(render_range_pdf(merged), "application/pdf", "inward-details.pdf", inline=False)


@router.get("/{inward_id}")
def get_inward(inward_id: int, req: Request):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT {HEADER_COLUMNS} FROM inward WHERE id=%s", (inward_id,))
        header = cur.fetchone()
        if not header:
            raise HTTPException(status_code=404, detail="Inward not found")
        items = fetch_items(cur, inward_id, f"{base_url(req)}{router.prefix}")
    return ok({**header, "items": items})


@router.get("/{inward_id}/pdf")
def inward_pdf(inward_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT id, seq_no, work_date, store FROM inward WHERE id=%s", (inward_id,))
        header = cur.fetchone()
        if not header:
            raise HTTPException(status_code=404, detail="Inward not found")
        cur.execute(
            """
            SELECT item_order, material, quantity, quantity_type, material_use
            FROM inward_items WHERE inward_id=%s ORDER BY item_order
            """,
            (inward_id,),
        )
        items = cur.fetchall()
    content = render_single_pdf({**header, "items": items})
    return binary_response(content, "application/pdf", f"inward-{header['seq_no']}.pdf", inline=False)


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_inward(req: Request):
    payload, bill = await read_payload(req)
    check_bill(bill)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                "INSERT INTO inward (work_date, store) VALUES (%s, %s) RETURNING id, seq_no, work_date, store",
                (payload["work_date"], payload["store"]),
            )
            header = cur.fetchone()
            upload_id = insert_upload(cur, bill) if bill is not None else None
            insert_items(cur, header["id"], payload, upload_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.UniqueViolation: DUPLICATE_MESSAGE})
    log.info("inward_created", inward_id=header["id"], items=len(payload["items"]), has_bill=bill is not None)
    return ok(header, "Inward created")


@router.put("/{inward_id}")
async def update_inward(inward_id: int, req: Request):
    payload, bill = await read_payload(req)
    check_bill(bill)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                "UPDATE inward SET work_date=%s, store=%s WHERE id=%s RETURNING id, seq_no, work_date, store",
                (payload["work_date"], payload["store"], inward_id),
            )
            header = cur.fetchone()
            if not header:
                raise HTTPException(status_code=404, detail="Inward not found")
            previous_ids = item_upload_ids(cur, inward_id)
            if bill is not None:
                upload_id = insert_upload(cur, bill)
            else:
                upload_id = previous_ids[0] if previous_ids else None
            cur.execute("DELETE FROM inward_items WHERE inward_id=%s", (inward_id,))
            insert_items(cur, inward_id, payload, upload_id)
            pruned = prune_uploads(cur, previous_ids)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.UniqueViolation: DUPLICATE_MESSAGE})
    log.info("inward_updated", inward_id=inward_id, items=len(payload["items"]), pruned_uploads=len(pruned))
    return ok(header, "Inward updated")


@router.delete("/{inward_id}")
def delete_inward(inward_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        upload_ids = item_upload_ids(cur, inward_id)
        cur.execute("DELETE FROM inward WHERE id=%s RETURNING id", (inward_id,))
        row = cur.fetchone()
        if not row:
            conn.rollback()
            raise HTTPException(status_code=404, detail="Inward not found")
        pruned = prune_uploads(cur, upload_ids)
        conn.commit()
    log.info("inward_deleted", inward_id=inward_id, pruned_uploads=len(pruned))
    return ok(message="Inward deleted")
