"""Read-only inward endpoints behind the share link."""

from fastapi import APIRouter, HTTPException, Request

from homebook.db.pool import db_conn
from homebook.routers.inward import HEADER_COLUMNS, fetch_items, fetch_upload
from homebook.services.common import current_month, month_range, ok
from homebook.services.inward import base_url
from homebook.services.uploads import binary_response

router = APIRouter(prefix="/api/inward-view")


@router.get("")
@router.get("/", include_in_schema=False)
def list_month(req: Request, month: str | None = None):
    selected = (month or "").strip() or current_month()
    start, end = month_range(selected)
    file_base = f"{base_url(req)}{router.prefix}"
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT h.id AS inward_id, h.seq_no AS sr_no, h.work_date, h.store,
                   i.id AS item_id, i.item_order, i.material, i.quantity, i.quantity_type,
                   i.material_use, i.upload_id, u.mime_type
            FROM inward h
            JOIN inward_items i ON i.inward_id = h.id
            LEFT JOIN inward_uploads u ON u.id = i.upload_id
            WHERE h.work_date >= %s AND h.work_date < %s
            ORDER BY h.work_date, h.seq_no, i.item_order
            """,
            (start, end),
        )
        rows = cur.fetchall()
    data = [
        {
            **{k: v for k, v in row.items() if k not in ("upload_id", "mime_type")},
            "file_url": f"{file_base}/upload/{row['upload_id']}/view" if row["upload_id"] else None,
            "mime_type": row["mime_type"] or "",
        }
        for row in rows
    ]
    return ok(data, month=selected)


@router.get("/upload/{upload_id}/view")
def view_upload(upload_id: int):
    row = fetch_upload(upload_id)
    return binary_response(row["file_data"], row["mime_type"], row["file_name"], inline=True)


@router.get("/{inward_id}")
def get_inward(inward_id: int, req: Request):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT {HEADER_COLUMNS} FROM inward WHERE id=%s", (inward_id,))
        header = cur.fetchone()
        if not header:
            raise HTTPException(status_code=404, detail="Inward not found")
        items = fetch_items(cur, inward_id, f"{base_url(req)}{router.prefix}")
    return ok({**header, "items": items})
