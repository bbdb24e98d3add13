from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.auth import require_user_id
from homebook.services.common import clean_str, ok, parse_optional_int, read_json, require_str
from homebook.services.uploads import binary_response, read_upload

log = get_logger(__name__)

router = APIRouter(prefix="/api/documents")

INLINE_TYPES = frozenset({"application/pdf", "image/jpeg", "image/png", "image/gif", "text/plain"})
DEFAULT_CATEGORY_COLOR = "#6B7280"

DOCUMENT_SELECT = """
    SELECT d.document_id, d.user_id, d.file_name, d.file_type, d.label, d.purpose,
           d.upload_date, d.status, c.category_id, c.category_name, c.color
    FROM documents d
    LEFT JOIN documents_categories c ON c.category_id = d.category_id
"""


def _fetch_file(cur, document_id: int, user_id: int):
    cur.execute(
        "SELECT file_name, file_type, file_data FROM documents WHERE document_id=%s AND user_id=%s",
        (document_id, user_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Document not found")
    return row


@router.get("/categories")
def list_categories():
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT * FROM documents_categories ORDER BY category_name")
        return ok(cur.fetchall())


@router.post("/categories", status_code=201)
async def create_category(req: Request):
    data = await read_json(req)
    name = require_str(data.get("category_name"), "Category name is required.")
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO documents_categories (category_name, subcategory, description, color)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (
                    name,
                    clean_str(data.get("subcategory")),
                    clean_str(data.get("description")),
                    clean_str(data.get("color")) or DEFAULT_CATEGORY_COLOR,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.UniqueViolation: "Category already exists"})
    return ok(row)


@router.delete("/categories/{category_id}")
def delete_category(category_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM documents_categories WHERE category_id=%s RETURNING category_id",
            (category_id,),
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found")
    return ok(message="Category deleted successfully")


@router.post("/upload", status_code=201)
async def upload_document(
    req: Request,
    file: UploadFile | None = File(default=None),
    label: str | None = Form(default=None),
    purpose: str | None = Form(default=None),
    category_id: str | None = Form(default=None),
):
    user_id = require_user_id(req)
    upload = await read_upload(file, required_message="No file uploaded.")
    label_text = require_str(label, "Label is required.")
    category = parse_optional_int(category_id, "category_id")

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO documents (user_id, file_name, file_type, label, purpose, category_id, file_data)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING document_id, user_id, file_name, file_type, label, purpose, category_id,
                          status, upload_date
                """,
                (user_id, upload.filename, upload.content_type, label_text, clean_str(purpose), category, upload.content),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.ForeignKeyViolation: "Category not found"})
    log.info("document_uploaded", user_id=user_id, document_id=row["document_id"], size=upload.size)
    return ok(row)


@router.get("")
@router.get("/", include_in_schema=False)
def list_documents(req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"{DOCUMENT_SELECT} WHERE d.user_id=%s ORDER BY d.upload_date DESC", (user_id,))
        return ok(cur.fetchall())


@router.get("/category/{category_id}")
def list_by_category(category_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"{DOCUMENT_SELECT} WHERE d.user_id=%s AND d.category_id=%s ORDER BY d.upload_date DESC",
            (user_id, category_id),
        )
        return ok(cur.fetchall())


@router.get("/{document_id}/file")
def download_document(document_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        row = _fetch_file(cur, document_id, user_id)
    return binary_response(row["file_data"], row["file_type"], row["file_name"], inline=False)


@router.get("/view/{document_id}")
def view_document(document_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        row = _fetch_file(cur, document_id, user_id)
    mime = row["file_type"] or "application/octet-stream"
    return binary_response(row["file_data"], mime, row["file_name"] or "document", inline=mime in INLINE_TYPES)


@router.put("/{document_id}")
async def update_document(document_id: int, req: Request):
    user_id = require_user_id(req)
    data = await read_json(req)
    label = require_str(data.get("label"), "Label is required.")
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                UPDATE documents SET label=%s, purpose=%s, category_id=%s
                WHERE document_id=%s AND user_id=%s
                RETURNING document_id, user_id, file_name, file_type, label, purpose, category_id,
                          status, upload_date
                """,
                (
                    label,
                    clean_str(data.get("purpose")),
                    parse_optional_int(data.get("category_id"), "category_id") or None,
                    document_id,
                    user_id,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.ForeignKeyViolation: "Category not found"})
    if not row:
        raise HTTPException(status_code=404, detail="Document not found")
    return ok(row)


@router.delete("/{document_id}")
def delete_document(document_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM documents WHERE document_id=%s AND user_id=%s RETURNING document_id",
            (document_id, user_id),
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Document not found")
    log.info("document_deleted", user_id=user_id, document_id=document_id)
    return ok(message="Document deleted successfully")
