import math

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.actress import (
    ACTRESS_SELECT,
    DUPLICATE_MESSAGE,
    list_filters,
    order_clause,
    parse_create_body,
    parse_patch_fields,
    resolve_country_id,
    string_list,
)
from homebook.services.common import build_search_pattern, build_update_clause, clamp_limit, ok, read_json
from homebook.services.uploads import read_upload, remove_stored_image, store_images

log = get_logger(__name__)

router = APIRouter(prefix="/api/user-act-favorite")

IMAGE_FOLDER = "actress_images"
DB_ERRORS = {pg_errors.UniqueViolation: DUPLICATE_MESSAGE}


def _fetch(cur, actress_id: int):
    cur.execute(f"{ACTRESS_SELECT} WHERE u.id = %s", (actress_id,))
    return cur.fetchone()


@router.get("/countries")
def countries(search: str | None = None, limit: str | None = None):
    row_limit = clamp_limit(limit, default=50, maximum=200)
    pattern = build_search_pattern(search)
    with db_conn() as conn, conn.cursor() as cur:
        if pattern:
            cur.execute(
                """
                SELECT id, country_name FROM country_list
                WHERE country_name ILIKE %s
                ORDER BY country_name
                LIMIT %s
                """,
                (pattern, row_limit),
            )
        else:
            cur.execute("SELECT id, country_name FROM country_list ORDER BY country_name LIMIT %s", (row_limit,))
        return ok(cur.fetchall())


@router.get("")
@router.get("/", include_in_schema=False)
def list_favorites(
    q: str | None = None,
    country_id: str | None = None,
    page: str | None = None,
    limit: str | None = None,
    sort: str | None = None,
    dir: str | None = None,
):
    page_no = clamp_limit(page, default=1, maximum=10**6)
    row_limit = clamp_limit(limit, default=20, maximum=200)
    order_by, sort_key, order_dir = order_clause(sort, dir)
    where, params = list_filters(q, country_id)

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS total FROM user_act_favorite u {where}", params)
        total = int((cur.fetchone() or {}).get("total") or 0)
        cur.execute(
            f"{ACTRESS_SELECT} {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
            (*params, row_limit, (page_no - 1) * row_limit),
        )
        rows = cur.fetchall()
    meta = {
        "page": page_no,
        "limit": row_limit,
        "total": total,
        "pages": max(1, math.ceil(total / row_limit)),
        "sort": sort_key,
        "dir": order_dir,
    }
    return ok(rows, meta=meta)


@router.get("/{actress_id}")
def get_favorite(actress_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        row = _fetch(cur, actress_id)
    if not row:
        raise HTTPException(status_code=404, detail="Not found")
    return ok(row)


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_favorite(req: Request):
    data = await read_json(req)
    fields = parse_create_body(data)
    with db_conn() as conn, conn.cursor() as cur:
        try:
            country_id = resolve_country_id(cur, data)
            cur.execute(
                """
                INSERT INTO user_act_favorite
                    (country_id, favorite_actress_name, age, actress_dob,
                     favorite_movie_series, profile_image, images, notes)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    country_id,
                    fields["favorite_actress_name"],
                    fields["age"],
                    fields["actress_dob"],
                    fields["favorite_movie_series"],
                    fields["profile_image"],
                    Jsonb(fields["images"]),
                    fields["notes"],
                ),
            )
            actress_id = cur.fetchone()["id"]
            row = _fetch(cur, actress_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, DB_ERRORS)
    log.info("actress_favorite_created", actress_id=actress_id)
    return ok(row)


@router.patch("/{actress_id}")
async def update_favorite(actress_id: int, req: Request):
    data = await read_json(req)
    fields = parse_patch_fields(data)
    if data.get("replaceImages") and "images" in data:
        fields["images"] = Jsonb(string_list(data.get("images")))

    with db_conn() as conn, conn.cursor() as cur:
        try:
            if "country_id" in data or "country_name" in data:
                fields["country_id"] = resolve_country_id(cur, data)
            if not fields:
                raise HTTPException(status_code=400, detail="No updatable fields provided")
            assignments, params = build_update_clause(fields)
            cur.execute(
                f"UPDATE user_act_favorite SET {assignments}, updated_at=NOW() WHERE id=%s RETURNING id",
                (*params, actress_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="Not found")
            row = _fetch(cur, actress_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, DB_ERRORS)
    return ok(row)


@router.patch("/{actress_id}/images")
async def update_images(
    actress_id: int,
    files: list[UploadFile] | None = File(default=None),
    add: str | None = Form(default=None),
    remove: str | None = Form(default=None),
):
    uploads = [upload for upload in [await read_upload(f) for f in files or []] if upload is not None]
    stored = store_images(IMAGE_FOLDER, uploads)
    additions = stored + string_list(add)
    removals = string_list(remove)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute("SELECT images FROM user_act_favorite WHERE id=%s FOR UPDATE", (actress_id,))
            current = cur.fetchone()
            if not current:
                raise HTTPException(status_code=404, detail="Not found")
            images = [url for url in (current["images"] or []) if url not in removals]
            images.extend(url for url in additions if url not in images)
            cur.execute(
                "UPDATE user_act_favorite SET images=%s, updated_at=NOW() WHERE id=%s",
                (Jsonb(images), actress_id),
            )
            row = _fetch(cur, actress_id)
            conn.commit()
        except (pg_errors.Error, HTTPException) as exc:
            conn.rollback()
            for url in stored:
                remove_stored_image(url)
            if isinstance(exc, HTTPException):
                raise
            raise_for_db_error(exc, DB_ERRORS)

    for url in removals:
        remove_stored_image(url)
    log.info("actress_images_updated", actress_id=actress_id, added=len(additions), removed=len(removals))
    return ok(row)


@router.delete("/{actress_id}")
def delete_favorite(actress_id: int):
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM user_act_favorite WHERE id=%s RETURNING id, profile_image, images",
            (actress_id,),
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        raise HTTPException(status_code=404, detail="Not found")
    for url in [row.get("profile_image"), *(row.get("images") or [])]:
        remove_stored_image(url)
    log.info("actress_favorite_deleted", actress_id=actress_id)
    return ok({"id": actress_id})
