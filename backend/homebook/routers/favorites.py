from typing import Any

from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.common import clamp_limit, ok, read_json
from homebook.services.favorites import (
    FAVORITE_CATEGORIES,
    add_or_move_favorite,
    bucket_counts,
    favorite_user_id,
    find_catalog_category,
    list_catalog,
    load_bucket,
    parse_add_body,
    parse_watched_filter,
    render_bucket_pdf,
    require_favorite_category,
    search_catalog,
    watch_counts,
)
from homebook.services.titles import MOVIES, SERIES
from homebook.services.uploads import binary_response

log = get_logger(__name__)

router = APIRouter(prefix="/api/favorites")


def _offset(value: str | None) -> int:
    return clamp_limit(value, default=0, maximum=10**9, minimum=0)


@router.get("/categories")
def categories():
    return ok(list(FAVORITE_CATEGORIES))


@router.post("/add-and-fetch-category")
async def add_and_fetch(req: Request):
    data = await read_json(req)
    user_id = favorite_user_id(req, data)
    fields = parse_add_body(data)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            action = add_or_move_favorite(cur, user_id, fields)
            bucket = load_bucket(cur, user_id, fields["favorite_category"])
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.ForeignKeyViolation: "Title or category not found"})
    message = "Favorite added" if action == "added" else "Favorite moved"
    return ok(bucket, message)


@router.get("/bucket")
def bucket(req: Request, favorite_category: str | None = None):
    user_id = favorite_user_id(req)
    category = require_favorite_category(favorite_category)
    with db_conn() as conn, conn.cursor() as cur:
        return ok(load_bucket(cur, user_id, category))


@router.post("/remove")
async def remove(req: Request):
    data = await read_json(req)
    user_id = favorite_user_id(req, data)
    try:
        favorite_id = int(data.get("favorite_id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="favorite_id is required")

    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT user_id, favorite_category FROM favorites WHERE favorite_id=%s", (favorite_id,))
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Favorite not found.")
        if int(row["user_id"]) != user_id:
            raise HTTPException(status_code=403, detail="Not allowed to delete this favorite.")
        cur.execute("DELETE FROM favorites WHERE favorite_id=%s", (favorite_id,))
        counts = bucket_counts(cur, user_id, row["favorite_category"])
        conn.commit()
    log.info("favorite_removed", user_id=user_id, favorite_id=favorite_id)
    return ok(
        {
            "removed_favorite_id": favorite_id,
            "favorite_category": row["favorite_category"],
            "counts": counts,
        }
    )


@router.get("/search")
def search(q: str | None = None, limit: str | None = None, offset: str | None = None):
    query = (q or "").strip()
    if not query:
        raise HTTPException(status_code=400, detail="Missing required query param 'q'.")
    with db_conn() as conn, conn.cursor() as cur:
        results = search_catalog(cur, query, clamp_limit(limit, default=30, maximum=200), _offset(offset))
    return ok({"count": len(results), "results": results})


@router.get("/watch-filter")
def watch_filter(watched: str | None = None, limit: str | None = None, offset: str | None = None):
    flag = parse_watched_filter(watched)
    where, params = ("TRUE", []) if flag is None else ("t.is_watched = %s", [flag])
    row_limit = clamp_limit(limit, default=20, maximum=200)
    row_offset = _offset(offset)

    with db_conn() as conn, conn.cursor() as cur:
        counts = watch_counts(cur)
        movies = list_catalog(cur, MOVIES, where, params, row_limit, row_offset)
        series = list_catalog(cur, SERIES, where, params, row_limit, row_offset)
    return ok(
        {
            "filters": {"watched": "all" if flag is None else ("yes" if flag else "no"), "limit": row_limit, "offset": row_offset},
            "counts": counts,
            "movies": movies,
            "series": series,
        }
    )


@router.get("/category-filter")
def category_filter(req: Request, category: str | None = None):
    raw = (category or "").strip()
    if not raw:
        raise HTTPException(status_code=400, detail="Missing required query param 'category'.")
    params = req.query_params

    with db_conn() as conn, conn.cursor() as cur:
        found = find_catalog_category(cur, raw)
        category_id = found["category_id"]
        counts: dict[str, Any] = {}
        for key, kind in (("movies", MOVIES), ("series", SERIES)):
            cur.execute(f"SELECT COUNT(*) AS total FROM {kind.table} WHERE category_id=%s", (category_id,))
            counts[key] = int((cur.fetchone() or {}).get("total") or 0)
        movies = list_catalog(
            cur,
            MOVIES,
            "t.category_id = %s",
            [category_id],
            clamp_limit(params.get("limitMovies"), default=50, maximum=500),
            _offset(params.get("offsetMovies")),
        )
        series = list_catalog(
            cur,
            SERIES,
            "t.category_id = %s",
            [category_id],
            clamp_limit(params.get("limitSeries"), default=50, maximum=500),
            _offset(params.get("offsetSeries")),
        )
    counts["overall"] = counts["movies"] + counts["series"]
    return ok(
        {
            "category": {"id": category_id, "name": found["name"]},
            "counts": counts,
            "movies": movies,
            "series": series,
        }
    )


@router.get("/bucket-pdf")
def bucket_pdf(req: Request, favorite_category: str | None = None):
    user_id = favorite_user_id(req)
    category = require_favorite_category(favorite_category)
    with db_conn() as conn, conn.cursor() as cur:
        data = load_bucket(cur, user_id, category)
    content = render_bucket_pdf(data)
    filename = "favorites-" + "-".join(category.lower().split()) + ".pdf"
    log.info("favorites_pdf_rendered", user_id=user_id, favorite_category=category, total=data["counts"]["total"])
    return binary_response(content, "application/pdf", filename, inline=False)
