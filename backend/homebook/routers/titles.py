from typing import Any

from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.common import (
    build_update_clause,
    clamp_limit,
    ok,
    parse_date_field,
    parse_int_field,
    parse_optional_bool,
    parse_optional_int,
    read_json,
)
from homebook.services.titles import (
    MOVIES,
    SERIES,
    TitleKind,
    count_by_category,
    count_total,
    create_title,
    fetch_full,
    find_title_id,
    invalidate_counts,
    is_duplicate,
    list_titles,
    load_feeder,
    normalize_name,
    parse_child_body,
    parse_create_body,
    parse_patch_body,
    parse_year,
    suggest,
)

log = get_logger(__name__)


def build_router(kind: TitleKind, prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix)
    not_found = f"{kind.label} not found"
    child_not_found = f"{kind.child_label} not found"

    @router.get("/count")
    def title_count():
        with db_conn() as conn, conn.cursor() as cur:
            return ok({"total": count_total(cur, kind)})

    @router.get("/count/by-category")
    def title_count_by_category():
        with db_conn() as conn, conn.cursor() as cur:
            return ok(count_by_category(cur, kind))

    @router.get("/categories")
    def categories():
        with db_conn() as conn, conn.cursor() as cur:
            return ok(load_feeder(cur, "categories", "SELECT category_id, name, color FROM categories ORDER BY name"))

    @router.get("/subcategories")
    def subcategories(category_id: str | None = None):
        parsed = parse_optional_int(category_id, "category_id")
        with db_conn() as conn, conn.cursor() as cur:
            if parsed is None:
                rows = load_feeder(
                    cur,
                    "subcategories",
                    "SELECT subcategory_id, category_id, name FROM subcategories ORDER BY name",
                )
            else:
                rows = load_feeder(
                    cur,
                    f"subcategories:{parsed}",
                    "SELECT subcategory_id, category_id, name FROM subcategories WHERE category_id=%s ORDER BY name",
                    (parsed,),
                )
        return ok(rows)

    @router.get("/genres")
    def genres():
        with db_conn() as conn, conn.cursor() as cur:
            return ok(load_feeder(cur, "genres", "SELECT genre_id, name FROM genres ORDER BY name"))

    @router.get("/suggest")
    def title_suggest(q: str | None = None, limit: str | None = None):
        query = normalize_name(q)
        if not query:
            return ok([])
        with db_conn() as conn, conn.cursor() as cur:
            return ok(suggest(cur, kind, query, clamp_limit(limit, default=10, maximum=50)))

    @router.get(f"/{kind.duplicate_path}")
    def duplicate_title(req: Request):
        params = req.query_params
        name = normalize_name(params.get(kind.name_column))
        if not name:
            raise HTTPException(status_code=400, detail=f"{kind.name_column} is required")
        has_category = params.get("category_id") not in (None, "")
        has_year = params.get("release_year") not in (None, "")

        with db_conn() as conn, conn.cursor() as cur:
            if not (has_category and has_year):
                return ok(duplicate=is_duplicate(cur, kind, name), mode="name")
            category_id = parse_int_field(params.get("category_id"), "category_id")
            release_year = parse_year(params.get("release_year"), "release_year")
            subcategory_id = parse_optional_int(params.get("subcategory_id"), "subcategory_id")
            duplicate = is_duplicate(cur, kind, name, category_id, release_year, subcategory_id)
        return ok(duplicate=duplicate, mode="composite")

    @router.get(f"/{kind.duplicate_child_path}")
    def duplicate_child(req: Request):
        title_id = parse_int_field(req.query_params.get(kind.id_column), kind.id_column)
        number = parse_int_field(req.query_params.get(kind.child_number), kind.child_number)
        with db_conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT 1 FROM {kind.child_table} WHERE {kind.id_column}=%s AND {kind.child_number}=%s",
                (title_id, number),
            )
            return ok(duplicate=cur.fetchone() is not None)

    @router.post("", status_code=201)
    @router.post("/", status_code=201, include_in_schema=False)
    async def create(req: Request):
        fields = parse_create_body(kind, await read_json(req))
        with db_conn() as conn, conn.cursor() as cur:
            try:
                title_id = create_title(cur, kind, fields)
                row = fetch_full(cur, kind, title_id)
                conn.commit()
            except pg_errors.Error as exc:
                conn.rollback()
                raise_for_db_error(exc, {pg_errors.UniqueViolation: f"Duplicate {kind.label.lower()}"})
        invalidate_counts(kind)
        log.info("title_created", table=kind.table, title_id=title_id)
        return ok(row)

    @router.get("")
    @router.get("/", include_in_schema=False)
    def list_all(
        category_id: str | None = None,
        subcategory_id: str | None = None,
        is_watched: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        q: str | None = None,
        limit: str | None = None,
        offset: str | None = None,
    ):
        filters: dict[str, Any] = {
            "category_id": parse_optional_int(category_id, "category_id"),
            "subcategory_id": parse_optional_int(subcategory_id, "subcategory_id"),
            "is_watched": parse_optional_bool(is_watched, "is_watched"),
            "date_from": parse_date_field(date_from, "date_from"),
            "date_to": parse_date_field(date_to, "date_to"),
            "q": normalize_name(q),
        }
        with db_conn() as conn, conn.cursor() as cur:
            rows = list_titles(
                cur,
                kind,
                filters,
                clamp_limit(limit, default=100, maximum=500),
                clamp_limit(offset, default=0, maximum=10**9, minimum=0),
            )
        return ok(rows)

    def _by_name(name: str | None, filters: dict[str, Any]):
        cleaned = normalize_name(name)
        if not cleaned:
            raise HTTPException(status_code=400, detail="name is required")
        with db_conn() as conn, conn.cursor() as cur:
            title_id = find_title_id(cur, kind, cleaned, filters)
            if title_id is None:
                raise HTTPException(status_code=404, detail=not_found)
            return ok(fetch_full(cur, kind, title_id))

    @router.get("/by-name")
    def by_name_query(
        name: str | None = None,
        category_id: str | None = None,
        release_year: str | None = None,
        subcategory_id: str | None = None,
    ):
        return _by_name(
            name,
            {
                "category_id": parse_optional_int(category_id, "category_id"),
                "release_year": parse_optional_int(release_year, "release_year"),
                "subcategory_id": parse_optional_int(subcategory_id, "subcategory_id"),
            },
        )

    @router.get("/by-name/{name}")
    def by_name_path(name: str):
        return _by_name(name, {})

    @router.post(f"/{kind.child_path}")
    async def upsert_child(req: Request):
        data = await read_json(req)
        try:
            title_id = parse_int_field(data.get(kind.id_column), kind.id_column)
        except HTTPException:
            raise HTTPException(status_code=400, detail=f"{kind.id_column}, {kind.child_number}, year must be integers")
        number, year = parse_child_body(kind, data, minimum=2)

        with db_conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT 1 FROM {kind.table} WHERE {kind.id_column}=%s", (title_id,))
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail=not_found)
            cur.execute(
                f"""
                INSERT INTO {kind.child_table} ({kind.id_column}, {kind.child_number}, year)
                VALUES (%s, %s, %s)
                ON CONFLICT ON CONSTRAINT {kind.child_constraint}
                DO UPDATE SET year = EXCLUDED.year
                RETURNING *
                """,
                (title_id, number, year),
            )
            row = cur.fetchone()
            conn.commit()
        return ok(row)

    @router.put(f"/{kind.child_path}/{{child_id}}")
    async def update_child(child_id: int, req: Request):
        number, year = parse_child_body(kind, await read_json(req), minimum=1)
        with db_conn() as conn, conn.cursor() as cur:
            try:
                cur.execute(
                    f"""
                    UPDATE {kind.child_table} SET {kind.child_number}=%s, year=%s
                    WHERE {kind.child_id}=%s
                    RETURNING *
                    """,
                    (number, year, child_id),
                )
                row = cur.fetchone()
                conn.commit()
            except pg_errors.Error as exc:
                conn.rollback()
                raise_for_db_error(
                    exc,
                    {pg_errors.UniqueViolation: f"{kind.child_label} number already exists for this {kind.label.lower()}"},
                )
        if not row:
            raise HTTPException(status_code=404, detail=child_not_found)
        return ok(row)

    @router.delete(f"/{kind.child_path}/{{child_id}}")
    def delete_child(child_id: int):
        with db_conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM {kind.child_table} WHERE {kind.child_id}=%s RETURNING {kind.child_id}",
                (child_id,),
            )
            row = cur.fetchone()
            conn.commit()
        if not row:
            raise HTTPException(status_code=404, detail=child_not_found)
        return ok(message=f"{kind.label} {kind.child_label.lower()} deleted successfully")

    @router.get("/{title_id}")
    def get_one(title_id: int):
        with db_conn() as conn, conn.cursor() as cur:
            row = fetch_full(cur, kind, title_id)
        if not row:
            raise HTTPException(status_code=404, detail=not_found)
        return ok(row)

    @router.put("/{title_id}")
    async def patch(title_id: int, req: Request):
        fields = parse_patch_body(await read_json(req))
        assignments, params = build_update_clause(fields)
        with db_conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {kind.table} SET {assignments} WHERE {kind.id_column}=%s RETURNING {kind.id_column}",
                (*params, title_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail=not_found)
            row = fetch_full(cur, kind, title_id)
            conn.commit()
        return ok(row)

    @router.delete("/{title_id}")
    def delete(title_id: int):
        with db_conn() as conn, conn.cursor() as cur:
            try:
                cur.execute(
                    f"DELETE FROM {kind.table} WHERE {kind.id_column}=%s RETURNING {kind.id_column}",
                    (title_id,),
                )
                row = cur.fetchone()
                conn.commit()
            except pg_errors.Error as exc:
                conn.rollback()
                raise_for_db_error(exc)
        if not row:
            raise HTTPException(status_code=404, detail=not_found)
        invalidate_counts(kind)
        log.info("title_deleted", table=kind.table, title_id=title_id)
        return ok(message=f"{kind.label} deleted successfully")

    return router


movies_router = build_router(MOVIES, "/api/movies")
series_router = build_router(SERIES, "/api/series")
