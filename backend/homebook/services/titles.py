"""Movie and series catalogs.

Both catalogs share one table shape: a title row with category, optional
subcategory, release year and primary genre, an extra-genres link table, and
numbered children (movie parts or series seasons). ``TitleKind`` carries the
names that differ so every query below is written once.
"""

import re
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException

from homebook.core.config import settings
from homebook.core.logging import get_logger
from homebook.services.common import parse_int_field, parse_optional_bool
from homebook.services.state import cache

log = get_logger(__name__)

MIN_YEAR = 1888
MAX_YEAR = 2100
UPDATABLE_FIELDS = ("is_watched", "poster_url")
POSTER_DATA_URL_RE = re.compile(r"^data:image/(png|jpe?g|webp);base64,")
POSTER_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class TitleKind:
    label: str
    table: str
    id_column: str
    name_column: str
    genre_table: str
    child_table: str
    child_id: str
    child_number: str
    child_constraint: str
    child_key: str
    child_label: str
    child_path: str
    duplicate_path: str
    duplicate_child_path: str

    @property
    def cache_prefix(self) -> str:
        return f"titles:{self.table}:"


MOVIES = TitleKind(
    label="Movie",
    table="movies",
    id_column="movie_id",
    name_column="movie_name",
    genre_table="movie_genres",
    child_table="movie_parts",
    child_id="part_id",
    child_number="part_number",
    child_constraint="movie_parts_unq",
    child_key="parts",
    child_label="Part",
    child_path="parts",
    duplicate_path="duplicate-movie",
    duplicate_child_path="duplicate-part",
)

SERIES = TitleKind(
    label="Series",
    table="series",
    id_column="series_id",
    name_column="series_name",
    genre_table="series_genres",
    child_table="seasons",
    child_id="season_id",
    child_number="season_no",
    child_constraint="seasons_unq",
    child_key="seasons",
    child_label="Season",
    child_path="seasons",
    duplicate_path="duplicate-series",
    duplicate_child_path="duplicate-season",
)


def normalize_name(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def parse_year(value: Any, field_name: str) -> int:
    year = parse_int_field(value, field_name)
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise HTTPException(status_code=400, detail=f"{field_name} must be {MIN_YEAR}..{MAX_YEAR}")
    return year


def is_valid_poster_url(value: str) -> bool:
    return bool(POSTER_DATA_URL_RE.match(value) or POSTER_HTTP_RE.match(value))


def validate_poster_url(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not is_valid_poster_url(value):
        raise HTTPException(status_code=400, detail="poster_url must be a data:image/* base64 URL or http(s) URL")
    return value


def children_json_sql(kind: TitleKind, alias: str) -> str:
    return f"""
        COALESCE((
            SELECT json_agg(json_build_object(
                       '{kind.child_id}', ch.{kind.child_id},
                       '{kind.child_number}', ch.{kind.child_number},
                       'year', ch.year
                   ) ORDER BY ch.{kind.child_number}, ch.{kind.child_id})
            FROM {kind.child_table} ch
            WHERE ch.{kind.id_column} = {alias}.{kind.id_column}
        ), '[]'::json) AS {kind.child_key}
    """


def genres_json_sql(kind: TitleKind, alias: str) -> str:
    return f"""
        COALESCE((
            SELECT json_agg(json_build_object('genre_id', g.genre_id, 'name', g.name) ORDER BY g.name, g.genre_id)
            FROM {kind.genre_table} tg
            JOIN genres g ON g.genre_id = tg.genre_id
            WHERE tg.{kind.id_column} = {alias}.{kind.id_column}
        ), '[]'::json) AS genres
    """


def base_columns(kind: TitleKind) -> str:
    return f"""
        t.{kind.id_column}, t.{kind.name_column}, t.release_year,
        t.category_id, c.name AS category_name, c.color AS category_color,
        t.subcategory_id, sc.name AS subcategory_name,
        t.primary_genre_id, pg.name AS primary_genre_name,
        t.poster_url, t.is_watched, t.created_at
    """


def base_from(kind: TitleKind) -> str:
    return f"""
        FROM {kind.table} t
        JOIN categories c ON c.category_id = t.category_id
        LEFT JOIN subcategories sc ON sc.subcategory_id = t.subcategory_id
        LEFT JOIN genres pg ON pg.genre_id = t.primary_genre_id
    """


def fetch_full(cur, kind: TitleKind, title_id: int) -> dict[str, Any] | None:
    cur.execute(
        f"""
        SELECT {base_columns(kind)}, {children_json_sql(kind, 't')}, {genres_json_sql(kind, 't')}
        {base_from(kind)}
        WHERE t.{kind.id_column}=%s
        """,
        (title_id,),
    )
    return cur.fetchone()


def list_titles(cur, kind: TitleKind, filters: dict[str, Any], limit: int, offset: int) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters.get("category_id") is not None:
        clauses.append("t.category_id=%s")
        params.append(filters["category_id"])
    if filters.get("subcategory_id") is not None:
        clauses.append("t.subcategory_id=%s")
        params.append(filters["subcategory_id"])
    if filters.get("is_watched") is not None:
        clauses.append("t.is_watched=%s")
        params.append(filters["is_watched"])
    if filters.get("date_from") is not None:
        clauses.append("t.created_at >= %s")
        params.append(filters["date_from"])
    if filters.get("date_to") is not None:
        clauses.append("t.created_at < (%s::date + INTERVAL '1 day')")
        params.append(filters["date_to"])
    if filters.get("q"):
        clauses.append(f"t.{kind.name_column} ILIKE %s")
        params.append(f"%{filters['q']}%")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    cur.execute(
        f"""
        WITH base AS (
            SELECT ROW_NUMBER() OVER (ORDER BY t.created_at, t.{kind.id_column}) AS display_no,
                   {base_columns(kind)}
            {base_from(kind)}
            {where}
        )
        SELECT b.*, {children_json_sql(kind, 'b')}
        FROM base b
        ORDER BY b.display_no
        LIMIT %s OFFSET %s
        """,
        (*params, limit, offset),
    )
    return cur.fetchall()


def find_title_id(cur, kind: TitleKind, name: str, filters: dict[str, Any]) -> int | None:
    clauses = [f"INITCAP(t.{kind.name_column}) = INITCAP(%s)"]
    params: list[Any] = [name]
    for column in ("category_id", "release_year", "subcategory_id"):
        if filters.get(column) is not None:
            clauses.append(f"t.{column}=%s")
            params.append(filters[column])
    cur.execute(
        f"""
        SELECT t.{kind.id_column} AS title_id
        FROM {kind.table} t
        WHERE {' AND '.join(clauses)}
        ORDER BY t.created_at, t.{kind.id_column}
        LIMIT 1
        """,
        params,
    )
    row = cur.fetchone()
    return row["title_id"] if row else None


def suggest(cur, kind: TitleKind, query: str, limit: int) -> list[str]:
    """Prefix matches first, then substring matches, de-duplicated."""
    cur.execute(
        f"""
        SELECT name FROM (
            SELECT DISTINCT {kind.name_column} AS name, 0 AS rank
            FROM {kind.table} WHERE {kind.name_column} ILIKE %s
            UNION ALL
            SELECT DISTINCT {kind.name_column} AS name, 1 AS rank
            FROM {kind.table} WHERE {kind.name_column} ILIKE %s
        ) s
        ORDER BY rank, name
        LIMIT %s
        """,
        (f"{query}%", f"%{query}%", limit * 2),
    )
    names: list[str] = []
    for row in cur.fetchall():
        if row["name"] not in names:
            names.append(row["name"])
        if len(names) >= limit:
            break
    return names


def is_duplicate(
    cur,
    kind: TitleKind,
    name: str,
    category_id: int | None = None,
    release_year: int | None = None,
    subcategory_id: int | None = None,
) -> bool:
    if category_id is None or release_year is None:
        cur.execute(
            f"SELECT 1 FROM {kind.table} WHERE INITCAP({kind.name_column}) = INITCAP(%s) LIMIT 1",
            (name,),
        )
        return cur.fetchone() is not None
    cur.execute(
        f"""
        SELECT 1 FROM {kind.table}
        WHERE INITCAP({kind.name_column}) = INITCAP(%s)
          AND category_id=%s AND release_year=%s
          AND COALESCE(subcategory_id, 0) = COALESCE(%s, 0)
        LIMIT 1
        """,
        (name, category_id, release_year, subcategory_id),
    )
    return cur.fetchone() is not None


def parse_create_body(kind: TitleKind, data: dict[str, Any]) -> dict[str, Any]:
    name = normalize_name(data.get(kind.name_column))
    if not name or data.get("category_id") in (None, "") or data.get("release_year") in (None, ""):
        raise HTTPException(status_code=400, detail=f"{kind.name_column}, category_id, release_year are required")

    genre_ids = []
    for raw in data.get("genre_ids") or []:
        try:
            genre_ids.append(int(raw))
        except (TypeError, ValueError):
            continue

    return {
        "name": name,
        "category_id": parse_int_field(data.get("category_id"), "category_id"),
        "subcategory_id": parse_int_field(data["subcategory_id"], "subcategory_id")
        if data.get("subcategory_id") not in (None, "")
        else None,
        "release_year": parse_year(data.get("release_year"), "release_year"),
        "primary_genre_id": parse_int_field(data["primary_genre_id"], "primary_genre_id")
        if data.get("primary_genre_id") not in (None, "")
        else None,
        "poster_url": validate_poster_url(data.get("poster_url")),
        "is_watched": parse_optional_bool(data.get("is_watched"), "is_watched") or False,
        "genre_ids": genre_ids,
    }


def create_title(cur, kind: TitleKind, fields: dict[str, Any]) -> int:
    """Insert a title and its extra genres; the caller owns the transaction."""
    cur.execute("SELECT 1 FROM categories WHERE category_id=%s", (fields["category_id"],))
    if not cur.fetchone():
        raise HTTPException(status_code=400, detail="Category does not exist")

    if fields["subcategory_id"] is not None:
        cur.execute(
            "SELECT 1 FROM subcategories WHERE subcategory_id=%s AND category_id=%s",
            (fields["subcategory_id"], fields["category_id"]),
        )
        if not cur.fetchone():
            raise HTTPException(status_code=400, detail="subcategory_id does not belong to category_id")

    if fields["primary_genre_id"] is not None:
        cur.execute("SELECT 1 FROM genres WHERE genre_id=%s", (fields["primary_genre_id"],))
        if not cur.fetchone():
            raise HTTPException(status_code=400, detail="primary_genre_id does not exist")

    if is_duplicate(cur, kind, fields["name"], fields["category_id"], fields["release_year"], fields["subcategory_id"]):
        raise HTTPException(
            status_code=409,
            detail=f"Duplicate {kind.label.lower()} exists (name+category+year+subcategory)",
        )

    cur.execute(
        f"""
        INSERT INTO {kind.table}
            ({kind.name_column}, category_id, subcategory_id, release_year, poster_url, is_watched, primary_genre_id)
        VALUES (INITCAP(%s), %s, %s, %s, %s, %s, %s)
        RETURNING {kind.id_column} AS title_id
        """,
        (
            fields["name"],
            fields["category_id"],
            fields["subcategory_id"],
            fields["release_year"],
            fields["poster_url"],
            fields["is_watched"],
            fields["primary_genre_id"],
        ),
    )
    title_id = cur.fetchone()["title_id"]
    if fields["genre_ids"]:
        cur.execute(
            f"""
            INSERT INTO {kind.genre_table} ({kind.id_column}, genre_id)
            SELECT %s, UNNEST(%s::bigint[])
            ON CONFLICT DO NOTHING
            """,
            (title_id, fields["genre_ids"]),
        )
    return title_id


def parse_patch_body(data: dict[str, Any]) -> dict[str, Any]:
    forbidden = sorted(key for key in data if key not in UPDATABLE_FIELDS)
    if forbidden:
        raise HTTPException(
            status_code=400,
            detail={"message": "Only is_watched and poster_url can be updated", "forbidden_fields": forbidden},
        )
    fields: dict[str, Any] = {}
    is_watched = parse_optional_bool(data.get("is_watched"), "is_watched")
    if is_watched is not None:
        fields["is_watched"] = is_watched
    if "poster_url" in data:
        fields["poster_url"] = validate_poster_url(data.get("poster_url"))
    if not fields:
        raise HTTPException(status_code=400, detail="No updatable fields provided (is_watched / poster_url)")
    return fields


def parse_child_body(kind: TitleKind, data: dict[str, Any], minimum: int) -> tuple[int, int]:
    try:
        number = parse_int_field(data.get(kind.child_number), kind.child_number)
        year = parse_int_field(data.get("year"), "year")
    except HTTPException:
        raise HTTPException(status_code=400, detail=f"{kind.child_number}, year must be integers")
    if number < minimum:
        raise HTTPException(status_code=400, detail=f"{kind.child_number} must be >= {minimum}")
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise HTTPException(status_code=400, detail=f"year must be {MIN_YEAR}..{MAX_YEAR}")
    return number, year


def count_total(cur, kind: TitleKind) -> int:
    return cache.get_or_load(
        f"{kind.cache_prefix}count",
        settings.feeder_cache_ttl,
        lambda: _count_total(cur, kind),
    )


def _count_total(cur, kind: TitleKind) -> int:
    cur.execute(f"SELECT COUNT(*) AS total FROM {kind.table}")
    return cur.fetchone()["total"]


def count_by_category(cur, kind: TitleKind) -> list[dict[str, Any]]:
    def load() -> list[dict[str, Any]]:
        cur.execute(
            f"""
            SELECT c.category_id, c.name AS category_name, c.color AS category_color,
                   COUNT(t.{kind.id_column}) AS total
            FROM categories c
            LEFT JOIN {kind.table} t ON t.category_id = c.category_id
            GROUP BY c.category_id, c.name, c.color
            ORDER BY c.name
            """
        )
        return cur.fetchall()

    return cache.get_or_load(f"{kind.cache_prefix}count-by-category", settings.feeder_cache_ttl, load)


def load_feeder(cur, name: str, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
    """Categories, subcategories and genres change rarely; both catalogs share them."""

    def load() -> list[dict[str, Any]]:
        cur.execute(sql, params)
        return cur.fetchall()

    return cache.get_or_load(f"titles:feeders:{name}", settings.feeder_cache_ttl, load)


def invalidate_counts(kind: TitleKind) -> None:
    cache.invalidate_prefix(kind.cache_prefix)
    log.debug("title_cache_invalidated", table=kind.table)
