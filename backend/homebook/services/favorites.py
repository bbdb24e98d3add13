from typing import Any

from fastapi import HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.services.auth import _coerce_user_id, resolve_user_id
from homebook.services.common import format_short_date, now_local
from homebook.services.pdf import Column, ReportPDF, Row, generated_on_note
from homebook.services.titles import MOVIES, SERIES, TitleKind

log = get_logger(__name__)

FAVORITE_CATEGORIES = (
    "Korean Top Favorite Series",
    "Hollywood Top Series",
    "Bollywood Top Series",
    "Anime Top Series",
    "Comedy Series",
    "Drama Series",
    "Action Series",
    "Thriller Series",
    "Sci-Fi Series",
    "Fantasy Series",
    "Mystery Series",
    "Romantic Series",
    "Documentary Series",
    "Superhero Series",
    "Crime Series",
    "Top Movies",
    "Action Movies",
    "Romantic Movies",
    "Horror Movies",
    "Comedy Movies",
    "Sci-Fi Movies",
    "Thriller Movies",
    "Drama Movies",
    "Animated Movies",
    "Fantasy Movies",
    "Superhero Movies",
    "Adventure Movies",
    "Documentary Movies",
    "Crime Movies",
    "Classic Movies",
    "Blockbuster Movies",
    "Award-Winning Movies",
    "Family Movies",
)

ITEM_TYPES = ("movie", "series")
REQUIRED_ADD_FIELDS = ("item_type", "item_id", "category_id", "year", "name", "favorite_category")


def favorite_user_id(req: Request, data: dict[str, Any] | None = None) -> int:
    """Session or header first; older clients still send ``user_id`` in the body or query."""
    user_id = resolve_user_id(req)
    if user_id is None and data:
        user_id = _coerce_user_id(data.get("user_id"))
    if user_id is None:
        user_id = _coerce_user_id(req.query_params.get("user_id"))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized: user_id missing")
    return user_id


def require_favorite_category(value: Any) -> str:
    category = str(value or "").strip()
    if not category:
        raise HTTPException(status_code=400, detail="favorite_category is required")
    if category not in FAVORITE_CATEGORIES:
        raise HTTPException(status_code=400, detail="favorite_category not allowed.")
    return category


def parse_add_body(data: dict[str, Any]) -> dict[str, Any]:
    if any(data.get(field) in (None, "", 0) for field in REQUIRED_ADD_FIELDS):
        raise HTTPException(status_code=400, detail="Missing required fields.")
    item_type = str(data["item_type"]).strip().lower()
    if item_type not in ITEM_TYPES:
        raise HTTPException(status_code=400, detail='item_type must be "movie" or "series".')
    favorite_category = require_favorite_category(data["favorite_category"])
    try:
        item_id = int(data["item_id"])
        category_id = int(data["category_id"])
        year = int(data["year"])
        subcategory_id = int(data["subcategory_id"]) if data.get("subcategory_id") not in (None, "") else None
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="item_id, category_id, subcategory_id and year must be integers")
    is_watched = data.get("is_watched")
    return {
        "movie_id": item_id if item_type == "movie" else None,
        "series_id": item_id if item_type == "series" else None,
        "name": str(data["name"]).strip(),
        "category_id": category_id,
        "subcategory_id": subcategory_id,
        "year": year,
        "poster_url": data.get("poster_url") or None,
        "is_watched": bool(is_watched) if is_watched is not None else None,
        "favorite_category": favorite_category,
    }


def add_or_move_favorite(cur, user_id: int, fields: dict[str, Any]) -> str:
    """Insert the snapshot row, or move an existing favorite of the same title to the new bucket.

    Returns ``"added"`` or ``"moved"``. The caller owns the transaction.
    """
    cur.execute("SAVEPOINT addfav")
    try:
        cur.execute(
            """
            INSERT INTO favorites
                (user_id, movie_id, series_id, name, category_id, subcategory_id,
                 year, poster_url, is_watched, favorite_category)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, FALSE), %s)
            """,
            (
                user_id,
                fields["movie_id"],
                fields["series_id"],
                fields["name"],
                fields["category_id"],
                fields["subcategory_id"],
                fields["year"],
                fields["poster_url"],
                fields["is_watched"],
                fields["favorite_category"],
            ),
        )
    except pg_errors.UniqueViolation:
        cur.execute("ROLLBACK TO SAVEPOINT addfav")
        cur.execute(
            """
            UPDATE favorites
            SET favorite_category=%s,
                name=COALESCE(%s, name),
                year=COALESCE(%s, year),
                poster_url=COALESCE(%s, poster_url),
                is_watched=COALESCE(%s, is_watched),
                subcategory_id=COALESCE(%s, subcategory_id),
                updated_at=NOW()
            WHERE user_id=%s AND category_id=%s
              AND ((%s::bigint IS NOT NULL AND movie_id=%s) OR (%s::bigint IS NOT NULL AND series_id=%s))
            """,
            (
                fields["favorite_category"],
                fields["name"],
                fields["year"],
                fields["poster_url"],
                fields["is_watched"],
                fields["subcategory_id"],
                user_id,
                fields["category_id"],
                fields["movie_id"],
                fields["movie_id"],
                fields["series_id"],
                fields["series_id"],
            ),
        )
        log.info("favorite_moved", user_id=user_id, favorite_category=fields["favorite_category"])
        return "moved"
    cur.execute("RELEASE SAVEPOINT addfav")
    log.info("favorite_added", user_id=user_id, favorite_category=fields["favorite_category"])
    return "added"


def _bucket_rows(cur, user_id: int, favorite_category: str, item_column: str) -> list[dict[str, Any]]:
    cur.execute(
        f"""
        SELECT f.favorite_id, f.name AS title, f.year AS release_year, f.poster_url, f.is_watched,
               f.position, f.created_at, f.updated_at, f.category_id, c.name AS category_name,
               f.subcategory_id, sc.name AS subcategory_name, f.{item_column} AS id
        FROM favorites f
        JOIN categories c ON c.category_id = f.category_id
        LEFT JOIN subcategories sc ON sc.subcategory_id = f.subcategory_id
        WHERE f.user_id=%s AND f.favorite_category=%s AND f.{item_column} IS NOT NULL
        ORDER BY COALESCE(f.position, 999999), f.favorite_id DESC
        """,
        (user_id, favorite_category),
    )
    return cur.fetchall()


def bucket_counts(cur, user_id: int, favorite_category: str) -> dict[str, int]:
    cur.execute(
        """
        SELECT
            COUNT(*) FILTER (WHERE movie_id IS NOT NULL) AS movies,
            COUNT(*) FILTER (WHERE series_id IS NOT NULL) AS series
        FROM favorites
        WHERE user_id=%s AND favorite_category=%s
        """,
        (user_id, favorite_category),
    )
    row = cur.fetchone() or {}
    movies = int(row.get("movies") or 0)
    series = int(row.get("series") or 0)
    return {"movies": movies, "series": series, "total": movies + series}


def load_bucket(cur, user_id: int, favorite_category: str) -> dict[str, Any]:
    return {
        "favorite_category": favorite_category,
        "counts": bucket_counts(cur, user_id, favorite_category),
        "movies": _bucket_rows(cur, user_id, favorite_category, "movie_id"),
        "series": _bucket_rows(cur, user_id, favorite_category, "series_id"),
    }


def catalog_select(kind: TitleKind) -> str:
    """Rich catalog row (parts or seasons and genres as text arrays) shared by the browse endpoints."""
    item_type = "movie" if kind is MOVIES else "series"
    return f"""
        SELECT
            '{item_type}'::text AS type,
            t.{kind.id_column} AS id,
            t.{kind.name_column} AS title,
            t.release_year, t.category_id, c.name AS category_name, c.color AS category_color,
            t.subcategory_id, sc.name AS subcategory_name, t.is_watched, t.poster_url, t.created_at,
            (
                SELECT array_agg(CONCAT('{kind.child_label} ', ch.{kind.child_number}, ' (', ch.year, ')')
                                 ORDER BY ch.{kind.child_number})
                FROM {kind.child_table} ch
                WHERE ch.{kind.id_column} = t.{kind.id_column}
            ) AS children,
            (
                SELECT array_agg(DISTINCT g.name ORDER BY g.name)
                FROM {kind.genre_table} tg
                JOIN genres g ON g.genre_id = tg.genre_id
                WHERE tg.{kind.id_column} = t.{kind.id_column}
            ) AS genres
        FROM {kind.table} t
        JOIN categories c ON c.category_id = t.category_id
        LEFT JOIN subcategories sc ON sc.subcategory_id = t.subcategory_id
    """


def search_condition(kind: TitleKind, is_year: bool) -> str:
    year_clause = " OR t.release_year = %s" if is_year else ""
    return f"""
        t.{kind.name_column} ILIKE %s
        OR c.name ILIKE %s
        OR (sc.name IS NOT NULL AND sc.name ILIKE %s)
        OR EXISTS (
            SELECT 1 FROM {kind.genre_table} tg
            JOIN genres g ON g.genre_id = tg.genre_id
            WHERE tg.{kind.id_column} = t.{kind.id_column} AND g.name ILIKE %s
        ){year_clause}
    """


def search_catalog(cur, query: str, limit: int, offset: int) -> list[dict[str, Any]]:
    like = f"%{query}%"
    is_year = len(query) == 4 and query.isdigit()
    params: list[Any] = []
    parts = []
    for kind in (MOVIES, SERIES):
        parts.append(f"{catalog_select(kind)} WHERE ({search_condition(kind, is_year)})")
        params.extend([like, like, like, like])
        if is_year:
            params.append(int(query))
    cur.execute(
        f"""
        {parts[0]}
        UNION ALL
        {parts[1]}
        ORDER BY created_at DESC, id DESC
        LIMIT %s OFFSET %s
        """,
        (*params, limit, offset),
    )
    return [_rename_children(row) for row in cur.fetchall()]


def _rename_children(row: dict[str, Any]) -> dict[str, Any]:
    key = MOVIES.child_key if row.get("type") == "movie" else SERIES.child_key
    out = {k: v for k, v in row.items() if k != "children"}
    out[key] = row.get("children") or []
    out["genres"] = row.get("genres") or []
    return out


def list_catalog(cur, kind: TitleKind, where: str, params: list[Any], limit: int, offset: int) -> list[dict[str, Any]]:
    cur.execute(
        f"""
        {catalog_select(kind)}
        WHERE {where}
        ORDER BY t.created_at DESC, t.{kind.id_column} DESC
        LIMIT %s OFFSET %s
        """,
        (*params, limit, offset),
    )
    return [_rename_children(row) for row in cur.fetchall()]


def parse_watched_filter(value: str | None) -> bool | None:
    lowered = str(value or "all").strip().lower()
    if lowered in ("yes", "true", "1", "watched"):
        return True
    if lowered in ("no", "false", "0", "unwatched"):
        return False
    if lowered in ("all", ""):
        return None
    raise HTTPException(status_code=400, detail="watched must be yes, no or all")


def watch_counts(cur) -> dict[str, dict[str, int]]:
    counts: dict[str, dict[str, int]] = {}
    for key, kind in (("movies", MOVIES), ("series", SERIES)):
        cur.execute(
            f"""
            SELECT COUNT(*) FILTER (WHERE is_watched) AS watched,
                   COUNT(*) FILTER (WHERE NOT is_watched) AS not_watched,
                   COUNT(*) AS total
            FROM {kind.table}
            """
        )
        row = cur.fetchone() or {}
        counts[key] = {
            "watched": int(row.get("watched") or 0),
            "not_watched": int(row.get("not_watched") or 0),
            "total": int(row.get("total") or 0),
        }
    return counts


def find_catalog_category(cur, raw: str) -> dict[str, Any]:
    if raw.isdigit():
        cur.execute("SELECT category_id, name FROM categories WHERE category_id=%s", (int(raw),))
    else:
        cur.execute("SELECT category_id, name FROM categories WHERE lower(name)=lower(%s)", (raw,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"Category not found for '{raw}'.")
    return row


def render_bucket_pdf(bucket: dict[str, Any]) -> bytes:
    pdf = ReportPDF(footer_note=generated_on_note())
    counts = bucket["counts"]
    pdf.title_block(
        f"Favorites: {bucket['favorite_category']}",
        f"{counts['movies']} movies, {counts['series']} series ({counts['total']} total)",
        now_local().strftime("%d %b %Y"),
    )
    columns = [
        Column("#", 10, "C"),
        Column("Title", 70),
        Column("Year", 18, "C"),
        Column("Category", 40),
        Column("Watched", 20, "C"),
        Column("Added", 28, "C"),
    ]
    for heading, items in (("Movies", bucket["movies"]), ("Series", bucket["series"])):
        pdf.section(heading)
        pdf.table(
            columns,
            [
                Row(
                    [
                        i,
                        item.get("title") or "",
                        item.get("release_year") or "",
                        " / ".join(filter(None, [item.get("category_name"), item.get("subcategory_name")])),
                        "Yes" if item.get("is_watched") else "No",
                        format_short_date(item.get("created_at")),
                    ]
                )
                for i, item in enumerate(items, start=1)
            ],
            empty_message=f"No {heading.lower()} in this bucket.",
        )
    return pdf.to_bytes()
