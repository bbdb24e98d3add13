import json
from typing import Any

from fastapi import HTTPException

from homebook.services.common import clean_str, parse_date_field, parse_optional_int

ACTRESS_SELECT = """
    SELECT u.*, c.country_name
    FROM user_act_favorite u
    LEFT JOIN country_list c ON c.id = u.country_id
"""

SORT_COLUMNS = {
    "created_at": "u.created_at",
    "updated_at": "u.updated_at",
    "name": "u.favorite_actress_name",
    "movie": "u.favorite_movie_series",
}
DEFAULT_SORT = "updated_at"

DUPLICATE_MESSAGE = "Duplicate: same actress + country + movie/series already exists"

TEXT_FIELDS = ("favorite_actress_name", "favorite_movie_series", "profile_image", "notes")


def order_clause(sort: str | None, direction: str | None) -> tuple[str, str, str]:
    """Whitelisted ORDER BY; unknown sort keys fall back to ``updated_at``."""
    key = sort if sort in SORT_COLUMNS else DEFAULT_SORT
    order_dir = "ASC" if str(direction or "").lower() == "asc" else "DESC"
    return f"{SORT_COLUMNS[key]} {order_dir}, u.id {order_dir}", key, order_dir.lower()


def list_filters(q: str | None, country_id: Any) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    parsed_country = parse_optional_int(country_id, "country_id")
    if parsed_country is not None:
        clauses.append("u.country_id = %s")
        params.append(parsed_country)
    query = (q or "").strip().lower()
    if query:
        like = f"%{query}%"
        clauses.append(
            """(
                lower(u.favorite_actress_name) LIKE %s
                OR lower(u.favorite_movie_series) LIKE %s
                OR lower(COALESCE(u.notes, '')) LIKE %s
            )"""
        )
        params.extend([like, like, like])
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def string_list(value: Any) -> list[str]:
    """Accept a list, a JSON list in a string, or a single string; blanks dropped."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = text
        value = parsed
    if not isinstance(value, list):
        value = [value]
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def resolve_country_id(cur, data: dict[str, Any]) -> int | None:
    """``country_id`` wins over ``country_name``; an unseen name is added to the list."""
    country_id = parse_optional_int(data.get("country_id"), "country_id")
    if country_id:
        return country_id
    name = clean_str(data.get("country_name"))
    if not name:
        return None
    cur.execute(
        """
        WITH ins AS (
            INSERT INTO country_list (country_name)
            VALUES (%s)
            ON CONFLICT (country_name) DO NOTHING
            RETURNING id
        )
        SELECT id FROM ins
        UNION ALL
        SELECT id FROM country_list WHERE country_name = %s
        LIMIT 1
        """,
        (name, name),
    )
    row = cur.fetchone()
    return row["id"] if row else None


def parse_age(value: Any) -> int | None:
    age = parse_optional_int(value, "age")
    if age is not None and not 0 <= age <= 150:
        raise HTTPException(status_code=400, detail="age must be between 0 and 150")
    return age


def parse_create_body(data: dict[str, Any]) -> dict[str, Any]:
    name = clean_str(data.get("favorite_actress_name"))
    title = clean_str(data.get("favorite_movie_series"))
    if not name or not title:
        raise HTTPException(
            status_code=400,
            detail="favorite_actress_name and favorite_movie_series are required",
        )
    return {
        "favorite_actress_name": name,
        "favorite_movie_series": title,
        "age": parse_age(data.get("age")),
        "actress_dob": parse_date_field(data.get("actress_dob"), "actress_dob"),
        "profile_image": clean_str(data.get("profile_image")),
        "notes": clean_str(data.get("notes")),
        "images": string_list(data.get("images")),
    }


def parse_patch_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Only keys present in the body are updated; ``images`` needs ``replaceImages``."""
    fields: dict[str, Any] = {}
    for field in TEXT_FIELDS:
        if field in data:
            fields[field] = clean_str(data[field])
    if "age" in data:
        fields["age"] = parse_age(data["age"])
    if "actress_dob" in data:
        fields["actress_dob"] = parse_date_field(data["actress_dob"], "actress_dob")
    for required in ("favorite_actress_name", "favorite_movie_series"):
        if required in fields and not fields[required]:
            raise HTTPException(status_code=400, detail=f"{required} cannot be empty")
    return fields
