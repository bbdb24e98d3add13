from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.models.investment import CategoryRequest, SubcategoryCreateRequest, SubcategoryUpdateRequest
from homebook.services.auth import require_user_id
from homebook.services.common import build_update_clause, ok, parse_int_field
from homebook.services.investment import require_category

log = get_logger(__name__)

router = APIRouter(prefix="/api/investment")

CATEGORY_CONFLICTS = {
    pg_errors.UniqueViolation: "Category already exists",
    pg_errors.ForeignKeyViolation: "Category is used by other records",
}
SUBCATEGORY_CONFLICTS = {
    pg_errors.UniqueViolation: "Subcategory already exists",
    pg_errors.ForeignKeyViolation: "Subcategory is used by other records",
}


@router.get("/category")
def list_categories(req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT category_id, category_name, created_at
            FROM investment_category
            WHERE user_id=%s
            ORDER BY category_name
            """,
            (user_id,),
        )
        return ok(cur.fetchall())


@router.post("/category", status_code=201)
def create_category(req: Request, payload: CategoryRequest):
    user_id = require_user_id(req)
    name = payload.category_name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="category_name required")

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                INSERT INTO investment_category (user_id, category_name)
                VALUES (%s, %s)
                RETURNING category_id, category_name, created_at
                """,
                (user_id, name),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, CATEGORY_CONFLICTS)

    log.info("investment_category_created", user_id=user_id, category_id=row["category_id"])
    return ok(row, "Category created")


@router.put("/category/{category_id}")
def rename_category(category_id: int, req: Request, payload: CategoryRequest):
    user_id = require_user_id(req)
    name = payload.category_name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="category_name required")

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                """
                UPDATE investment_category SET category_name=%s
                WHERE category_id=%s AND user_id=%s
                RETURNING category_id, category_name, created_at
                """,
                (name, category_id, user_id),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, CATEGORY_CONFLICTS)

    if not row:
        raise HTTPException(status_code=404, detail="Category not found")
    return ok(row, "Category updated")


@router.delete("/category/{category_id}")
def delete_category(category_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                "DELETE FROM investment_category WHERE category_id=%s AND user_id=%s RETURNING category_id",
                (category_id, user_id),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, CATEGORY_CONFLICTS)

    if not row:
        raise HTTPException(status_code=404, detail="Category not found")
    log.info("investment_category_deleted", user_id=user_id, category_id=category_id)
    return ok(message="Category deleted")


@router.get("/subcategory")
def list_subcategories(req: Request, category_id: str | None = None):
    user_id = require_user_id(req)
    parsed_category_id = parse_int_field(category_id, "category_id")
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT subcategory_id, category_id, subcategory_name, is_options, created_at
            FROM investment_subcategory
            WHERE user_id=%s AND category_id=%s
            ORDER BY subcategory_name
            """,
            (user_id, parsed_category_id),
        )
        return ok(cur.fetchall())


@router.post("/subcategory", status_code=201)
def create_subcategory(req: Request, payload: SubcategoryCreateRequest):
    user_id = require_user_id(req)
    name = payload.subcategory_name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="subcategory_name required")

    with db_conn() as conn, conn.cursor() as cur:
        require_category(cur, user_id, payload.category_id)
        try:
            cur.execute(
                """
                INSERT INTO investment_subcategory (user_id, category_id, subcategory_name, is_options)
                VALUES (%s, %s, %s, %s)
                RETURNING subcategory_id, category_id, subcategory_name, is_options, created_at
                """,
                (user_id, payload.category_id, name, payload.is_options),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, SUBCATEGORY_CONFLICTS)

    log.info("investment_subcategory_created", user_id=user_id, subcategory_id=row["subcategory_id"])
    return ok(row, "Subcategory created")


@router.put("/subcategory/{subcategory_id}")
def update_subcategory(subcategory_id: int, req: Request, payload: SubcategoryUpdateRequest):
    user_id = require_user_id(req)
    fields = {}
    if payload.subcategory_name is not None:
        name = payload.subcategory_name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="subcategory_name required")
        fields["subcategory_name"] = name
    if payload.is_options is not None:
        fields["is_options"] = payload.is_options
    assignments, params = build_update_clause(fields)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                f"""
                UPDATE investment_subcategory SET {assignments}
                WHERE subcategory_id=%s AND user_id=%s
                RETURNING subcategory_id, category_id, subcategory_name, is_options, created_at
                """,
                (*params, subcategory_id, user_id),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, SUBCATEGORY_CONFLICTS)

    if not row:
        raise HTTPException(status_code=404, detail="Subcategory not found")
    return ok(row, "Subcategory updated")


@router.delete("/subcategory/{subcategory_id}")
def delete_subcategory(subcategory_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        try:
            cur.execute(
                "DELETE FROM investment_subcategory WHERE subcategory_id=%s AND user_id=%s RETURNING subcategory_id",
                (subcategory_id, user_id),
            )
            row = cur.fetchone()
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, SUBCATEGORY_CONFLICTS)

    if not row:
        raise HTTPException(status_code=404, detail="Subcategory not found")
    log.info("investment_subcategory_deleted", user_id=user_id, subcategory_id=subcategory_id)
    return ok(message="Subcategory deleted")
