from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.logging import get_logger
from homebook.db.errors import raise_for_db_error
from homebook.db.pool import db_conn
from homebook.services.auth import require_user_id
from homebook.services.common import build_update_clause, ok, read_json
from homebook.services.investment import PLAN_COLUMNS, parse_plan_fields, require_id, require_subcategory

log = get_logger(__name__)

router = APIRouter(prefix="/api/plan")

PLAN_IN_USE = "Cannot delete: plan is used in trading journal"

PLAN_FROM = """
    FROM investment_plan p
    JOIN investment_subcategory s ON s.subcategory_id = p.subcategory_id
    JOIN investment_category c ON c.category_id = s.category_id
"""


def _fetch_plan(cur, user_id: int, plan_id: int):
    cur.execute(
        f"SELECT {PLAN_COLUMNS} {PLAN_FROM} WHERE p.plan_id=%s AND p.user_id=%s",
        (plan_id, user_id),
    )
    return cur.fetchone()


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_plan(req: Request):
    user_id = require_user_id(req)
    data = await read_json(req)
    subcategory_id = require_id(data.get("subcategory_id"), "subcategory_id")
    fields = parse_plan_fields(data, partial=False)

    with db_conn() as conn, conn.cursor() as cur:
        require_subcategory(cur, user_id, subcategory_id)
        try:
            cur.execute(
                """
                INSERT INTO investment_plan
                    (user_id, subcategory_id, plan_name, total_fund_deposit, risk_loss,
                     profit_reward, day_trade_limit, trading_days)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING plan_id
                """,
                (
                    user_id,
                    subcategory_id,
                    fields["plan_name"],
                    fields["total_fund_deposit"],
                    fields["risk_loss"],
                    fields["profit_reward"],
                    fields["day_trade_limit"],
                    fields["trading_days"],
                ),
            )
            plan_id = cur.fetchone()["plan_id"]
            plan = _fetch_plan(cur, user_id, plan_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)

    log.info("plan_created", user_id=user_id, plan_id=plan_id)
    return ok(plan, "Plan created")


@router.get("")
@router.get("/", include_in_schema=False)
def list_plans(req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {PLAN_COLUMNS} {PLAN_FROM} WHERE p.user_id=%s ORDER BY p.created_at DESC, p.plan_id DESC",
            (user_id,),
        )
        return ok(cur.fetchall())


@router.get("/{plan_id}")
def get_plan(plan_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        plan = _fetch_plan(cur, user_id, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    return ok(plan)


@router.put("/{plan_id}")
async def update_plan(plan_id: int, req: Request):
    user_id = require_user_id(req)
    data = await read_json(req)
    fields = parse_plan_fields(data, partial=True)
    subcategory_id = None
    if "subcategory_id" in data:
        subcategory_id = require_id(data.get("subcategory_id"), "subcategory_id")
        fields["subcategory_id"] = subcategory_id
    assignments, params = build_update_clause(fields)

    with db_conn() as conn, conn.cursor() as cur:
        if subcategory_id is not None:
            require_subcategory(cur, user_id, subcategory_id)
        try:
            cur.execute(
                f"UPDATE investment_plan SET {assignments} WHERE plan_id=%s AND user_id=%s RETURNING plan_id",
                (*params, plan_id, user_id),
            )
            updated = cur.fetchone()
            if not updated:
                raise HTTPException(status_code=404, detail="Plan not found")
            plan = _fetch_plan(cur, user_id, plan_id)
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc)

    log.info("plan_updated", user_id=user_id, plan_id=plan_id, fields=sorted(fields))
    return ok(plan, "Plan updated")


@router.delete("/{plan_id}")
def delete_plan(plan_id: int, req: Request):
    user_id = require_user_id(req)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT 1 FROM investment_plan WHERE plan_id=%s AND user_id=%s", (plan_id, user_id))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Plan not found")
        cur.execute("SELECT 1 FROM investment_tradingjournal WHERE plan_id=%s LIMIT 1", (plan_id,))
        if cur.fetchone():
            raise HTTPException(status_code=409, detail=PLAN_IN_USE)
        try:
            cur.execute("DELETE FROM investment_plan WHERE plan_id=%s AND user_id=%s", (plan_id, user_id))
            conn.commit()
        except pg_errors.Error as exc:
            conn.rollback()
            raise_for_db_error(exc, {pg_errors.ForeignKeyViolation: PLAN_IN_USE})

    log.info("plan_deleted", user_id=user_id, plan_id=plan_id)
    return ok(message="Plan deleted")
