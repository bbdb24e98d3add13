from decimal import Decimal

from fastapi import APIRouter, Request

from homebook.db.pool import db_conn
from homebook.services.auth import require_user_id
from homebook.services.common import current_month, month_range, ok
from homebook.services.investment import JOURNAL_SELECT, RR_CEILING, fund_status, month_status

router = APIRouter(prefix="/api/investment/report")


def _resolve_month(month: str | None) -> tuple[str, tuple]:
    month = (month or "").strip() or current_month()
    return month, month_range(month)


@router.get("/monthly")
def monthly_report(req: Request, month: str | None = None):
    user_id = require_user_id(req)
    month, (start, end) = _resolve_month(month)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            WITH entries AS (
                {JOURNAL_SELECT}
                WHERE j.user_id=%s AND j.trade_date >= %s AND j.trade_date < %s
            )
            SELECT
                category_id, category_name, subcategory_id, subcategory_name,
                COUNT(*) AS total_entries,
                COALESCE(SUM(profit), 0) AS total_profit,
                COALESCE(SUM(loss), 0) AS total_loss,
                COALESCE(SUM(brokerage), 0) AS total_brokerage,
                COALESCE(SUM(net_pnl), 0) AS overall_total,
                COUNT(*) FILTER (WHERE rr_followed IS TRUE) AS rr_followed_count,
                COUNT(*) FILTER (WHERE rr_followed IS FALSE) AS rr_not_followed_count,
                COUNT(*) FILTER (WHERE overtrade IS TRUE) AS overtrade_entries,
                COUNT(*) FILTER (WHERE mistakes IS NOT NULL AND btrim(mistakes) <> '') AS mistakes_count,
                MAX(target_rr) AS target_rr
            FROM entries
            GROUP BY category_id, category_name, subcategory_id, subcategory_name
            ORDER BY category_name, subcategory_name
            """,
            (user_id, start, end),
        )
        rows = cur.fetchall()

    data = []
    for row in rows:
        total_profit = Decimal(row["total_profit"])
        total_loss = Decimal(row["total_loss"])
        achieved_rr = round(total_profit / total_loss, 2) if total_loss > 0 else None
        target_rr = row["target_rr"]
        rr_followed = None
        if achieved_rr is not None and target_rr is not None:
            rr_followed = Decimal(target_rr) <= achieved_rr <= RR_CEILING
        data.append(
            {
                **row,
                "achieved_rr": achieved_rr,
                "rr_followed": rr_followed,
                "month_status": month_status(Decimal(row["overall_total"])),
            }
        )

    overall = sum((Decimal(r["overall_total"]) for r in data), Decimal("0"))
    return ok(data, month=month, overall_total=overall, month_status=month_status(overall))


@router.get("/mistakes")
def mistakes_report(req: Request, month: str | None = None):
    user_id = require_user_id(req)
    month, (start, end) = _resolve_month(month)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                j.category_id, c.category_name, j.subcategory_id, s.subcategory_name,
                lower(btrim(j.mistakes)) AS mistake_text,
                COUNT(*) AS repeat_count
            FROM investment_tradingjournal j
            JOIN investment_category c ON c.category_id = j.category_id
            JOIN investment_subcategory s ON s.subcategory_id = j.subcategory_id
            WHERE j.user_id=%s AND j.trade_date >= %s AND j.trade_date < %s
              AND j.mistakes IS NOT NULL AND btrim(j.mistakes) <> ''
            GROUP BY j.category_id, c.category_name, j.subcategory_id, s.subcategory_name, lower(btrim(j.mistakes))
            ORDER BY repeat_count DESC, mistake_text
            """,
            (user_id, start, end),
        )
        return ok(cur.fetchall(), month=month)


@router.get("/fund")
def fund_report(req: Request, month: str | None = None):
    user_id = require_user_id(req)
    month, (start, end) = _resolve_month(month)
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                p.plan_id, p.plan_name, p.subcategory_id, s.subcategory_name, c.category_name,
                p.total_fund_deposit AS total_fund,
                COALESCE(SUM(j.profit - j.loss - j.brokerage), 0) AS month_pnl
            FROM investment_plan p
            JOIN investment_subcategory s ON s.subcategory_id = p.subcategory_id
            JOIN investment_category c ON c.category_id = s.category_id
            LEFT JOIN investment_tradingjournal j
                   ON j.plan_id = p.plan_id AND j.trade_date >= %s AND j.trade_date < %s
            WHERE p.user_id=%s
            GROUP BY p.plan_id, p.plan_name, p.subcategory_id, s.subcategory_name, c.category_name, p.total_fund_deposit
            ORDER BY c.category_name, s.subcategory_name, p.plan_id
            """,
            (start, end, user_id),
        )
        rows = cur.fetchall()

    data = [{**row, **fund_status(row["total_fund"], row["month_pnl"])} for row in rows]
    return ok(data, month=month)
