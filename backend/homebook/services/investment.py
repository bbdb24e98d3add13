from decimal import Decimal
from typing import Any

from fastapi import HTTPException

from homebook.services.common import clean_str, parse_date_field, parse_decimal, parse_int_field, today_local

TXN_TYPES = ("DEPOSIT", "WITHDRAW")
TRADE_SIDES = ("BUY", "SELL")
OPTION_TYPES = ("CALL", "PUT")
RR_CEILING = Decimal("3.0")
FUND_WARNING_RATIO = Decimal("0.45")
FUND_WARNING_MESSAGE = "Capital is down to 45% or less of the plan fund. Stop trading, cut risk or fix the logic."

ZERO = Decimal("0")

PLAN_COLUMNS = """
    p.plan_id, p.user_id, p.subcategory_id, p.plan_name,
    p.total_fund_deposit, p.risk_loss, p.profit_reward,
    ROUND(p.profit_reward / NULLIF(p.risk_loss, 0), 2) AS target_rr,
    p.day_trade_limit, p.trading_days, p.created_at,
    s.subcategory_name, s.is_options,
    c.category_id, c.category_name
"""

# Derived metrics live here so every journal read reports them the same way.
JOURNAL_SELECT = """
    SELECT
        j.journal_id, j.user_id, j.category_id, j.subcategory_id, j.plan_id,
        j.trade_date, j.profit, j.loss, j.brokerage, j.trades_count,
        j.side, j.entry_price, j.exit_price, j.segment, j.trade_logic, j.mistakes,
        j.strike_price, j.option_type, j.created_at,
        c.category_name, s.subcategory_name, s.is_options, p.plan_name,
        (j.profit - j.loss - j.brokerage) AS net_pnl,
        ROUND(p.profit_reward / NULLIF(p.risk_loss, 0), 2) AS target_rr,
        CASE WHEN j.loss > 0 THEN ROUND(j.profit / j.loss, 2) END AS realized_rr,
        CASE
            WHEN p.plan_id IS NULL OR j.loss = 0 THEN NULL
            ELSE j.profit / j.loss >= p.profit_reward / NULLIF(p.risk_loss, 0)
             AND j.profit / j.loss <= 3.0
        END AS rr_followed,
        CASE WHEN p.plan_id IS NULL THEN NULL ELSE j.trades_count > p.day_trade_limit END AS overtrade
    FROM investment_tradingjournal j
    JOIN investment_category c ON c.category_id = j.category_id
    JOIN investment_subcategory s ON s.subcategory_id = j.subcategory_id
    LEFT JOIN investment_plan p ON p.plan_id = j.plan_id
"""


def parse_txn_type(value: Any) -> str:
    txn_type = str(value or "").strip().upper()
    if txn_type not in TXN_TYPES:
        raise HTTPException(status_code=400, detail="txn_type must be DEPOSIT or WITHDRAW")
    return txn_type


def parse_positive(value: Any, field_name: str) -> Decimal:
    number = parse_decimal(value, field_name)
    if number <= 0:
        raise HTTPException(status_code=400, detail=f"{field_name} must be > 0")
    return number


def parse_non_negative(value: Any, field_name: str, default: Decimal | None = None) -> Decimal:
    number = parse_decimal(value, field_name, default=default)
    if number < 0:
        raise HTTPException(status_code=400, detail=f"{field_name} must be >= 0")
    return number


def parse_non_negative_int(value: Any, field_name: str, default: int | None = None) -> int:
    number = parse_int_field(value, field_name, default=default)
    if number < 0:
        raise HTTPException(status_code=400, detail=f"{field_name} must be >= 0")
    return number


def parse_optional_id(value: Any, field_name: str) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    parsed = parse_int_field(value, field_name)
    if parsed <= 0:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}")
    return parsed


def require_id(value: Any, field_name: str) -> int:
    parsed = parse_optional_id(value, field_name)
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"{field_name} is required")
    return parsed


def validate_profit_loss_brokerage(profit: Decimal, loss: Decimal, brokerage: Decimal) -> None:
    """A trade is either a win or a loss; a flat trade cannot carry brokerage."""
    if profit > 0 and loss > 0:
        raise HTTPException(
            status_code=400,
            detail="Either Profit OR Loss should be > 0 (both cannot be > 0 together)",
        )
    if profit == 0 and loss == 0 and brokerage > 0:
        raise HTTPException(status_code=400, detail="brokerage not allowed when profit=loss=0")


def validate_option_fields(is_options: bool, strike_price: Any, option_type: Any) -> tuple[Decimal | None, str | None]:
    if not is_options:
        return None, None
    try:
        strike = parse_positive(strike_price, "strike_price")
    except HTTPException:
        raise HTTPException(status_code=400, detail="Options: strike_price is required (>0)")
    normalized = str(option_type or "").strip().upper()
    if normalized not in OPTION_TYPES:
        raise HTTPException(status_code=400, detail="Options: option_type must be CALL or PUT")
    return strike, normalized


def parse_plan_fields(data: dict[str, Any], partial: bool) -> dict[str, Any]:
    """Validated plan columns; on a partial update only the keys that were sent."""
    fields: dict[str, Any] = {}
    if "plan_name" in data or not partial:
        fields["plan_name"] = clean_str(data.get("plan_name"))
    if "total_fund_deposit" in data or not partial:
        fields["total_fund_deposit"] = parse_non_negative(data.get("total_fund_deposit"), "total_fund_deposit", default=ZERO)
    if "risk_loss" in data or not partial:
        fields["risk_loss"] = parse_positive(data.get("risk_loss"), "risk_loss")
    if "profit_reward" in data or not partial:
        fields["profit_reward"] = parse_positive(data.get("profit_reward"), "profit_reward")
    if "day_trade_limit" in data or not partial:
        fields["day_trade_limit"] = parse_non_negative_int(data.get("day_trade_limit"), "day_trade_limit", default=0)
    if "trading_days" in data or not partial:
        raw = data.get("trading_days")
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            fields["trading_days"] = None
        else:
            trading_days = parse_int_field(raw, "trading_days")
            if trading_days <= 0:
                raise HTTPException(status_code=400, detail="trading_days must be > 0")
            fields["trading_days"] = trading_days
    return fields


def parse_child_rows(is_options: bool, options: Any, stocks: Any) -> list[dict[str, Any]]:
    options = options or []
    stocks = stocks or []
    if not isinstance(options, list) or not isinstance(stocks, list):
        raise HTTPException(status_code=400, detail="options and stocks must be arrays")
    if is_options and stocks:
        raise HTTPException(status_code=400, detail="Options segment cannot accept stocks rows")
    if not is_options and options:
        raise HTTPException(status_code=400, detail="Stocks segment cannot accept options rows")

    rows: list[dict[str, Any]] = []
    for item in options if is_options else stocks:
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail="Invalid child row")
        row = {
            "entry_price": parse_positive(item.get("entry_price"), "entry_price"),
            "exit_price": parse_positive(item.get("exit_price"), "exit_price"),
            "quantity": parse_positive(item.get("quantity"), "quantity"),
        }
        if is_options:
            row["strike_price"], row["option_type"] = validate_option_fields(True, item.get("strike_price"), item.get("option_type"))
        else:
            name = clean_str(item.get("stock_name"))
            if not name:
                raise HTTPException(status_code=400, detail="stock_name required")
            row["stock_name"] = name
        rows.append(row)
    return rows


def insert_child_rows(cur, journal_id: int, is_options: bool, rows: list[dict[str, Any]]) -> None:
    for row in rows:
        if is_options:
            cur.execute(
                """
                INSERT INTO investment_tradingjournal_options
                    (journal_id, strike_price, option_type, entry_price, exit_price, quantity)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (journal_id, row["strike_price"], row["option_type"], row["entry_price"], row["exit_price"], row["quantity"]),
            )
        else:
            cur.execute(
                """
                INSERT INTO investment_tradingjournal_stocks
                    (journal_id, stock_name, entry_price, exit_price, quantity)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (journal_id, row["stock_name"], row["entry_price"], row["exit_price"], row["quantity"]),
            )


def replace_child_rows(cur, journal_id: int, is_options: bool, rows: list[dict[str, Any]]) -> None:
    cur.execute("DELETE FROM investment_tradingjournal_options WHERE journal_id=%s", (journal_id,))
    cur.execute("DELETE FROM investment_tradingjournal_stocks WHERE journal_id=%s", (journal_id,))
    insert_child_rows(cur, journal_id, is_options, rows)


def load_child_rows(cur, journal_id: int) -> dict[str, list[dict[str, Any]]]:
    cur.execute(
        """
        SELECT option_row_id, strike_price, option_type, entry_price, exit_price, quantity
        FROM investment_tradingjournal_options
        WHERE journal_id=%s
        ORDER BY option_row_id
        """,
        (journal_id,),
    )
    options = cur.fetchall()
    cur.execute(
        """
        SELECT stock_row_id, stock_name, entry_price, exit_price, quantity
        FROM investment_tradingjournal_stocks
        WHERE journal_id=%s
        ORDER BY stock_row_id
        """,
        (journal_id,),
    )
    return {"options": options, "stocks": cur.fetchall()}


def require_category(cur, user_id: int, category_id: int) -> None:
    cur.execute(
        "SELECT 1 FROM investment_category WHERE category_id=%s AND user_id=%s",
        (category_id, user_id),
    )
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="Category not found for this user")


def require_subcategory(cur, user_id: int, subcategory_id: int) -> dict[str, Any]:
    cur.execute(
        """
        SELECT subcategory_id, category_id, is_options
        FROM investment_subcategory
        WHERE subcategory_id=%s AND user_id=%s
        """,
        (subcategory_id, user_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Subcategory not found for this user")
    return row


def require_subcategory_in_category(cur, user_id: int, category_id: int, subcategory_id: int) -> bool:
    cur.execute(
        """
        SELECT is_options
        FROM investment_subcategory
        WHERE subcategory_id=%s AND user_id=%s AND category_id=%s
        """,
        (subcategory_id, user_id, category_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Subcategory not found for this category/user")
    return bool(row["is_options"])


def require_plan_for_subcategory(cur, user_id: int, plan_id: int, subcategory_id: int) -> None:
    cur.execute(
        "SELECT 1 FROM investment_plan WHERE plan_id=%s AND user_id=%s AND subcategory_id=%s",
        (plan_id, user_id, subcategory_id),
    )
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="Plan not found for this user/subcategory")


def month_status(net: Decimal) -> str:
    if net > 0:
        return "PROFIT"
    if net < 0:
        return "LOSS"
    return "BREAKEVEN"


def fund_status(total_fund: Decimal | None, month_pnl: Decimal | None) -> dict[str, Any]:
    total = Decimal(total_fund or 0)
    pnl = Decimal(month_pnl or 0)
    remaining = total + pnl
    remaining_pct = round(remaining / total * 100, 2) if total > 0 else None
    warning = FUND_WARNING_MESSAGE if total > 0 and remaining <= total * FUND_WARNING_RATIO else None
    return {
        "fund_remaining": remaining,
        "remaining_pct": remaining_pct,
        "warning": warning,
    }


def running_balance(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Prefix-sum signed amounts over rows already ordered by date then id."""
    balance = ZERO
    out = []
    for row in rows:
        amount = Decimal(row.get("amount") or 0)
        signed = amount if row.get("txn_type") == "DEPOSIT" else -amount
        balance += signed
        out.append({**row, "signed_amount": signed, "balance": balance})
    return out


JOURNAL_FIELDS = (
    "category_id", "subcategory_id", "plan_id", "trade_date", "profit", "loss", "brokerage",
    "trades_count", "side", "entry_price", "exit_price", "segment", "trade_logic", "mistakes",
    "strike_price", "option_type",
)


def parse_journal_payload(data: dict[str, Any], current: dict[str, Any] | None = None) -> dict[str, Any]:
    """Validate a journal body; on update, omitted keys keep the stored values.

    The option fields are checked later, once the subcategory is known.
    """
    base = dict(current or {})

    def pick(key: str) -> Any:
        return data[key] if key in data else base.get(key)

    category_id = parse_optional_id(pick("category_id"), "category_id")
    if category_id is None:
        raise HTTPException(status_code=400, detail="category_id is required")
    subcategory_id = parse_optional_id(pick("subcategory_id"), "subcategory_id")
    if subcategory_id is None:
        raise HTTPException(status_code=400, detail="subcategory_id is required")

    side = str(pick("side") or "").strip().upper()
    if side not in TRADE_SIDES:
        raise HTTPException(status_code=400, detail="side must be BUY or SELL")
    trade_logic = clean_str(pick("trade_logic"))
    if not trade_logic:
        raise HTTPException(status_code=400, detail="trade_logic is required")

    values = {
        "category_id": category_id,
        "subcategory_id": subcategory_id,
        "plan_id": parse_optional_id(pick("plan_id"), "plan_id"),
        "trade_date": parse_date_field(pick("trade_date"), "trade_date") or today_local(),
        "profit": parse_non_negative(pick("profit"), "profit", default=ZERO),
        "loss": parse_non_negative(pick("loss"), "loss", default=ZERO),
        "brokerage": parse_non_negative(pick("brokerage"), "brokerage", default=ZERO),
        "trades_count": parse_non_negative_int(pick("trades_count"), "trades_count", default=1),
        "side": side,
        "entry_price": parse_positive(pick("entry_price"), "entry_price"),
        "exit_price": parse_positive(pick("exit_price"), "exit_price"),
        "segment": clean_str(pick("segment")),
        "trade_logic": trade_logic,
        "mistakes": clean_str(pick("mistakes")),
        "strike_price": pick("strike_price"),
        "option_type": pick("option_type"),
    }
    validate_profit_loss_brokerage(values["profit"], values["loss"], values["brokerage"])
    return values
