import calendar
import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from zoneinfo import ZoneInfo

from fastapi import HTTPException, Request

from homebook.core.config import settings


def now_local() -> datetime:
    return datetime.now(ZoneInfo(settings.tz))


def today_local() -> date:
    return now_local().date()


def current_month() -> str:
    return now_local().strftime("%Y-%m")


INVALID_MONTH = "Invalid month format, expected YYYY-MM"


def parse_month(month: str, message: str = INVALID_MONTH) -> tuple[int, int]:
    try:
        dt = datetime.strptime(str(month).strip(), "%Y-%m")
    except ValueError:
        raise HTTPException(status_code=400, detail=message)
    return dt.year, dt.month


def month_range(month: str, message: str = INVALID_MONTH) -> tuple[date, date]:
    """First day of the month and first day of the next one (exclusive)."""
    year, month_num = parse_month(month, message)
    start = date(year, month_num, 1)
    end = date(year + 1, 1, 1) if month_num == 12 else date(year, month_num + 1, 1)
    return start, end


def month_label(month: str) -> str:
    year, month_num = parse_month(month)
    return f"{calendar.month_name[month_num]} {year}"


def parse_date_field(value: Any, field_name: str, required: bool = False) -> date | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise HTTPException(status_code=400, detail=f"{field_name} is required")
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}, expected YYYY-MM-DD")


def parse_optional_bool(value: Any, field_name: str) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        if lowered == "":
            return None
    raise HTTPException(status_code=400, detail=f"Invalid {field_name}, expected boolean")


def parse_int_field(value: Any, field_name: str, default: int | None = None) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is not None:
            return default
        raise HTTPException(status_code=400, detail=f"{field_name} is required")
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}")
    if isinstance(value, float) and not value.is_integer():
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}")


def parse_optional_int(value: Any, field_name: str) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_int_field(value, field_name)


def parse_decimal(value: Any, field_name: str, default: Decimal | None = None) -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is not None:
            return default
        raise HTTPException(status_code=400, detail=f"{field_name} is required")
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{field_name} must be a number")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise HTTPException(status_code=400, detail=f"{field_name} must be a number")
    if not number.is_finite():
        raise HTTPException(status_code=400, detail=f"{field_name} must be a number")
    return number


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def require_str(value: Any, message: str) -> str:
    text = clean_str(value)
    if text is None:
        raise HTTPException(status_code=400, detail=message)
    return text


def clamp_limit(value: Any, default: int, maximum: int, minimum: int = 1) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(parsed, maximum))


def build_search_pattern(query: str | None, max_len: int = 64) -> str | None:
    if not query:
        return None
    cleaned = query.strip().lower()
    if not cleaned:
        return None
    return f"%{cleaned[:max_len]}%"


def build_update_clause(fields: dict[str, Any]) -> tuple[str, list[Any]]:
    """Turn ``{"col": value}`` into ``"col=%s, ..."`` plus its parameters."""
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")
    assignments = [f"{column}=%s" for column in fields]
    return ", ".join(assignments), list(fields.values())


def ok(data: Any = None, message: str | None = None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"ok": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def format_money(value: Any) -> str:
    try:
        return f"{Decimal(str(value or 0)):.2f}"
    except InvalidOperation:
        return "0.00"


def format_short_date(value: Any) -> str:
    """``2025-10-02`` -> ``2 Oct 2025``; unparseable values pass through."""
    if value is None or value == "":
        return ""
    parsed = value if isinstance(value, date) else None
    if parsed is None:
        try:
            parsed = datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
        except ValueError:
            return str(value)
    if isinstance(parsed, datetime):
        parsed = parsed.date()
    return f"{parsed.day} {parsed.strftime('%b %Y')}"


def format_ddmmyyyy(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, (date, datetime)):
        return value.strftime("%d-%m-%Y")
    text = str(value)[:10]
    parts = text.split("-")
    if len(parts) != 3:
        return text
    return f"{parts[2]}-{parts[1]}-{parts[0]}"


async def read_json(req: Request) -> dict[str, Any]:
    """Request body as a dict; an empty body reads as ``{}``."""
    raw = await req.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return data
