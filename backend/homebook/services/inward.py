import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, Request

from homebook.services.common import clean_str, format_ddmmyyyy, parse_date_field, today_local
from homebook.services.pdf import Column, ReportPDF, Row, generated_on_note
from homebook.services.uploads import UploadedFile, is_image_or_pdf

DUPLICATE_MESSAGE = "Duplicate entry not allowed (Same Date + Store + Material + Material Use must be unique)."
BILL_TYPE_MESSAGE = "Only image or PDF allowed for bill."

INWARD_COLUMNS = [
    Column("Sr.No", 14, "C"),
    Column("Date", 24, "C"),
    Column("Material", 50),
    Column("Quantity", 26, "C"),
    Column("Store", 30),
    Column("Material Use", 46),
]


def parse_items(value: Any) -> list[Any]:
    """Items arrive as a list in JSON bodies and as a JSON string in multipart forms."""
    if isinstance(value, str):
        try:
            value = json.loads(value or "[]")
        except ValueError:
            return []
    return value if isinstance(value, list) else []


def _parse_quantity(value: Any) -> tuple[Decimal | None, bool]:
    if value is None or value == "":
        return None, True
    if isinstance(value, bool):
        return None, False
    try:
        return Decimal(str(value).strip()), True
    except InvalidOperation:
        return None, False


def validate_payload(work_date: Any, store: Any, items: list[Any]) -> dict[str, Any]:
    """Collect every problem before failing; raises 400 with the full ``errors`` list."""
    errors: list[str] = []
    try:
        day = parse_date_field(work_date, "work_date") or today_local()
    except HTTPException:
        errors.append("work_date must be YYYY-MM-DD.")
        day = today_local()
    store_name = clean_str(store) or ""
    if not store_name:
        errors.append("store is required.")
    if not items:
        errors.append("items is required (at least 1 item).")

    cleaned: list[dict[str, Any]] = []
    for idx, raw in enumerate(items):
        item = raw if isinstance(raw, dict) else {}
        material = clean_str(item.get("material")) or ""
        material_use = clean_str(item.get("material_use"))
        quantity, valid = _parse_quantity(item.get("quantity"))
        if not material:
            errors.append(f"items[{idx}].material is required.")
        if idx == 0 and not material_use:
            errors.append(f"items[{idx}].material_use is required for subpoint a).")
        if not valid:
            errors.append(f"items[{idx}].quantity must be a number.")
        cleaned.append(
            {
                "item_order": idx + 1,
                "material": material,
                "quantity": quantity,
                "quantity_type": clean_str(item.get("quantity_type")),
                "material_use": material_use,
                "image_path": clean_str(item.get("image_path")),
            }
        )

    seen: set[tuple[str, ...]] = set()
    for idx, item in enumerate(cleaned):
        key = (
            day.isoformat(),
            store_name.lower(),
            item["material"].lower(),
            (item["material_use"] or "").lower(),
        )
        if key in seen:
            errors.append(f"Duplicate not allowed inside request (Row {idx + 1}).")
            break
        seen.add(key)

    if errors:
        raise HTTPException(status_code=400, detail={"message": "Validation failed", "errors": errors})
    return {"work_date": day, "store": store_name, "items": cleaned}


def check_bill(upload: UploadedFile | None) -> None:
    if upload is not None and not is_image_or_pdf(upload):
        raise HTTPException(status_code=400, detail=BILL_TYPE_MESSAGE)


def insert_upload(cur, upload: UploadedFile) -> int:
    cur.execute(
        "INSERT INTO inward_uploads (file_name, mime_type, file_data) VALUES (%s, %s, %s) RETURNING id",
        (upload.filename, upload.content_type, upload.content),
    )
    return cur.fetchone()["id"]


def item_upload_ids(cur, inward_id: int) -> list[int]:
    cur.execute(
        "SELECT upload_id FROM inward_items WHERE inward_id=%s AND upload_id IS NOT NULL ORDER BY id",
        (inward_id,),
    )
    return list(dict.fromkeys(row["upload_id"] for row in cur.fetchall()))


def prune_uploads(cur, upload_ids: list[int]) -> list[int]:
    """Delete the given bills once no inward item points at them."""
    if not upload_ids:
        return []
    cur.execute(
        """
        DELETE FROM inward_uploads u
        WHERE u.id = ANY(%s)
          AND NOT EXISTS (SELECT 1 FROM inward_items it WHERE it.upload_id = u.id)
        RETURNING u.id
        """,
        (list(upload_ids),),
    )
    return [row["id"] for row in cur.fetchall()]


def insert_items(cur, inward_id: int, payload: dict[str, Any], upload_id: int | None) -> None:
    for item in payload["items"]:
        cur.execute(
            """
            INSERT INTO inward_items
                (inward_id, item_order, work_date, store_key, material, quantity,
                 quantity_type, material_use, image_path, upload_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                inward_id,
                item["item_order"],
                payload["work_date"],
                payload["store"].lower(),
                item["material"],
                item["quantity"],
                item["quantity_type"],
                item["material_use"],
                item["image_path"],
                upload_id,
            ),
        )


def base_url(req: Request) -> str:
    """Absolute origin as the client sees it, honouring a reverse proxy."""
    proto = (req.headers.get("x-forwarded-proto") or req.url.scheme or "http").split(",")[0].strip()
    host = (req.headers.get("x-forwarded-host") or req.headers.get("host") or req.url.netloc).split(",")[0].strip()
    return f"{proto}://{host}"


def format_quantity(quantity: Any, unit: str | None) -> str:
    if quantity is None or quantity == "":
        return ""
    if isinstance(quantity, Decimal):
        text = f"{quantity.normalize():f}"
    else:
        text = str(quantity)
    return f"{text} {unit}".strip() if unit else text


def _iso(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value or "")[:10]


def merge_pdf_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Fold rows sharing date, store, material and unit into one; quantities add up."""
    merged: dict[tuple[str, ...], dict[str, Any]] = {}
    for row in rows:
        day = _iso(row.get("work_date"))
        store = str(row.get("store") or "").strip()
        material = str(row.get("material") or "").strip()
        unit = str(row.get("quantity_type") or "").strip()
        key = (day, store.lower(), material.lower(), unit.lower())
        quantity, valid = _parse_quantity(row.get("quantity"))
        quantity = quantity if valid and quantity is not None else Decimal(0)
        use = str(row.get("material_use") or "").strip()
        seen_at = row.get("inward_time")

        entry = merged.get(key)
        if entry is None:
            merged[key] = {
                "work_date": day,
                "inward_time": seen_at,
                "store": store,
                "material": material,
                "quantity": quantity,
                "quantity_type": unit,
                "uses": [use] if use else [],
            }
            continue
        entry["quantity"] += quantity
        if use and use not in entry["uses"]:
            entry["uses"].append(use)
        if seen_at is not None and (entry["inward_time"] is None or seen_at < entry["inward_time"]):
            entry["inward_time"] = seen_at

    result = []
    for entry in merged.values():
        uses = entry.pop("uses")
        entry["material_use"] = "; ".join(uses)
        result.append(entry)
    result.sort(
        key=lambda r: (
            r["work_date"],
            r["inward_time"].timestamp() if isinstance(r["inward_time"], datetime) else 0,
            r["store"].lower(),
            r["material"].lower(),
        )
    )
    return result


def assign_sr_no_per_date(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Number dates, not rows: only the first row of each date carries its Sr.No."""
    numbered = []
    counter = 0
    last_date = None
    for row in rows:
        day = _iso(row.get("work_date"))
        sr_no = ""
        if day and day != last_date:
            counter += 1
            sr_no = str(counter)
            last_date = day
        numbered.append({**row, "srno": sr_no})
    return numbered


def render_range_pdf(rows: list[dict[str, Any]]) -> bytes:
    pdf = ReportPDF(footer_note=generated_on_note())
    pdf.title_block("Inward Details")
    pdf.table(
        INWARD_COLUMNS,
        [
            Row(
                [
                    row["srno"],
                    format_ddmmyyyy(row["work_date"]),
                    row["material"],
                    format_quantity(row["quantity"], row["quantity_type"]),
                    row["store"],
                    row["material_use"],
                ]
            )
            for row in rows
        ],
        empty_message="No records found",
    )
    return pdf.to_bytes()


def item_letter(position: int) -> str:
    return chr(ord("a") + (position - 1) % 26)


def render_single_pdf(record: dict[str, Any]) -> bytes:
    rows = []
    for idx, item in enumerate(record["items"]):
        first = idx == 0
        order = item.get("item_order") or idx + 1
        rows.append(
            Row(
                [
                    record["seq_no"] if first else "",
                    format_ddmmyyyy(record["work_date"]) if first else "",
                    f"{item_letter(order)}) {item.get('material') or ''}".strip(),
                    format_quantity(item.get("quantity"), item.get("quantity_type")),
                    record["store"] if first else "",
                    item.get("material_use") or "",
                ]
            )
        )
    pdf = ReportPDF(footer_note=generated_on_note())
    pdf.title_block("Inward Details")
    pdf.table(INWARD_COLUMNS, rows, empty_message="No items for this inward.")
    return pdf.to_bytes()
