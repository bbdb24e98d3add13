import json
import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import HTTPException
from psycopg import errors as pg_errors

from support import FakeDB, make_client

from homebook.routers import inward, inward_view
from homebook.services.inward import (
    assign_sr_no_per_date,
    format_quantity,
    item_letter,
    merge_pdf_rows,
    validate_payload,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
ITEMS = [
    {"material": "Cement", "quantity": "10", "quantity_type": "bags", "material_use": "Slab"},
    {"material": "Sand", "quantity": "2", "quantity_type": "brass"},
]


def _at(hour: int) -> datetime:
    return datetime(2026, 1, 5, hour, tzinfo=timezone.utc)


class InwardServiceTests(unittest.TestCase):
    def test_validation_collects_all_errors(self):
        with self.assertRaises(HTTPException) as ctx:
            validate_payload("2026-01-05", "", [{"material": "", "quantity": "ten"}])
        detail = ctx.exception.detail
        self.assertEqual(detail["message"], "Validation failed")
        self.assertIn("store is required.", detail["errors"])
        self.assertIn("items[0].material is required.", detail["errors"])
        self.assertIn("items[0].material_use is required for subpoint a).", detail["errors"])
        self.assertIn("items[0].quantity must be a number.", detail["errors"])

    def test_validation_blocks_duplicates_in_request(self):
        items = [
            {"material": "Cement", "material_use": "Slab"},
            {"material": "cement", "material_use": "slab"},
        ]
        with self.assertRaises(HTTPException) as ctx:
            validate_payload("2026-01-05", "Main", items)
        self.assertEqual(ctx.exception.detail["errors"], ["Duplicate not allowed inside request (Row 2)."])

    def test_validation_defaults_and_orders_items(self):
        payload = validate_payload("2026-01-05", " Main ", ITEMS)
        self.assertEqual(payload["store"], "Main")
        self.assertEqual(payload["work_date"], date(2026, 1, 5))
        self.assertEqual([i["item_order"] for i in payload["items"]], [1, 2])
        self.assertEqual(payload["items"][0]["quantity"], Decimal("10"))

    def test_merge_sums_quantities_and_joins_uses(self):
        rows = [
            {"work_date": date(2026, 1, 5), "inward_time": _at(9), "store": "Main", "material": "Cement",
             "quantity": Decimal("10"), "quantity_type": "bags", "material_use": "Slab"},
            {"work_date": date(2026, 1, 5), "inward_time": _at(7), "store": "main", "material": "cement",
             "quantity": Decimal("5"), "quantity_type": "Bags", "material_use": "Plaster"},
            {"work_date": date(2026, 1, 5), "inward_time": _at(8), "store": "Main", "material": "Cement",
             "quantity": None, "quantity_type": "bags", "material_use": "Slab"},
        ]
        merged = merge_pdf_rows(rows)
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0]["quantity"], Decimal("15"))
        self.assertEqual(merged[0]["material_use"], "Slab; Plaster")
        self.assertEqual(merged[0]["inward_time"], _at(7))

    def test_merge_keeps_units_apart_and_sorts(self):
        rows = [
            {"work_date": date(2026, 1, 6), "inward_time": _at(9), "store": "B", "material": "Steel",
             "quantity": 1, "quantity_type": "ton", "material_use": ""},
            {"work_date": date(2026, 1, 5), "inward_time": _at(9), "store": "A", "material": "Sand",
             "quantity": 1, "quantity_type": "brass", "material_use": ""},
            {"work_date": date(2026, 1, 5), "inward_time": _at(9), "store": "A", "material": "Sand",
             "quantity": 3, "quantity_type": "bags", "material_use": ""},
        ]
        merged = merge_pdf_rows(rows)
        self.assertEqual([(r["work_date"], r["quantity_type"]) for r in merged][-1], ("2026-01-06", "ton"))
        self.assertEqual(len(merged), 3)

    def test_sr_no_only_on_first_row_of_each_date(self):
        rows = [
            {"work_date": "2026-01-05"},
            {"work_date": "2026-01-05"},
            {"work_date": "2026-01-06"},
            {"work_date": "2026-01-08"},
            {"work_date": "2026-01-08"},
        ]
        self.assertEqual([r["srno"] for r in assign_sr_no_per_date(rows)], ["1", "", "2", "3", ""])

    def test_quantity_and_letters(self):
        self.assertEqual(format_quantity(Decimal("10.000"), "bags"), "10 bags")
        self.assertEqual(format_quantity(None, "bags"), "")
        self.assertEqual([item_letter(n) for n in (1, 2, 3)], ["a", "b", "c"])


class InwardRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_bill_view_returns_identical_bytes(self):
        stored = {"id": 8, "file_name": "bill.png", "mime_type": "image/png", "file_data": PNG_BYTES}
        fake = FakeDB([("FROM inward_uploads WHERE id", stored)])
        with fake.patch(inward):
            res = self.client.get("/api/inward/upload/8/view")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.content, PNG_BYTES)
        self.assertEqual(res.headers["content-length"], str(len(PNG_BYTES)))
        self.assertTrue(res.headers["content-disposition"].startswith("inline"))

    def test_bill_download_is_attachment(self):
        stored = {"id": 8, "file_name": "bill.png", "mime_type": "image/png", "file_data": PNG_BYTES}
        fake = FakeDB([("FROM inward_uploads WHERE id", stored)])
        with fake.patch(inward):
            res = self.client.get("/api/inward/upload/8/download")
        self.assertTrue(res.headers["content-disposition"].startswith("attachment"))

    def test_bill_with_non_latin_name_is_served(self):
        stored = {"id": 8, "file_name": "bill—scan.png", "mime_type": "image/png", "file_data": PNG_BYTES}
        fake = FakeDB([("FROM inward_uploads WHERE id", stored), ("FROM inward_uploads WHERE id", stored)])
        with fake.patch(inward, inward_view):
            view = self.client.get("/api/inward/upload/8/view")
            month_view = self.client.get("/api/inward-view/upload/8/view")
        for res in (view, month_view):
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.content, PNG_BYTES)
            self.assertEqual(
                res.headers["content-disposition"],
                "inline; filename=\"billscan.png\"; filename*=UTF-8''bill%E2%80%94scan.png",
            )

    def test_update_with_new_bill_prunes_the_replaced_one(self):
        fake = FakeDB(
            [
                ("UPDATE inward SET", {"id": 5, "seq_no": 1, "work_date": "2026-01-05", "store": "Main"}),
                ("SELECT upload_id FROM inward_items", [{"upload_id": 8}, {"upload_id": 8}]),
                ("INSERT INTO inward_uploads", {"id": 9}),
                ("DELETE FROM inward_uploads", [{"id": 8}]),
            ]
        )
        with fake.patch(inward):
            res = self.client.put(
                "/api/inward/5",
                data={"work_date": "2026-01-05", "store": "Main", "items": json.dumps(ITEMS)},
                files={"bill": ("bill.png", PNG_BYTES, "image/png")},
            )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(all(params[-1] == 9 for _, params in fake.cursor.executed("INSERT INTO inward_items")))
        self.assertEqual(fake.cursor.executed("DELETE FROM inward_uploads")[0][1], ([8],))
        self.assertEqual(fake.conn.commits, 1)

    def test_update_without_bill_keeps_previous_upload(self):
        fake = FakeDB(
            [
                ("UPDATE inward SET", {"id": 5, "seq_no": 1, "work_date": "2026-01-05", "store": "Main"}),
                ("SELECT upload_id FROM inward_items", [{"upload_id": 8}]),
            ]
        )
        with fake.patch(inward):
            res = self.client.put("/api/inward/5", json={"store": "Main", "items": ITEMS})
        self.assertEqual(res.status_code, 200)
        self.assertTrue(all(params[-1] == 8 for _, params in fake.cursor.executed("INSERT INTO inward_items")))
        self.assertEqual(fake.cursor.executed("INSERT INTO inward_uploads"), [])

    def test_delete_prunes_unreferenced_bills(self):
        fake = FakeDB(
            [
                ("SELECT upload_id FROM inward_items", [{"upload_id": 8}]),
                ("DELETE FROM inward WHERE", {"id": 5}),
                ("DELETE FROM inward_uploads", [{"id": 8}]),
            ]
        )
        with fake.patch(inward):
            res = self.client.delete("/api/inward/5")
        self.assertEqual(res.json()["message"], "Inward deleted")
        self.assertEqual(fake.cursor.executed("DELETE FROM inward_uploads")[0][1], ([8],))
        self.assertEqual(fake.conn.commits, 1)

    def test_delete_missing_inward(self):
        fake = FakeDB()
        with fake.patch(inward):
            res = self.client.delete("/api/inward/5")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(fake.cursor.executed("DELETE FROM inward_uploads"), [])
        self.assertEqual(fake.conn.commits, 0)

    def test_multipart_create_stores_bill_bytes_for_every_item(self):
        fake = FakeDB(
            [
                ("INSERT INTO inward (work_date", {"id": 5, "seq_no": 1, "work_date": "2026-01-05", "store": "Main"}),
                ("INSERT INTO inward_uploads", {"id": 8}),
            ]
        )
        with fake.patch(inward):
            res = self.client.post(
                "/api/inward",
                data={"work_date": "2026-01-05", "store": "Main", "items": json.dumps(ITEMS)},
                files={"bill": ("bill.png", PNG_BYTES, "image/png")},
            )
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json()["message"], "Inward created")
        upload_params = fake.cursor.executed("INSERT INTO inward_uploads")[0][1]
        self.assertEqual(upload_params[2], PNG_BYTES)
        item_calls = fake.cursor.executed("INSERT INTO inward_items")
        self.assertEqual(len(item_calls), 2)
        self.assertTrue(all(params[-1] == 8 for _, params in item_calls))
        self.assertEqual(fake.conn.commits, 1)

    def test_non_image_bill_rejected(self):
        fake = FakeDB()
        with fake.patch(inward):
            res = self.client.post(
                "/api/inward",
                data={"store": "Main", "items": json.dumps(ITEMS)},
                files={"bill": ("notes.txt", b"plain text", "text/plain")},
            )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "Only image or PDF allowed for bill.")
        self.assertEqual(fake.cursor.calls, [])

    def test_validation_failure_lists_errors(self):
        res = self.client.post("/api/inward", json={"store": "", "items": []})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertEqual(body["message"], "Validation failed")
        self.assertIn("items is required (at least 1 item).", body["errors"])

    def test_duplicate_insert_maps_to_conflict(self):
        fake = FakeDB(
            [
                ("INSERT INTO inward (work_date", {"id": 5, "seq_no": 1, "work_date": "2026-01-05", "store": "Main"}),
                ("INSERT INTO inward_items", pg_errors.UniqueViolation("dup")),
            ]
        )
        with fake.patch(inward):
            res = self.client.post("/api/inward", json={"store": "Main", "items": ITEMS[:1]})
        self.assertEqual(res.status_code, 409)
        self.assertTrue(res.json()["message"].startswith("Duplicate entry not allowed"))
        self.assertEqual(fake.conn.rollbacks, 1)

    def test_range_pdf_requires_records(self):
        fake = FakeDB()
        with fake.patch(inward):
            res = self.client.get("/api/inward/pdf")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["message"], "No records found")

    def test_range_pdf_is_attachment(self):
        rows = [
            {"work_date": date(2026, 1, 5), "inward_time": _at(9), "store": "Main", "material": "Cement",
             "quantity": Decimal("10"), "quantity_type": "bags", "material_use": "Slab"},
        ]
        fake = FakeDB([("JOIN inward_items it", rows)])
        with fake.patch(inward):
            res = self.client.get("/api/inward/pdf", params={"from": "2026-01-01", "to": "2026-01-31"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.headers["content-type"], "application/pdf")
        self.assertIn('filename="inward-details.pdf"', res.headers["content-disposition"])
        self.assertTrue(res.content.startswith(b"%PDF"))


if __name__ == "__main__":
    unittest.main()
