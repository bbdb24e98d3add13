import unittest
from datetime import date
from decimal import Decimal

from psycopg import errors as pg_errors

from support import FakeDB, make_client

from homebook.routers import daily_transaction, dpr
from homebook.services.dpr import pdf_rows, split_extra_entries
from homebook.services.sitekharch import build_summary, parse_extra_items, render_summary_pdf


class SiteKharchServiceTests(unittest.TestCase):
    def test_extra_items_accept_json_text(self):
        items = parse_extra_items('[{"amount": "120.5", "details": "tea"}, "junk", {"amount": null}]')
        self.assertEqual(items, [{"amount": 120.5, "details": "tea"}, {"amount": 0, "details": None}])
        self.assertEqual(parse_extra_items("not json"), [])

    def test_summary_totals_include_extras(self):
        summary = build_summary(
            "2025-10",
            [
                {"amount": Decimal("100"), "extra_amount": Decimal("20"), "extra_items": '[{"amount": 5}]'},
                {"amount": Decimal("50"), "extra_amount": None, "extra_items": []},
            ],
            [{"amount_received": Decimal("300")}],
        )
        self.assertEqual([r["row_total"] for r in summary["kharch"]], [Decimal("125"), Decimal("50")])
        self.assertEqual(summary["totalKharch"], Decimal("175"))
        self.assertEqual(summary["balance"], Decimal("125"))
        self.assertTrue(render_summary_pdf(summary).startswith(b"%PDF"))


class DprServiceTests(unittest.TestCase):
    def test_extra_entries_split_into_parallel_arrays(self):
        details, times = split_extra_entries(
            [{"detail": "Shuttering", "time": "2h"}, {"detail": " ", "time": ""}, {"detail": "Curing"}]
        )
        self.assertEqual(details, ["Shuttering", "Curing"])
        self.assertEqual(times, ["2h", ""])

    def test_pdf_rows_shade_extra_lines(self):
        rows = pdf_rows(
            [
                {
                    "work_date": date(2026, 2, 1),
                    "category_name": "Civil",
                    "details": "Slab casting",
                    "work_time": "8h",
                    "extra_details": ["Curing"],
                    "extra_times": ["1h"],
                }
            ]
        )
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[0].cells[1], "01-02-2026")
        self.assertTrue(rows[1].shaded)
        self.assertEqual(rows[1].cells[3:], ["- Curing", "1h"])


class WorklogRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_bulk_delete_requires_confirmation(self):
        fake = FakeDB()
        with fake.patch(daily_transaction):
            res = self.client.delete("/api/dailyTransaction", params={"date": "2026-02-01"})
        self.assertEqual(res.status_code, 400)
        self.assertIn("confirm=YES", res.json()["message"])
        self.assertEqual(fake.cursor.calls, [])

    def test_bulk_delete_reports_removed_totals(self):
        stats = {"deleted_count": 2, "debit_sum": Decimal("80"), "credit_sum": Decimal("20")}
        fake = FakeDB([("WITH del AS", stats)])
        with fake.patch(daily_transaction):
            res = self.client.delete("/api/dailyTransaction", params={"date": "2026-02-01", "confirm": "YES"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["removed"]["deleted_count"], 2)
        self.assertEqual(fake.conn.commits, 1)

    def test_bulk_delete_nothing_found(self):
        fake = FakeDB([("WITH del AS", {"deleted_count": 0, "debit_sum": 0, "credit_sum": 0})])
        with fake.patch(daily_transaction):
            res = self.client.delete("/api/dailyTransaction", params={"date": "2026-02-01", "confirm": "YES"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(fake.conn.commits, 0)

    def test_daily_rejects_non_positive_amount(self):
        res = self.client.post("/api/dailyTransaction", json={"amount": 0, "type": "debit", "category_id": 1})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "Amount must be a positive number")

    def test_concurrent_sequence_clash_is_conflict(self):
        fake = FakeDB([("INSERT INTO daily_transaction", pg_errors.UniqueViolation("dup"))])
        with fake.patch(daily_transaction):
            res = self.client.post("/api/dailyTransaction", json={"amount": 50, "type": "debit", "category_id": 1})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["message"], daily_transaction.SEQUENCE_CLASH)
        self.assertEqual(fake.conn.rollbacks, 1)
        self.assertEqual(fake.conn.commits, 0)

    def test_moving_a_transaction_renumbers_it_on_the_new_day(self):
        fake = FakeDB([("UPDATE daily_transaction", {"daily_transaction_id": 4})])
        body = {"amount": 50, "type": "credit", "category_id": 1, "transaction_date": "2026-02-03"}
        with fake.patch(daily_transaction):
            res = self.client.put("/api/dailyTransaction/4", json=body)
        self.assertEqual(res.status_code, 200)
        sql, params = fake.cursor.executed("UPDATE daily_transaction")[0]
        self.assertIn("sequence_no=CASE", sql)
        self.assertEqual(params[5:9], (date(2026, 2, 3),) * 4)

    def test_dpr_create_derives_month_name(self):
        fake = FakeDB([("INSERT INTO dpr", {"id": 4})])
        body = {"work_date": "2026-03-14", "details": "Plaster", "work_time": "6h"}
        with fake.patch(dpr):
            res = self.client.post("/api/dpr", json=body)
        self.assertEqual(res.status_code, 201)
        params = fake.cursor.executed("INSERT INTO dpr")[0][1]
        self.assertEqual(params[2], "March")

    def test_dpr_export_rejects_bad_month(self):
        res = self.client.get("/api/dpr/export/2026-13")
        self.assertEqual(res.status_code, 400)


if __name__ == "__main__":
    unittest.main()
