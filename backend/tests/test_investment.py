import unittest
from datetime import date
from decimal import Decimal

from fastapi import HTTPException
from psycopg import errors as pg_errors

from support import USER_HEADERS, FakeDB, make_client

from homebook.routers import dipwid, journal, plan
from homebook.services.investment import (
    fund_status,
    month_status,
    parse_child_rows,
    parse_journal_payload,
    running_balance,
    validate_profit_loss_brokerage,
)

JOURNAL_BODY = {
    "category_id": 1,
    "subcategory_id": 2,
    "side": "buy",
    "entry_price": 100,
    "exit_price": 110,
    "trade_logic": "breakout",
    "trade_date": "2026-02-03",
}


class InvestmentServiceTests(unittest.TestCase):
    def test_running_balance_signs_withdrawals(self):
        rows = running_balance(
            [
                {"txn_type": "DEPOSIT", "amount": Decimal("100.00")},
                {"txn_type": "WITHDRAW", "amount": Decimal("30.00")},
                {"txn_type": "DEPOSIT", "amount": Decimal("5.50")},
            ]
        )
        self.assertEqual([r["signed_amount"] for r in rows], [Decimal("100.00"), Decimal("-30.00"), Decimal("5.50")])
        self.assertEqual([r["balance"] for r in rows], [Decimal("100.00"), Decimal("70.00"), Decimal("75.50")])

    def test_profit_and_loss_together_rejected(self):
        with self.assertRaises(HTTPException) as ctx:
            validate_profit_loss_brokerage(Decimal("10"), Decimal("5"), Decimal("0"))
        self.assertEqual(ctx.exception.status_code, 400)

    def test_brokerage_on_flat_trade_rejected(self):
        with self.assertRaises(HTTPException) as ctx:
            validate_profit_loss_brokerage(Decimal("0"), Decimal("0"), Decimal("20"))
        self.assertEqual(ctx.exception.detail, "brokerage not allowed when profit=loss=0")

    def test_journal_payload_defaults_and_normalizes(self):
        values = parse_journal_payload(JOURNAL_BODY)
        self.assertEqual(values["side"], "BUY")
        self.assertEqual(values["trades_count"], 1)
        self.assertEqual(values["profit"], Decimal("0"))
        self.assertEqual(values["trade_date"], date(2026, 2, 3))

    def test_journal_payload_merges_over_current_row(self):
        current = parse_journal_payload(JOURNAL_BODY)
        values = parse_journal_payload({"loss": "12.5"}, current=current)
        self.assertEqual(values["loss"], Decimal("12.5"))
        self.assertEqual(values["trade_logic"], "breakout")

    def test_child_rows_must_match_segment(self):
        with self.assertRaises(HTTPException) as ctx:
            parse_child_rows(False, [{"entry_price": 1, "exit_price": 2, "quantity": 1}], [])
        self.assertEqual(ctx.exception.detail, "Stocks segment cannot accept options rows")

    def test_month_status_and_fund_warning(self):
        self.assertEqual(month_status(Decimal("1")), "PROFIT")
        self.assertEqual(month_status(Decimal("-1")), "LOSS")
        self.assertEqual(month_status(Decimal("0")), "BREAKEVEN")

        healthy = fund_status(Decimal("1000"), Decimal("-100"))
        self.assertEqual(healthy["fund_remaining"], Decimal("900"))
        self.assertIsNone(healthy["warning"])

        drained = fund_status(Decimal("1000"), Decimal("-600"))
        self.assertIsNotNone(drained["warning"])


class InvestmentRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_dipwid_requires_user(self):
        res = self.client.post("/api/dipwid", json={"txn_type": "DEPOSIT", "amount": 10})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["message"], "Unauthorized: user_id missing")

    def test_dipwid_rejects_bad_txn_type(self):
        fake = FakeDB()
        with fake.patch(dipwid):
            res = self.client.post("/api/dipwid", json={"txn_type": "TRANSFER", "amount": 10}, headers=USER_HEADERS)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json(), {"ok": False, "message": "txn_type must be DEPOSIT or WITHDRAW"})
        self.assertEqual(fake.cursor.calls, [])

    def test_ledger_is_ascending_with_running_balance(self):
        fake = FakeDB(
            [
                (
                    "FROM investment_dipwid d",
                    [
                        {"dipwid_id": 1, "txn_type": "DEPOSIT", "amount": Decimal("100"), "txn_date": "2026-01-01"},
                        {"dipwid_id": 2, "txn_type": "WITHDRAW", "amount": Decimal("40"), "txn_date": "2026-01-02"},
                    ],
                )
            ]
        )
        with fake.patch(dipwid):
            res = self.client.get("/api/dipwid/ledger", headers=USER_HEADERS)
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertIn("ORDER BY d.txn_date ASC, d.dipwid_id ASC", fake.cursor.calls[0][0])
        self.assertEqual([r["balance"] for r in body["data"]], [100, 60])
        self.assertEqual(body["closing_balance"], 60)

    def test_alert_requires_month(self):
        res = self.client.get("/api/dipwid/alert", headers=USER_HEADERS)
        self.assertEqual(res.status_code, 400)

    def test_journal_rejects_profit_with_loss(self):
        fake = FakeDB()
        body = {**JOURNAL_BODY, "profit": 50, "loss": 10}
        with fake.patch(journal):
            res = self.client.post("/api/journal", json=body, headers=USER_HEADERS)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "Either Profit OR Loss should be > 0 (both cannot be > 0 together)")
        self.assertEqual(fake.conn.commits, 0)

    def test_plan_delete_blocked_when_referenced(self):
        fake = FakeDB(
            [
                ("FROM investment_plan WHERE plan_id", {"?column?": 1}),
                ("FROM investment_tradingjournal WHERE plan_id", {"?column?": 1}),
            ]
        )
        with fake.patch(plan):
            res = self.client.delete("/api/plan/3", headers=USER_HEADERS)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["message"], "Cannot delete: plan is used in trading journal")
        self.assertEqual(fake.cursor.executed("DELETE FROM investment_plan"), [])

    def test_plan_delete_maps_foreign_key_race(self):
        fake = FakeDB(
            [
                ("FROM investment_plan WHERE plan_id", {"?column?": 1}),
                ("DELETE FROM investment_plan", pg_errors.ForeignKeyViolation("still referenced")),
            ]
        )
        with fake.patch(plan):
            res = self.client.delete("/api/plan/3", headers=USER_HEADERS)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(fake.conn.rollbacks, 1)


if __name__ == "__main__":
    unittest.main()
