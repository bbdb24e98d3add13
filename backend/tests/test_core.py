import os
import time
import unittest
from unittest import mock

from fastapi import HTTPException
from psycopg import errors as pg_errors

from support import USER_HEADERS, FakeDB, make_client

from homebook import main
from homebook.core.cache import TimedCache
from homebook.core.config import load_settings
from homebook.core.rate_limit import RateLimiter
from homebook.db.errors import map_db_error
from homebook.routers import documents
from homebook.services.common import clamp_limit, month_range, parse_optional_bool
from homebook.services.pdf import Column, ReportPDF, Row
from homebook.services.uploads import content_disposition


class SettingsTests(unittest.TestCase):
    def test_missing_database_url_is_fatal(self):
        with mock.patch.dict(os.environ, {"SESSION_SECRET": "s"}, clear=True):
            with self.assertRaises(RuntimeError) as ctx:
                load_settings()
        self.assertIn("DATABASE_URL", str(ctx.exception))

    def test_missing_session_secret_is_fatal(self):
        with mock.patch.dict(os.environ, {"DATABASE_URL": "postgresql://x/y"}, clear=True):
            with self.assertRaises(RuntimeError) as ctx:
                load_settings()
        self.assertIn("SESSION_SECRET", str(ctx.exception))

    def test_defaults(self):
        env = {"DATABASE_URL": "postgresql://x/y", "SESSION_SECRET": "s", "DB_POOL_MIN": "4", "DB_POOL_MAX": "2"}
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.tz, "Asia/Kolkata")
        self.assertEqual(settings.upload_max_mb, 10)
        self.assertEqual(settings.db_pool_max, 4)
        self.assertIsNone(settings.redis_url)


class StateUtilityTests(unittest.TestCase):
    def test_timed_cache_local_set_get_and_invalidate(self):
        cache = TimedCache(redis_url=None, key_prefix="test")
        cache.set("titles:movies:count", 12, ttl=30)

        self.assertEqual(cache.get("titles:movies:count"), 12)
        cache.invalidate_prefix("titles:movies:")
        self.assertIsNone(cache.get("titles:movies:count"))

    def test_timed_cache_get_or_load_calls_loader_once(self):
        cache = TimedCache(redis_url=None, key_prefix="test")
        loader = mock.Mock(return_value=["Drama"])
        self.assertEqual(cache.get_or_load("titles:feeders:genres", 30, loader), ["Drama"])
        self.assertEqual(cache.get_or_load("titles:feeders:genres", 30, loader), ["Drama"])
        loader.assert_called_once()

    def test_timed_cache_local_expiry(self):
        cache = TimedCache(redis_url=None, key_prefix="test")
        cache.set("k", 123, ttl=1)
        self.assertEqual(cache.get("k"), 123)
        time.sleep(1.05)
        self.assertIsNone(cache.get("k"))

    def test_rate_limiter_local_window_behavior(self):
        limiter = RateLimiter(redis_url=None, key_prefix="test")
        key = "login:ip:127.0.0.1"

        self.assertFalse(limiter.exceeded(key, limit=2, window_seconds=60))
        self.assertFalse(limiter.exceeded(key, limit=2, window_seconds=60))
        self.assertTrue(limiter.exceeded(key, limit=2, window_seconds=60))


class HelperTests(unittest.TestCase):
    def test_db_error_mapping_with_override(self):
        mapped = map_db_error(pg_errors.UniqueViolation("dup"), {pg_errors.UniqueViolation: "Category already exists"})
        self.assertEqual((mapped.status_code, mapped.detail), (409, "Category already exists"))
        self.assertEqual(map_db_error(pg_errors.InvalidTextRepresentation("bad")).status_code, 400)
        self.assertIsNone(map_db_error(pg_errors.DeadlockDetected("late")))

    def test_month_range_wraps_december(self):
        start, end = month_range("2025-12")
        self.assertEqual((start.isoformat(), end.isoformat()), ("2025-12-01", "2026-01-01"))
        with self.assertRaises(HTTPException):
            month_range("12-2025")

    def test_small_parsers(self):
        self.assertEqual(clamp_limit("999", default=20, maximum=200), 200)
        self.assertEqual(clamp_limit(None, default=20, maximum=200), 20)
        self.assertTrue(parse_optional_bool("true", "is_watched"))
        self.assertIsNone(parse_optional_bool(None, "is_watched"))

    def test_content_disposition_ascii_name_unchanged(self):
        self.assertEqual(content_disposition("bill.png", inline=True), 'inline; filename="bill.png"')
        self.assertEqual(content_disposition(None, inline=False), 'attachment; filename="file"')

    def test_content_disposition_non_latin_name(self):
        value = content_disposition("रिपोर्ट.pdf", inline=True)
        value.encode("latin-1")
        self.assertTrue(value.startswith('inline; filename="file.pdf"'))
        self.assertIn("filename*=UTF-8''%E0%A4%B0", value)

        dashed = content_disposition("bill—scan.png", inline=False)
        self.assertEqual(dashed, "attachment; filename=\"billscan.png\"; filename*=UTF-8''bill%E2%80%94scan.png")


class ReportPDFTests(unittest.TestCase):
    def test_long_table_repeats_header_on_each_page(self):
        pdf = ReportPDF()
        header_pages = []
        draw_header = ReportPDF._draw_header

        def record_header(self, columns):
            header_pages.append(self.page_no())
            draw_header(self, columns)

        columns = [Column("Sr", 15, "C"), Column("Details", 120), Column("Amount", 40, "R")]
        rows = [Row([str(n), f"Row {n} " + "material details " * (n % 4 + 1), "Rs. 100.00"]) for n in range(1, 121)]
        with mock.patch.object(ReportPDF, "_draw_header", record_header):
            pdf.table(columns, rows)

        self.assertGreater(pdf.page_no(), 1)
        self.assertEqual(header_pages, list(range(1, pdf.page_no() + 1)))
        self.assertTrue(pdf.to_bytes().startswith(b"%PDF"))

    def test_short_table_stays_on_one_page(self):
        pdf = ReportPDF()
        pdf.table([Column("Name", 60)], [Row(["one"]), Row(["two"])])
        self.assertEqual(pdf.page_no(), 1)


class AppTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_health(self):
        res = self.client.get("/health")
        self.assertEqual(res.json(), {"status": "OK"})

    def test_unknown_route_uses_error_envelope(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertFalse(res.json()["ok"])

    def test_unhandled_error_is_logged_with_exception(self):
        failure = RuntimeError("connection dropped")
        fake = FakeDB([("FROM documents WHERE document_id", failure)])
        client = make_client(raise_server_exceptions=False)
        with fake.patch(documents), mock.patch.object(main, "log") as log:
            res = client.get("/api/documents/view/3", headers=USER_HEADERS)
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json(), {"ok": False, "message": "Server error"})
        log.error.assert_called_once()
        self.assertIs(log.error.call_args.kwargs["exc_info"], failure)
        self.assertEqual(log.error.call_args.kwargs["path"], "/api/documents/view/3")

    def test_me_requires_session(self):
        res = self.client.get("/api/auth/me")
        self.assertEqual(res.status_code, 401)


if __name__ == "__main__":
    unittest.main()
