import io
import os
import unittest
from unittest import mock

from fastapi import HTTPException
from PIL import Image
from psycopg import errors as pg_errors

from support import USER_HEADERS, FakeDB, make_client

from homebook.routers import actress, documents
from homebook.services import uploads
from homebook.services.actress import order_clause, parse_create_body, parse_patch_fields, string_list
from homebook.services.uploads import UploadedFile, store_images


class ActressServiceTests(unittest.TestCase):
    def test_sort_is_whitelisted(self):
        self.assertEqual(order_clause("name", "asc"), ("u.favorite_actress_name ASC, u.id ASC", "name", "asc"))
        clause, key, direction = order_clause("id; DROP TABLE users", "sideways")
        self.assertEqual(clause, "u.updated_at DESC, u.id DESC")
        self.assertEqual((key, direction), ("updated_at", "desc"))

    def test_string_list_forms(self):
        self.assertEqual(string_list('["/uploads/a.webp", " "]'), ["/uploads/a.webp"])
        self.assertEqual(string_list("/uploads/b.webp"), ["/uploads/b.webp"])
        self.assertEqual(string_list(None), [])

    def test_create_requires_name_and_title(self):
        with self.assertRaises(HTTPException) as ctx:
            parse_create_body({"favorite_actress_name": "Kim"})
        self.assertEqual(ctx.exception.status_code, 400)

    def test_patch_fields_only_include_sent_keys(self):
        self.assertEqual(parse_patch_fields({"notes": " lovely "}), {"notes": "lovely"})
        with self.assertRaises(HTTPException):
            parse_patch_fields({"favorite_actress_name": ""})


def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 10, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


BROKEN_PNG = b"\x89PNG\r\n\x1a\n" + b"not really a png"


def stored_files(folder: str) -> set[str]:
    path = os.path.join(uploads.settings.uploads_dir, folder)
    return set(os.listdir(path)) if os.path.isdir(path) else set()


class ImageBatchTests(unittest.TestCase):
    def test_batch_with_bad_image_writes_nothing(self):
        before = stored_files("image_batch_test")
        batch = [UploadedFile("a.png", "image/png", png_bytes()), UploadedFile("b.png", "image/png", BROKEN_PNG)]
        with self.assertRaises(HTTPException) as ctx:
            store_images("image_batch_test", batch)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(stored_files("image_batch_test"), before)

    def test_failed_write_removes_earlier_files(self):
        batch = [UploadedFile("a.png", "image/png", png_bytes()), UploadedFile("b.png", "image/png", png_bytes())]
        with mock.patch.object(uploads, "write_image", side_effect=["/uploads/batch/a.webp", OSError("disk full")]), \
                mock.patch.object(uploads, "remove_stored_image") as remove:
            with self.assertRaises(OSError):
                store_images("batch", batch)
        remove.assert_called_once_with("/uploads/batch/a.webp")

    def test_batch_returns_public_urls(self):
        urls = store_images("image_batch_test", [UploadedFile("a.png", "image/png", png_bytes())])
        self.assertEqual(len(urls), 1)
        self.assertTrue(urls[0].startswith("/uploads/image_batch_test/") and urls[0].endswith(".webp"))
        uploads.remove_stored_image(urls[0])


class ActressRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_list_uses_whitelisted_order_and_meta(self):
        fake = FakeDB([("SELECT COUNT(*) AS total FROM user_act_favorite", {"total": 45})])
        with fake.patch(actress):
            res = self.client.get("/api/user-act-favorite", params={"sort": "age; --", "dir": "asc"})
        self.assertEqual(res.status_code, 200)
        meta = res.json()["meta"]
        self.assertEqual(meta, {"page": 1, "limit": 20, "total": 45, "pages": 3, "sort": "updated_at", "dir": "asc"})
        self.assertIn("ORDER BY u.updated_at ASC, u.id ASC", fake.cursor.calls[1][0])

    def test_duplicate_maps_to_conflict(self):
        fake = FakeDB([("INSERT INTO user_act_favorite", pg_errors.UniqueViolation("dup"))])
        body = {"favorite_actress_name": "Kim", "favorite_movie_series": "Drama", "country_id": 3}
        with fake.patch(actress):
            res = self.client.post("/api/user-act-favorite", json=body)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["message"], "Duplicate: same actress + country + movie/series already exists")

    def test_patch_without_fields(self):
        fake = FakeDB()
        with fake.patch(actress):
            res = self.client.patch("/api/user-act-favorite/4", json={"images": ["x"]})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "No updatable fields provided")

    def test_image_patch_merges_and_removes(self):
        fake = FakeDB([("SELECT images FROM user_act_favorite", {"images": ["/uploads/old.webp", "/uploads/keep.webp"]})])
        with fake.patch(actress), mock.patch.object(actress, "remove_stored_image") as remove:
            res = self.client.patch(
                "/api/user-act-favorite/4/images",
                data={"remove": '["/uploads/old.webp"]', "add": '["https://img.example/new.jpg"]'},
            )
        self.assertEqual(res.status_code, 200)
        update_params = fake.cursor.executed("UPDATE user_act_favorite SET images")[0][1]
        self.assertEqual(update_params[0].obj, ["/uploads/keep.webp", "https://img.example/new.jpg"])
        remove.assert_called_once_with("/uploads/old.webp")

    def test_image_patch_with_one_bad_file_leaves_no_files(self):
        before = stored_files(actress.IMAGE_FOLDER)
        fake = FakeDB()
        with fake.patch(actress):
            res = self.client.patch(
                "/api/user-act-favorite/4/images",
                files=[
                    ("files", ("good.png", png_bytes(), "image/png")),
                    ("files", ("bad.png", BROKEN_PNG, "image/png")),
                ],
            )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "Invalid image file")
        self.assertEqual(stored_files(actress.IMAGE_FOLDER), before)
        self.assertEqual(fake.cursor.calls, [])


class DocumentRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_upload_requires_file(self):
        res = self.client.post("/api/documents/upload", data={"label": "PAN"}, headers=USER_HEADERS)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "No file uploaded.")

    def test_upload_requires_label(self):
        res = self.client.post(
            "/api/documents/upload",
            files={"file": ("pan.pdf", b"%PDF-1.4 data", "application/pdf")},
            headers=USER_HEADERS,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "Label is required.")

    def test_view_inline_for_pdf_and_attachment_otherwise(self):
        pdf = {"file_name": "pan.pdf", "file_type": "application/pdf", "file_data": b"%PDF-1.4"}
        zipped = {"file_name": "all.zip", "file_type": "application/zip", "file_data": b"PK\x03\x04"}
        fake = FakeDB([("FROM documents WHERE document_id", pdf), ("FROM documents WHERE document_id", zipped)])
        with fake.patch(documents):
            first = self.client.get("/api/documents/view/1", headers=USER_HEADERS)
            second = self.client.get("/api/documents/view/2", headers=USER_HEADERS)
        self.assertTrue(first.headers["content-disposition"].startswith("inline"))
        self.assertTrue(second.headers["content-disposition"].startswith("attachment"))
        self.assertEqual(second.content, b"PK\x03\x04")

    def test_uploaded_bytes_come_back_from_view(self):
        content = b"%PDF-1.4\n" + bytes(range(256)) * 4
        created = {"document_id": 3, "user_id": 7, "file_name": "pan.pdf", "file_type": "application/pdf"}
        upload_db = FakeDB([("INSERT INTO documents", created)])
        with upload_db.patch(documents):
            res = self.client.post(
                "/api/documents/upload",
                data={"label": "PAN", "purpose": "KYC"},
                files={"file": ("pan.pdf", content, "application/pdf")},
                headers=USER_HEADERS,
            )
        self.assertEqual(res.status_code, 201)
        params = upload_db.cursor.executed("INSERT INTO documents")[0][1]
        self.assertEqual(params[0], 7)
        self.assertEqual(params[-1], content)

        stored = {"file_name": params[1], "file_type": params[2], "file_data": params[-1]}
        view_db = FakeDB([("FROM documents WHERE document_id", stored)])
        with view_db.patch(documents):
            view = self.client.get("/api/documents/view/3", headers=USER_HEADERS)
        self.assertEqual(view.status_code, 200)
        self.assertEqual(view.content, content)
        self.assertEqual(view.headers["content-length"], str(len(content)))
        self.assertEqual(view.headers["content-type"], "application/pdf")
        self.assertEqual(view_db.cursor.calls[0][1], (3, 7))

    def test_non_latin_file_name_is_served(self):
        row = {"file_name": "रिपोर्ट.pdf", "file_type": "application/pdf", "file_data": b"%PDF-1.4"}
        fake = FakeDB([("FROM documents WHERE document_id", row), ("FROM documents WHERE document_id", row)])
        with fake.patch(documents):
            view = self.client.get("/api/documents/view/3", headers=USER_HEADERS)
            download = self.client.get("/api/documents/3/file", headers=USER_HEADERS)
        self.assertEqual(view.status_code, 200)
        self.assertEqual(view.content, b"%PDF-1.4")
        self.assertIn("filename*=UTF-8''", view.headers["content-disposition"])
        self.assertTrue(download.headers["content-disposition"].startswith('attachment; filename="file.pdf"'))

    def test_documents_are_user_scoped(self):
        res = self.client.get("/api/documents")
        self.assertEqual(res.status_code, 401)


if __name__ == "__main__":
    unittest.main()
