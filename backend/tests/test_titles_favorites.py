import unittest

from fastapi import HTTPException
from psycopg import errors as pg_errors

from support import USER_HEADERS, FakeDB, make_client

from homebook.routers import favorites, titles
from homebook.services.favorites import FAVORITE_CATEGORIES, parse_add_body, parse_watched_filter
from homebook.services.titles import MOVIES, parse_patch_body, parse_year, validate_poster_url

ADD_BODY = {
    "item_type": "movie",
    "item_id": 11,
    "category_id": 2,
    "year": 2010,
    "name": "Inception",
    "favorite_category": "Top Movies",
}


class TitleServiceTests(unittest.TestCase):
    def test_patch_body_lists_forbidden_fields(self):
        with self.assertRaises(HTTPException) as ctx:
            parse_patch_body({"movie_name": "x", "release_year": 2001, "is_watched": True})
        self.assertEqual(ctx.exception.detail["forbidden_fields"], ["movie_name", "release_year"])

    def test_patch_body_requires_an_updatable_field(self):
        with self.assertRaises(HTTPException) as ctx:
            parse_patch_body({})
        self.assertEqual(ctx.exception.detail, "No updatable fields provided (is_watched / poster_url)")

    def test_year_bounds(self):
        self.assertEqual(parse_year("1999", "release_year"), 1999)
        with self.assertRaises(HTTPException):
            parse_year(1700, "release_year")

    def test_poster_url_accepts_http_and_image_data(self):
        self.assertEqual(validate_poster_url("https://img.example/p.jpg"), "https://img.example/p.jpg")
        self.assertTrue(validate_poster_url("data:image/png;base64,iVBORw0KGgo=").startswith("data:image/png"))
        with self.assertRaises(HTTPException):
            validate_poster_url("ftp://img.example/p.jpg")


class TitleRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_duplicate_check_by_name(self):
        fake = FakeDB([("FROM movies WHERE INITCAP", {"?column?": 1})])
        with fake.patch(titles):
            res = self.client.get("/api/movies/duplicate-movie", params={"movie_name": "inception"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"ok": True, "duplicate": True, "mode": "name"})

    def test_duplicate_check_composite(self):
        fake = FakeDB()
        params = {"movie_name": "inception", "category_id": "2", "release_year": "2010"}
        with fake.patch(titles):
            res = self.client.get("/api/movies/duplicate-movie", params=params)
        self.assertEqual(res.json(), {"ok": True, "duplicate": False, "mode": "composite"})
        self.assertIn("release_year=%s", fake.cursor.calls[0][0])

    def test_put_rejects_forbidden_fields(self):
        fake = FakeDB()
        with fake.patch(titles):
            res = self.client.put("/api/movies/5", json={"movie_name": "Other", "is_watched": True})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["forbidden_fields"], ["movie_name"])
        self.assertEqual(fake.cursor.calls, [])

    def test_part_number_clash_maps_to_conflict(self):
        fake = FakeDB([("UPDATE movie_parts", pg_errors.UniqueViolation("dup"))])
        with fake.patch(titles):
            res = self.client.put("/api/movies/parts/9", json={"part_number": 2, "year": 2012})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["message"], "Part number already exists for this movie")

    def test_new_part_requires_existing_movie(self):
        fake = FakeDB()
        with fake.patch(titles):
            res = self.client.post("/api/movies/parts", json={"movie_id": 4, "part_number": 2, "year": 2012})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(MOVIES.child_path, "parts")


class FavoriteServiceTests(unittest.TestCase):
    def test_fixed_category_list(self):
        self.assertEqual(len(FAVORITE_CATEGORIES), 33)
        self.assertIn("Korean Top Favorite Series", FAVORITE_CATEGORIES)

    def test_add_body_validation(self):
        with self.assertRaises(HTTPException) as ctx:
            parse_add_body({**ADD_BODY, "name": ""})
        self.assertEqual(ctx.exception.detail, "Missing required fields.")
        with self.assertRaises(HTTPException) as ctx:
            parse_add_body({**ADD_BODY, "item_type": "book"})
        self.assertEqual(ctx.exception.detail, 'item_type must be "movie" or "series".')
        with self.assertRaises(HTTPException) as ctx:
            parse_add_body({**ADD_BODY, "favorite_category": "Best Books"})
        self.assertEqual(ctx.exception.detail, "favorite_category not allowed.")

        fields = parse_add_body({**ADD_BODY, "item_type": "series"})
        self.assertIsNone(fields["movie_id"])
        self.assertEqual(fields["series_id"], 11)

    def test_watched_filter_values(self):
        self.assertTrue(parse_watched_filter("Yes"))
        self.assertFalse(parse_watched_filter("unwatched"))
        self.assertIsNone(parse_watched_filter(None))


class FavoriteRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = make_client()

    def test_add_falls_back_to_move_on_duplicate(self):
        fake = FakeDB(
            [
                ("INSERT INTO favorites", pg_errors.UniqueViolation("dup")),
                ("COUNT(*) FILTER (WHERE movie_id IS NOT NULL)", {"movies": 1, "series": 0}),
                ("f.movie_id AS id", [{"favorite_id": 3, "title": "Inception", "id": 11}]),
            ]
        )
        with fake.patch(favorites):
            res = self.client.post("/api/favorites/add-and-fetch-category", json=ADD_BODY, headers=USER_HEADERS)
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["message"], "Favorite moved")
        self.assertEqual(body["data"]["counts"], {"movies": 1, "series": 0, "total": 1})
        self.assertEqual(body["data"]["movies"][0]["favorite_id"], 3)
        self.assertEqual(len(fake.cursor.executed("ROLLBACK TO SAVEPOINT addfav")), 1)
        update_sql, update_params = fake.cursor.executed("UPDATE favorites")[0]
        self.assertEqual(update_params[0], "Top Movies")
        self.assertEqual(fake.conn.commits, 1)

    def test_user_id_may_come_from_body(self):
        fake = FakeDB()
        with fake.patch(favorites):
            res = self.client.post("/api/favorites/add-and-fetch-category", json={**ADD_BODY, "user_id": 9})
        self.assertEqual(res.status_code, 200)
        insert_params = fake.cursor.executed("INSERT INTO favorites")[0][1]
        self.assertEqual(insert_params[0], 9)
        self.assertEqual(res.json()["message"], "Favorite added")

    def test_remove_rejects_other_users_favorite(self):
        fake = FakeDB([("SELECT user_id, favorite_category FROM favorites", {"user_id": 99, "favorite_category": "Top Movies"})])
        with fake.patch(favorites):
            res = self.client.post("/api/favorites/remove", json={"favorite_id": 3}, headers=USER_HEADERS)
        self.assertEqual(res.status_code, 403)
        self.assertEqual(fake.cursor.executed("DELETE FROM favorites"), [])

    def test_search_requires_query(self):
        res = self.client.get("/api/favorites/search")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["message"], "Missing required query param 'q'.")

    def test_search_matches_year_for_four_digits(self):
        fake = FakeDB()
        with fake.patch(favorites):
            res = self.client.get("/api/favorites/search", params={"q": "2010"})
        self.assertEqual(res.json()["data"], {"count": 0, "results": []})
        sql, params = fake.cursor.calls[0]
        self.assertIn("UNION ALL", sql)
        self.assertIn(2010, params)


if __name__ == "__main__":
    unittest.main()
