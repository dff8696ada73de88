import asyncio
import unittest

from fastapi.testclient import TestClient

import settings
from main import app, get_backend
from support import BackendMixin, wav_bytes


class RouteTestCase(BackendMixin, unittest.TestCase):

    def setUp(self):
        super().setUp()
        app.dependency_overrides[get_backend] = lambda: self.backend
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        super().tearDown()

    def register(self, email="a@example.com", username="alice", password="password123"):
        return self.client.post(
            "/register",
            data={"email": email, "username": username, "password": password},
            follow_redirects=False,
        )

    def run_async(self, coro):
        return asyncio.run(coro)


class TestEntryAndGuard(RouteTestCase):

    def test_entry_shows_login_when_signed_out(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("Sign in", response.text)

    def test_protected_pages_redirect_to_entry(self):
        for route in (settings.HOME_ROUTE, settings.PROFILE_ROUTE, settings.UPLOAD_ROUTE):
            response = self.client.get(route, follow_redirects=False)
            self.assertEqual(response.status_code, 302, route)
            self.assertEqual(response.headers["location"], settings.ENTRY_ROUTE)

    def test_fragments_need_a_session(self):
        self.assertEqual(self.client.get("/feed/tracks").status_code, 401)
        self.assertEqual(self.client.post("/follow/someone").status_code, 401)
        self.assertEqual(self.client.delete("/tracks/1").status_code, 401)

    def test_forged_cookie_is_treated_as_signed_out(self):
        self.client.cookies.set(settings.SESSION_COOKIE, "not-a-token")
        response = self.client.get(settings.HOME_ROUTE, follow_redirects=False)
        self.assertEqual(response.status_code, 302)


class TestAuthRoutes(RouteTestCase):

    def test_register_signs_in_and_opens_feed(self):
        response = self.register()
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], settings.HOME_ROUTE)
        self.assertIn(settings.SESSION_COOKIE, response.cookies)

        home = self.client.get(settings.HOME_ROUTE)
        self.assertEqual(home.status_code, 200)
        self.assertIn("Welcome, alice", home.text)

        entry = self.client.get("/", follow_redirects=False)
        self.assertEqual(entry.headers["location"], settings.HOME_ROUTE)

    def test_duplicate_registration_shows_error(self):
        self.register()
        self.client.cookies.clear()
        response = self.register()
        self.assertEqual(response.status_code, 200)
        self.assertIn("An account with this email already exists.", response.text)

    def test_wrong_password_shows_friendly_message(self):
        self.register()
        self.client.cookies.clear()
        response = self.client.post("/login", data={"email": "a@example.com", "password": "nope"})
        self.assertIn("Invalid email or password.", response.text)

    def test_logout_returns_to_entry(self):
        self.register()
        response = self.client.post("/logout", follow_redirects=False)
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], settings.ENTRY_ROUTE)

        self.client.cookies.clear()
        after = self.client.get(settings.HOME_ROUTE, follow_redirects=False)
        self.assertEqual(after.status_code, 302)


class TestUploadAndPlayback(RouteTestCase):

    def setUp(self):
        super().setUp()
        self.register()
        self.genre = self.run_async(self.add_genre("Ambient"))

    def upload(self, **overrides):
        data = {"title": "Song", "artist": "Alice", "genre_id": str(self.genre["id"]), "is_public": "true"}
        data.update(overrides)
        return self.client.post(
            "/upload",
            data=data,
            files={"file": ("song.wav", wav_bytes(), "audio/wav")},
        )

    def only_track(self):
        rows = self.run_async(self.backend.db.select("tracks"))
        self.assertEqual(len(rows), 1)
        return rows[0]

    def test_missing_genre_is_rejected(self):
        response = self.upload(genre_id="")
        self.assertIn("Please select a genre for your track", response.text)
        self.assertEqual(self.run_async(self.backend.db.select("tracks")), [])

    def test_upload_then_play(self):
        response = self.upload()
        self.assertIn("Track uploaded successfully!", response.text)
        self.assertEqual(response.headers["HX-Trigger"], "tracks-changed")

        track = self.only_track()
        player = self.client.get(f"/tracks/{track['id']}/player")
        self.assertIn("<audio", player.text)

        src = player.text.split('src="', 1)[1].split('"', 1)[0].replace("&amp;", "&")
        media = self.client.get(src)
        self.assertEqual(media.status_code, 200)
        self.assertEqual(media.content, wav_bytes())

    def test_missing_audio_object_shows_unavailable(self):
        self.upload()
        track = self.only_track()
        self.run_async(self.backend.storage.remove("audio", [track["audio_path"]]))

        player = self.client.get(f"/tracks/{track['id']}/player")
        self.assertIn("Audio unavailable", player.text)

    def test_bad_storage_token_is_forbidden(self):
        self.upload()
        track = self.only_track()
        response = self.client.get(f"/storage/sign/audio/{track['audio_path']}?token=forged")
        self.assertEqual(response.status_code, 403)

    def test_delete_own_track(self):
        self.upload()
        track = self.only_track()
        response = self.client.delete(f"/tracks/{track['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.run_async(self.backend.db.select("tracks")), [])
        self.assertEqual(self.client.delete(f"/tracks/{track['id']}").status_code, 404)

    def test_private_track_not_playable_by_others(self):
        self.upload(is_public="false")
        track = self.only_track()
        self.client.cookies.clear()
        self.register(email="b@example.com", username="bob")

        player = self.client.get(f"/tracks/{track['id']}/player")
        self.assertIn("Audio unavailable", player.text)
        self.assertEqual(self.client.delete(f"/tracks/{track['id']}").status_code, 403)


class TestProfileRoutes(RouteTestCase):

    def test_follow_from_profile(self):
        self.register(email="b@example.com", username="bob")
        rows = self.run_async(self.backend.db.select("profiles", filters={"username": "bob"}))
        bob_id = rows[0]["id"]
        self.client.cookies.clear()
        self.register()

        page = self.client.get(f"/profile?user={bob_id}")
        self.assertEqual(page.status_code, 200)
        self.assertIn("bob", page.text)

        button = self.client.post(f"/follow/{bob_id}")
        self.assertIn("Unfollow", button.text)
        self.assertIn("1 followers", button.text)

        followers = self.client.get(f"/profile/{bob_id}/followers")
        self.assertIn("alice", followers.text)
        self.assertEqual(self.client.get(f"/profile/{bob_id}/friends").status_code, 404)

    def test_cannot_follow_self(self):
        self.register()
        rows = self.run_async(self.backend.db.select("profiles", filters={"username": "alice"}))
        self.assertEqual(self.client.post(f"/follow/{rows[0]['id']}").status_code, 400)

    def test_unknown_profile_shows_not_found(self):
        self.register()
        page = self.client.get("/profile?user=ghost")
        self.assertEqual(page.status_code, 200)
        self.assertIn("Profile not found", page.text)


if __name__ == "__main__":
    unittest.main()
