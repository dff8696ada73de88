import unittest
from unittest.mock import MagicMock

from backend import SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED
from errors import AlreadyExistsError, AuthError, DataError, StorageError
from support import BackendMixin


class TestDataStore(BackendMixin, unittest.IsolatedAsyncioTestCase):

    async def test_select_orders_filters_and_limits(self):
        db = self.backend.db
        for name in ("Rock", "Ambient", "Jazz"):
            await db.insert("genres", {"name": name})

        rows = await db.select("genres", columns=("id", "name"), order="name")
        self.assertEqual([row["name"] for row in rows], ["Ambient", "Jazz", "Rock"])
        self.assertEqual(set(rows[0]), {"id", "name"})

        rows = await db.select("genres", filters={"name": ["Rock", "Jazz"]}, order="name", limit=1)
        self.assertEqual([row["name"] for row in rows], ["Jazz"])

    async def test_select_embeds_author_and_genre(self):
        db = self.backend.db
        user = await self.add_user("a@example.com", "alice")
        genre = await db.insert("genres", {"name": "Lo-Fi"})
        await db.insert("tracks", {
            "user_id": user.user_id, "title": "Rain", "artist": "Alice",
            "genre_id": genre["id"], "audio_path": "x/1.wav",
        })

        rows = await db.select("tracks", columns=("id", "title"), embed=("profiles", "genres"))
        self.assertEqual(rows[0]["title"], "Rain")
        self.assertEqual(rows[0]["profiles"], {"username": "alice", "avatar_url": None})
        self.assertEqual(rows[0]["genres"]["name"], "Lo-Fi")

    async def test_count_and_duplicate_insert(self):
        db = self.backend.db
        a = await self.add_user("a@example.com")
        b = await self.add_user("b@example.com")
        row = {"follower_id": a.user_id, "followed_id": b.user_id}
        await db.insert("followers", row)
        with self.assertRaises(AlreadyExistsError):
            await db.insert("followers", row)

        self.assertEqual(await db.count("followers", {"followed_id": b.user_id}), 1)
        self.assertEqual(await db.count("followers", {"follower_id": b.user_id}), 0)

    async def test_references_must_exist(self):
        db = self.backend.db
        user = await self.add_user("a@example.com")

        with self.assertRaises(DataError) as ctx:
            await db.insert("tracks", {
                "user_id": user.user_id, "title": "T", "artist": "A",
                "genre_id": 9999, "audio_path": "x/1.wav",
            })
        self.assertNotIsInstance(ctx.exception, AlreadyExistsError)

        with self.assertRaises(DataError) as ctx:
            await db.insert("followers", {"follower_id": user.user_id, "followed_id": "no-such-user"})
        self.assertNotIsInstance(ctx.exception, AlreadyExistsError)

        with self.assertRaises(DataError):
            await db.upsert("profiles", {"id": "no-such-user", "username": "ghost"})
        self.assertEqual(await db.select("tracks"), [])
        self.assertEqual(await db.count("followers"), 0)

    async def test_upsert_updates_existing_row(self):
        db = self.backend.db
        user = await self.add_user("a@example.com")
        await db.upsert("profiles", {"id": user.user_id, "username": "first"})
        await db.upsert("profiles", {"id": user.user_id, "bio": "hello"})

        rows = await db.select("profiles", filters={"id": user.user_id})
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["username"], "first")
        self.assertEqual(rows[0]["bio"], "hello")

    async def test_delete_requires_filters(self):
        db = self.backend.db
        a = await self.add_user("a@example.com")
        b = await self.add_user("b@example.com")
        row = {"follower_id": a.user_id, "followed_id": b.user_id}
        await db.insert("followers", row)
        with self.assertRaises(DataError):
            await db.delete("followers", {})
        self.assertEqual(await db.delete("followers", row), 1)

    async def test_unknown_table_and_column(self):
        with self.assertRaises(DataError):
            await self.backend.db.select("accounts")
        with self.assertRaises(DataError):
            await self.backend.db.select("tracks", filters={"password": "x"})


class TestObjectStorage(BackendMixin, unittest.IsolatedAsyncioTestCase):

    async def test_signed_url_round_trip(self):
        storage = self.backend.storage
        await storage.upload("audio", "u1/song.wav", b"data", content_type="audio/wav")

        url = await storage.create_signed_url("audio", "u1/song.wav", 300)
        self.assertTrue(url.startswith("/storage/sign/audio/u1/song.wav?token="))
        token = url.split("token=", 1)[1]
        self.assertEqual(storage.open_signed("audio", "u1/song.wav", token).read_bytes(), b"data")

        with self.assertRaises(StorageError):
            storage.open_signed("audio", "u1/other.wav", token)

    async def test_signed_url_for_missing_object_fails(self):
        with self.assertRaises(StorageError) as ctx:
            await self.backend.storage.create_signed_url("audio", "nobody/missing.wav", 300)
        self.assertEqual(ctx.exception.code, "storage/not-found")

    async def test_upload_without_overwrite_conflicts(self):
        storage = self.backend.storage
        await storage.upload("audio", "u1/a.wav", b"1")
        with self.assertRaises(StorageError):
            await storage.upload("audio", "u1/a.wav", b"2")
        await storage.upload("audio", "u1/a.wav", b"2", overwrite=True)

    async def test_path_traversal_rejected(self):
        with self.assertRaises(StorageError):
            await self.backend.storage.upload("audio", "../escape.wav", b"1")

    async def test_public_bucket_only(self):
        storage = self.backend.storage
        await storage.upload("avatars", "u1/me.png", b"png")
        await storage.upload("audio", "u1/a.wav", b"wav")

        self.assertEqual(storage.get_public_url("avatars", "u1/me.png"), "/storage/public/avatars/u1/me.png")
        self.assertEqual(storage.open_public("avatars", "u1/me.png").read_bytes(), b"png")
        with self.assertRaises(StorageError):
            storage.open_public("audio", "u1/a.wav")

    async def test_remove_skips_missing(self):
        storage = self.backend.storage
        await storage.upload("audio", "u1/a.wav", b"1")
        self.assertEqual(await storage.remove("audio", ["u1/a.wav", "u1/b.wav"]), ["u1/a.wav"])


class TestAuthProvider(BackendMixin, unittest.IsolatedAsyncioTestCase):

    async def test_sign_up_sign_in_and_session(self):
        created = await self.backend.auth().sign_up("Bob@Example.com", "secret")
        self.assertEqual(created.email, "bob@example.com")

        auth = self.backend.auth()
        listener = MagicMock()
        auth.on_session_change(listener)
        signed_in = await auth.sign_in_with_password("bob@example.com", "secret")
        listener.assert_called_once_with(SIGNED_IN, signed_in)

        session = await self.backend.auth(signed_in.access_token).get_session()
        self.assertEqual(session.user_id, created.user_id)

    async def test_bad_credentials_and_duplicate_email(self):
        await self.backend.auth().sign_up("bob@example.com", "secret")
        with self.assertRaises(AuthError) as ctx:
            await self.backend.auth().sign_in_with_password("bob@example.com", "wrong")
        self.assertEqual(ctx.exception.code, "auth/wrong-password")
        with self.assertRaises(AuthError) as ctx:
            await self.backend.auth().sign_up("bob@example.com", "other")
        self.assertEqual(ctx.exception.code, "auth/email-already-in-use")

    async def test_invalid_token_has_no_session(self):
        self.assertIsNone(await self.backend.auth("garbage").get_session())
        self.assertIsNone(await self.backend.auth().get_session())

    async def test_refresh_and_sign_out_notify(self):
        auth = self.backend.auth()
        await auth.sign_up("bob@example.com", "secret")
        events = []
        unsubscribe = auth.on_session_change(lambda event, session: events.append(event))

        await auth.refresh_session()
        await auth.sign_out()
        self.assertEqual(events, [TOKEN_REFRESHED, SIGNED_OUT])
        self.assertIsNone(await auth.get_session())

        unsubscribe()
        self.assertEqual(auth.listener_count, 0)


if __name__ == "__main__":
    unittest.main()
