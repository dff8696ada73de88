import io
import tempfile
import wave
from pathlib import Path

from backend import Backend
from models import AuthSession
from profiles import update_profile


def wav_bytes(seconds: float = 0.1, rate: int = 8000) -> bytes:
    """A short mono WAV file of silence."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as out:
        out.setnchannels(1)
        out.setsampwidth(2)
        out.setframerate(rate)
        out.writeframes(b"\x00\x00" * int(rate * seconds))
    return buffer.getvalue()


class BackendMixin:
    """Creates a fresh local backend in a temporary directory per test."""

    def setUp(self):
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.backend = Backend(f"sqlite:///{root / 'test.db'}", "test-secret", root / "storage")
        self.backend.create_all()

    def tearDown(self):
        self.backend.engine.dispose()
        self._tmp.cleanup()
        super().tearDown()

    async def add_user(self, email: str, username: str | None = None) -> AuthSession:
        auth_session = await self.backend.auth().sign_up(email, "password123")
        if username:
            await update_profile(self.backend.db, auth_session.user_id, username)
        return auth_session

    async def add_genre(self, name: str) -> dict:
        return await self.backend.db.insert("genres", {"name": name})
