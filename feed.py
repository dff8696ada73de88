"""Public track feed with client-side genre filtering."""
import asyncio
import logging
from typing import Iterable, Optional

import settings
from backend import DataStore
from errors import KohinaError
from models import AuthSession

logger = logging.getLogger(__name__)

TRACK_COLUMNS = (
    "id", "user_id", "title", "artist", "album", "genre_id",
    "audio_path", "image_url", "created_at",
)


class FeedLoader:
    """
    Loads the genre list and the public track feed for one view.

    The two fetches are independent: each has its own loading flag, error
    and retry. Genre filtering runs over the tracks already fetched and
    never triggers another request.
    """

    def __init__(self, store: DataStore, page_size: int = settings.FEED_PAGE_SIZE):
        self.store = store
        self.page_size = page_size

        self.genres: list[dict] = []
        self.genres_loading = False
        self.genres_error: Optional[str] = None

        self.tracks: list[dict] = []
        self.tracks_loading = False
        self.tracks_error: Optional[str] = None

        self.selected_genre_ids: set[int] = set()

        self._genres_generation = 0
        self._tracks_generation = 0

    async def load(self) -> None:
        await asyncio.gather(self.load_genres(), self.load_tracks())

    async def load_genres(self) -> None:
        self._genres_generation += 1
        generation = self._genres_generation
        self.genres = []
        self.genres_error = None
        self.genres_loading = True

        try:
            rows = await self.store.select(
                "genres", columns=("id", "name", "description"), order="name"
            )
        except KohinaError as e:
            if generation == self._genres_generation:
                logger.error(f"Error fetching genres: {e}")
                self.genres_error = "Failed to load genres"
                self.genres_loading = False
            return

        if generation == self._genres_generation:
            self.genres = rows
            self.genres_loading = False

    async def load_tracks(self) -> None:
        self._tracks_generation += 1
        generation = self._tracks_generation
        self.tracks = []
        self.tracks_error = None
        self.tracks_loading = True

        try:
            rows = await self.store.select(
                "tracks",
                columns=TRACK_COLUMNS,
                filters={"is_public": True},
                order="created_at",
                descending=True,
                limit=self.page_size,
                embed=("profiles", "genres"),
            )
        except KohinaError as e:
            if generation == self._tracks_generation:
                logger.error(f"Error fetching tracks: {e}")
                self.tracks_error = "Failed to load tracks"
                self.tracks_loading = False
            return

        if generation == self._tracks_generation:
            self.tracks = rows
            self.tracks_loading = False

    retry_genres = load_genres
    retry_tracks = load_tracks

    # --- Filtering ---

    def toggle_genre(self, genre_id: int) -> None:
        if genre_id in self.selected_genre_ids:
            self.selected_genre_ids.discard(genre_id)
        else:
            self.selected_genre_ids.add(genre_id)

    def select_genres(self, genre_ids: Iterable[int]) -> None:
        self.selected_genre_ids = set(genre_ids)

    def clear_genres(self) -> None:
        self.selected_genre_ids = set()

    @property
    def visible_tracks(self) -> list[dict]:
        if not self.selected_genre_ids:
            return list(self.tracks)
        return [track for track in self.tracks if track.get("genre_id") in self.selected_genre_ids]

    @property
    def is_empty(self) -> bool:
        return not self.tracks_loading and self.tracks_error is None and not self.visible_tracks

    @property
    def empty_message(self) -> str:
        if self.selected_genre_ids:
            return "No tracks found for the selected genres. Try selecting different genres."
        return "No tracks available yet."


async def display_name(store: DataStore, session: Optional[AuthSession]) -> str:
    """Username of the signed-in user, falling back to the email, then "user"."""
    if session is None:
        return "user"
    try:
        rows = await store.select("profiles", columns=("username",), filters={"id": session.user_id})
    except KohinaError as e:
        logger.error(f"Error fetching display name: {e}")
        return session.email or "user"
    if rows and rows[0].get("username"):
        return rows[0]["username"]
    return session.email or "user"
