"""
Profile page aggregation and profile edits.

A profile page combines several independent queries (profile fields,
follower and following counts, the subject's tracks, and for other users
whether the viewer follows them) into one view model. Any failed query
aborts the whole load so a half-populated profile is never rendered.
"""
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from sqlmodel import SQLModel

import settings
from backend import DataStore, ObjectStorage
from errors import FieldValidationError, KohinaError, NotFoundError, StorageError, friendly_message
from uploads import sanitize_filename

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = ("id", "username", "bio", "location", "avatar_url")


class ProfileView(SQLModel):
    """Everything the profile page renders for one subject."""
    profile: dict
    is_own: bool
    follower_count: int = 0
    following_count: int = 0
    tracks: list[dict] = []
    is_following: Optional[bool] = None


def is_own_profile(target_id: Optional[str], viewer_id: Optional[str]) -> bool:
    return not target_id or target_id == viewer_id


class ProfileAggregator:
    """Loads a ProfileView; a newer load() supersedes an older one."""

    def __init__(self, store: DataStore):
        self.store = store
        self.loading = False
        self.error: Optional[str] = None
        self.view: Optional[ProfileView] = None
        self._generation = 0

    async def load(self, target_id: Optional[str], viewer_id: Optional[str]) -> Optional[ProfileView]:
        """
        Fetch and combine all data for a profile page.

        Args:
            target_id: User whose profile is requested; None means the viewer's own
            viewer_id: Signed-in user, or None when anonymous

        Returns:
            ProfileView | None: The view, or None when any fetch failed (see
            self.error) or a newer load superseded this one
        """
        self._generation += 1
        generation = self._generation
        self.loading = True
        self.error = None
        self.view = None

        own = is_own_profile(target_id, viewer_id)
        subject_id = viewer_id if own else target_id
        if not subject_id:
            self.loading = False
            self.error = "Profile not found"
            return None

        fetches = [
            self._fetch_profile(subject_id, own),
            self.store.count("followers", {"followed_id": subject_id}),
            self.store.count("followers", {"follower_id": subject_id}),
            self._fetch_tracks(subject_id, public_only=not own),
        ]
        if not own and viewer_id:
            fetches.append(self._fetch_is_following(viewer_id, subject_id))

        try:
            results = await asyncio.gather(*fetches)
        except KohinaError as e:
            if generation == self._generation:
                logger.error(f"Error loading profile {subject_id}: {e}")
                self.error = friendly_message(e) if isinstance(e, NotFoundError) else "Failed to load profile"
                self.loading = False
            return None

        if generation != self._generation:
            return None

        profile, follower_count, following_count, tracks, *rest = results
        self.view = ProfileView(
            profile=profile,
            is_own=own,
            follower_count=follower_count,
            following_count=following_count,
            tracks=tracks,
            is_following=rest[0] if rest else None,
        )
        self.loading = False
        return self.view

    async def _fetch_profile(self, user_id: str, own: bool) -> dict:
        rows = await self.store.select("profiles", columns=PROFILE_COLUMNS, filters={"id": user_id})
        if rows:
            return rows[0]
        if own:
            # Created on first write
            return {"id": user_id, "username": "", "bio": "", "location": "", "avatar_url": None}
        raise NotFoundError("Profile not found")

    async def _fetch_tracks(self, user_id: str, public_only: bool) -> list[dict]:
        filters = {"user_id": user_id}
        if public_only:
            filters["is_public"] = True
        return await self.store.select(
            "tracks", filters=filters, order="created_at", descending=True, embed=("genres",)
        )

    async def _fetch_is_following(self, viewer_id: str, subject_id: str) -> bool:
        found = await self.store.count(
            "followers", {"follower_id": viewer_id, "followed_id": subject_id}
        )
        return found > 0


async def update_profile(
    store: DataStore,
    user_id: str,
    username: str,
    bio: str = "",
    location: str = "",
) -> dict:
    """Create or update the user's profile row; username is required."""
    username = (username or "").strip()
    if not username:
        raise FieldValidationError("username", "Username is required")

    row = {
        "id": user_id,
        "username": username,
        "bio": (bio or "").strip(),
        "location": (location or "").strip(),
        "updated_at": datetime.now(timezone.utc),
    }
    profile = await store.upsert("profiles", row, on_conflict="id")
    logger.info(f"Profile updated: {user_id}")
    return profile


async def upload_avatar(
    storage: ObjectStorage,
    store: DataStore,
    user_id: str,
    filename: str,
    data: bytes,
    content_type: Optional[str],
) -> str:
    """
    Store an avatar image in the public bucket and record its URL.

    Returns:
        str: Public URL of the stored avatar
    """
    if not data:
        raise FieldValidationError("avatar", "No file selected")
    if not (content_type or "").startswith("image/"):
        raise FieldValidationError("avatar", "Avatar must be an image")

    # One object per user; a new extension replaces the old object too
    path = f"{user_id}/avatar{Path(sanitize_filename(filename)).suffix}"
    rows = await store.select("profiles", columns=("avatar_url",), filters={"id": user_id})
    previous_url = rows[0].get("avatar_url") if rows else None

    await storage.upload(settings.AVATAR_BUCKET, path, data, content_type=content_type, overwrite=True)
    avatar_url = storage.get_public_url(settings.AVATAR_BUCKET, path)

    await store.upsert(
        "profiles",
        {"id": user_id, "avatar_url": avatar_url, "updated_at": datetime.now(timezone.utc)},
        on_conflict="id",
    )

    bucket_url = storage.get_public_url(settings.AVATAR_BUCKET, "")
    if previous_url and previous_url != avatar_url and previous_url.startswith(bucket_url):
        previous_path = unquote(previous_url[len(bucket_url):])
        try:
            await storage.remove(settings.AVATAR_BUCKET, [previous_path])
        except StorageError as e:
            logger.warning(f"Could not delete old avatar {previous_path}: {e}")
    return avatar_url
