"""Follow relationships: the follow toggle and follower/following lists."""
import asyncio
import logging
import weakref
from typing import Optional

from sqlmodel import SQLModel

import settings
from backend import DataStore
from errors import AlreadyExistsError, FieldValidationError, KohinaError

logger = logging.getLogger(__name__)

FOLLOWERS = "followers"
FOLLOWING = "following"

# One lock per (follower, followed) pair, shared by every toggle instance
_pair_locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()


def _pair_lock(follower_id: str, followed_id: str) -> asyncio.Lock:
    key = (follower_id, followed_id)
    lock = _pair_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _pair_locks[key] = lock
    return lock


class FollowToggle:
    """
    Follow/unfollow control for one (viewer, subject) pair.

    The displayed follower count is adjusted optimistically once the
    relationship write succeeds. While a request is in flight further
    toggles are ignored, and toggles for the same pair are serialized.
    """

    def __init__(self, store: DataStore, follower_id: str, followed_id: str, following: bool, count: int):
        if follower_id == followed_id:
            raise FieldValidationError("follow", "You cannot follow yourself")
        self.store = store
        self.follower_id = follower_id
        self.followed_id = followed_id
        self.following = following
        self.count = count
        self.error: Optional[str] = None
        self.in_flight = False
        self._lock = _pair_lock(follower_id, followed_id)

    @property
    def _row(self) -> dict:
        return {"follower_id": self.follower_id, "followed_id": self.followed_id}

    async def toggle(self) -> bool:
        """
        Flip the relationship.

        Returns:
            bool: Whether the viewer follows the subject afterwards
        """
        if self.in_flight:
            return self.following

        self.in_flight = True
        self.error = None
        try:
            async with self._lock:
                if self.following:
                    await self._unfollow()
                else:
                    await self._follow()
        finally:
            self.in_flight = False
        return self.following

    async def _follow(self) -> None:
        try:
            await self.store.insert("followers", self._row)
        except AlreadyExistsError:
            logger.info(f"{self.follower_id} already follows {self.followed_id}")
        except KohinaError as e:
            logger.error(f"Error following {self.followed_id}: {e}")
            self.error = "Could not follow this user"
            return
        self.following = True
        self.count += 1

    async def _unfollow(self) -> None:
        try:
            await self.store.delete("followers", self._row)
        except KohinaError as e:
            logger.error(f"Error unfollowing {self.followed_id}: {e}")
            self.error = "Could not unfollow this user"
            return
        self.following = False
        self.count = max(0, self.count - 1)


async def load_follow_toggle(store: DataStore, viewer_id: str, subject_id: str) -> FollowToggle:
    """Build a toggle from the stored relationship and follower count."""
    following = await store.count("followers", {"follower_id": viewer_id, "followed_id": subject_id})
    count = await store.count("followers", {"followed_id": subject_id})
    return FollowToggle(store, viewer_id, subject_id, following=following > 0, count=count)


class FollowEntry(SQLModel):
    user_id: str
    username: str
    avatar_url: Optional[str] = None
    href: str


def profile_href(user_id: str, viewer_id: Optional[str]) -> str:
    if user_id == viewer_id:
        return settings.PROFILE_ROUTE
    return f"{settings.PROFILE_ROUTE}?user={user_id}"


async def load_follow_list(
    store: DataStore,
    relation: str,
    subject_id: str,
    viewer_id: Optional[str],
) -> list[FollowEntry]:
    """
    List the users on the other side of a subject's follow relationships.

    Args:
        store: Data store
        relation: FOLLOWERS (who follows the subject) or FOLLOWING (whom the subject follows)
        subject_id: User whose relationships are listed
        viewer_id: Signed-in user, used to link back to their own profile route

    Returns:
        list[FollowEntry]: One entry per distinct user, in relation order
    """
    if relation == FOLLOWERS:
        match_column, counterpart_column = "followed_id", "follower_id"
    elif relation == FOLLOWING:
        match_column, counterpart_column = "follower_id", "followed_id"
    else:
        raise ValueError(f"Unknown relation: {relation}")

    rows = await store.select(
        "followers",
        columns=(counterpart_column,),
        filters={match_column: subject_id},
        order="created_at",
        descending=True,
    )
    ids = list(dict.fromkeys(row[counterpart_column] for row in rows))
    if not ids:
        return []

    profiles = await store.select(
        "profiles", columns=("id", "username", "avatar_url"), filters={"id": ids}
    )
    by_id = {profile["id"]: profile for profile in profiles}

    entries = []
    for user_id in ids:
        profile = by_id.get(user_id, {})
        entries.append(FollowEntry(
            user_id=user_id,
            username=profile.get("username") or "Unknown",
            avatar_url=profile.get("avatar_url"),
            href=profile_href(user_id, viewer_id),
        ))
    return entries
