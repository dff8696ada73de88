"""Signed URL resolution for private audio objects."""
import logging
from enum import Enum
from typing import Optional

import settings
from backend import ObjectStorage
from errors import KohinaError

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Audio unavailable"


class MediaState(str, Enum):
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"


class SignedMediaResolver:
    """
    Resolves one stored object path to a short-lived signed URL.

    Each instance resolves at most once. Results arriving after unmount()
    are discarded; there is no caching and no refresh on expiry.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        path: str,
        bucket: str = settings.AUDIO_BUCKET,
        ttl_seconds: int = settings.SIGNED_URL_TTL,
    ):
        self.storage = storage
        self.path = path
        self.bucket = bucket
        self.ttl_seconds = ttl_seconds

        self.state = MediaState.RESOLVING
        self.url: Optional[str] = None
        self.error: Optional[str] = None
        self.mounted = True
        self._requested = False

    async def resolve(self) -> MediaState:
        if self._requested:
            return self.state
        self._requested = True

        try:
            url = await self.storage.create_signed_url(self.bucket, self.path, self.ttl_seconds)
        except KohinaError as e:
            logger.error(f"Error signing URL for {self.bucket}/{self.path}: {e}")
            if self.mounted:
                self.state = MediaState.FAILED
                self.error = UNAVAILABLE_MESSAGE
            return self.state

        if self.mounted:
            self.url = url
            self.state = MediaState.RESOLVED
        return self.state

    def unmount(self) -> None:
        self.mounted = False
