"""
Track upload, listing and deletion.

Uploads store the audio object first and only then write the track record.
If the record write fails the stored object is left behind (logged, not
cleaned up). Deletion removes the record first; removing the object is
best effort and its failure never fails the delete.
"""
import io
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mutagen import File as MutagenFile, MutagenError
from sqlmodel import SQLModel

import settings
from backend import DataStore, ObjectStorage
from errors import AuthError, DataError, FieldValidationError, NotFoundError, StorageError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-z0-9.\-_]", re.IGNORECASE)


class SelectedFile(SQLModel):
    """A file picked in the upload form."""
    filename: str
    content_type: Optional[str] = None
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)


def sanitize_filename(name: str) -> str:
    """Strip everything outside [a-z0-9._-] and lowercase the rest."""
    return _UNSAFE_CHARS.sub("", name or "").lower()


def build_storage_path(user_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """
    Build the object path for an upload.

    Args:
        user_id: Uploader, used as the top-level folder
        filename: Original file name
        now: Upload time; its millisecond timestamp prefixes the name

    Returns:
        str: "<user_id>/<epoch-ms>-<sanitized name>"
    """
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"{user_id}/{millis}-{sanitize_filename(filename)}"


def check_audio(file: SelectedFile) -> None:
    """Reject files mutagen cannot read as audio."""
    try:
        audio = MutagenFile(io.BytesIO(file.data))
    except MutagenError as e:
        raise FieldValidationError("file", f"Error processing audio file: {e}") from e
    if audio is None or not hasattr(audio.info, "length"):
        raise FieldValidationError("file", "Unable to read audio file. File may be corrupted.")


def validate_upload(
    title: str,
    artist: str,
    genre_id: Optional[int],
    file: Optional[SelectedFile],
    max_size_mb: int = settings.MAX_UPLOAD_MB,
) -> None:
    """
    Check the upload form before any request is made.

    Raises:
        FieldValidationError: For the first failing field (file, title,
        artist, genre), with a message specific to that field
    """
    if file is None or not file.data:
        raise FieldValidationError("file", "Please select an audio file to upload")
    if not (title or "").strip():
        raise FieldValidationError("title", "Title is required")
    if not (artist or "").strip():
        raise FieldValidationError("artist", "Artist is required")
    if not genre_id:
        raise FieldValidationError("genre", "Please select a genre for your track")

    if file.size > max_size_mb * 1024 * 1024:
        raise FieldValidationError("file", f"File too large. Maximum size is {max_size_mb}MB.")
    if file.content_type not in settings.ALLOWED_AUDIO_TYPES:
        raise FieldValidationError("file", "Invalid file type. Please upload an allowed audio format.")
    if Path(file.filename).suffix.lower() not in settings.ALLOWED_EXTENSIONS:
        raise FieldValidationError("file", "Invalid file extension. Please upload an allowed audio format.")
    check_audio(file)


class UploadFlow:
    """Uploads and deletes tracks for one user."""

    def __init__(self, store: DataStore, storage: ObjectStorage, bucket: str = settings.AUDIO_BUCKET):
        self.store = store
        self.storage = storage
        self.bucket = bucket

    async def submit(
        self,
        user_id: str,
        title: str,
        artist: str,
        genre_id: Optional[int],
        file: Optional[SelectedFile],
        album: str = "",
        is_public: bool = True,
    ) -> dict:
        """
        Validate, store the audio object, then insert the track record.

        Returns:
            dict: The inserted track row

        Raises:
            FieldValidationError: Form check failed; nothing was sent
            StorageError: The object upload failed; no record was written
            DataError: The record insert failed after the object was stored
        """
        validate_upload(title, artist, genre_id, file)
        if not user_id:
            raise FieldValidationError("session", "Authentication required")

        path = build_storage_path(user_id, file.filename)
        try:
            await self.storage.upload(self.bucket, path, file.data, content_type=file.content_type, overwrite=True)
        except StorageError as e:
            logger.error(f"Upload error for {path}: {e}")
            raise StorageError(f"Upload error: {e.message}", code=e.code) from e

        row = {
            "user_id": user_id,
            "title": title.strip(),
            "artist": artist.strip(),
            "album": (album or "").strip(),
            "genre_id": genre_id,
            "audio_path": path,
            "mime_type": file.content_type,
            "file_size": file.size,
            "is_public": is_public,
        }
        try:
            track = await self.store.insert("tracks", row)
        except DataError as e:
            logger.error(f"Track record failed, stored object {self.bucket}/{path} is orphaned: {e}")
            raise DataError(f"Database error: {e.message}", code=e.code) from e

        logger.info(f"Track uploaded: {track['id']} ({path})")
        return track

    async def delete(self, track_id: int, user_id: str) -> None:
        """
        Delete a track record, then try to remove its audio object.

        Raises:
            NotFoundError: No such track
            AuthError: The track belongs to someone else
            DataError: The record could not be deleted
        """
        rows = await self.store.select(
            "tracks", columns=("id", "user_id", "audio_path"), filters={"id": track_id}
        )
        if not rows:
            raise NotFoundError("Track not found")
        track = rows[0]
        if track["user_id"] != user_id:
            raise AuthError("Not authorized to delete this track")

        await self.store.delete("tracks", {"id": track_id})
        logger.info(f"Track deleted: {track_id}")

        try:
            await self.storage.remove(self.bucket, [track["audio_path"]])
        except StorageError as e:
            logger.warning(f"Could not delete file {track['audio_path']} from storage: {e}")


async def list_own_tracks(store: DataStore, user_id: str) -> list[dict]:
    """All of a user's tracks, any visibility, newest first."""
    return await store.select(
        "tracks",
        filters={"user_id": user_id},
        order="created_at",
        descending=True,
        embed=("genres",),
    )
