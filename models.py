"""
Data models for Kohina.

This module defines the SQLModel classes backing the local backend adapter:
accounts owned by the auth provider, user profiles, genres, tracks and the
follow relationship. The view services never touch these classes directly;
they read and write plain rows through the data store interface.
"""
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from uuid import uuid4


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Account(SQLModel, table=True):
    """
    Account model owned by the auth provider.

    Attributes:
        id: Primary key, random UUID string shared with the profile row
        email: Unique login email
        password_hash: Bcrypt hashed password
        created_at: Timestamp of signup
    """
    __tablename__ = "accounts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(unique=True, index=True)
    password_hash: str = Field()
    created_at: datetime = Field(default_factory=_now)


class Profile(SQLModel, table=True):
    """
    Public profile of a user, created on the first write after signup.

    Attributes:
        id: Same value as the owning account id
        username: Display name
        bio: Optional biography
        location: Optional free-text location
        avatar_url: Public URL of the avatar image
        updated_at: Timestamp of the last profile write
    """
    __tablename__ = "profiles"

    id: str = Field(primary_key=True, foreign_key="accounts.id")
    username: Optional[str] = Field(default=None, index=True)
    bio: Optional[str] = Field(default="")
    location: Optional[str] = Field(default="")
    avatar_url: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=_now)


class Genre(SQLModel, table=True):
    """Genre lookup data, read-only from the application's side."""
    __tablename__ = "genres"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    description: Optional[str] = Field(default="")


class Track(SQLModel, table=True):
    """
    Track model representing an uploaded audio file and its metadata.

    Attributes:
        id: Primary key, auto-generated
        user_id: Uploader's user id
        title: Track title
        artist: Performing artist
        album: Optional album name
        genre_id: Reference to a Genre
        audio_path: Object path inside the audio bucket
        image_url: Optional cover image URL
        is_public: Whether other users can see the track
        mime_type: Content type reported at upload
        file_size: Size in bytes
        created_at: Timestamp of upload
    """
    __tablename__ = "tracks"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="accounts.id", index=True)
    title: str = Field()
    artist: str = Field()
    album: Optional[str] = Field(default="")
    genre_id: Optional[int] = Field(default=None, foreign_key="genres.id", index=True)
    audio_path: str = Field()
    image_url: Optional[str] = Field(default=None)
    is_public: bool = Field(default=True, index=True)
    mime_type: Optional[str] = Field(default=None)
    file_size: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=_now, index=True)


class Follower(SQLModel, table=True):
    """
    Directed follow edge: follower_id follows followed_id.

    The composite primary key makes each pair unique.
    """
    __tablename__ = "followers"

    follower_id: str = Field(primary_key=True, foreign_key="accounts.id")
    followed_id: str = Field(primary_key=True, foreign_key="accounts.id", index=True)
    created_at: datetime = Field(default_factory=_now)


class AuthSession(SQLModel):
    """Authenticated identity bound to the current client."""
    user_id: str
    email: str
    access_token: str
