"""
Database setup script for Kohina
Run this to create the tables, seed the genre list and optionally add test users
"""

import asyncio
from sqlmodel import Session, select

import settings
from backend import Backend
from models import Genre
from profiles import update_profile

GENRES = [
    ("Ambient", "Atmospheric, texture-driven music"),
    ("Electronic", "Synthesizers, drum machines and everything in between"),
    ("Hip-Hop", "Beats, breaks and rhymes"),
    ("Jazz", "Improvisation, swing and blue notes"),
    ("Lo-Fi", "Warm, dusty, relaxed beats"),
    ("Pop", "Hooks and choruses"),
    ("R&B", "Rhythm and blues, soul and groove"),
    ("Rock", "Guitars, bass and drums"),
]

TEST_USERS = [
    ("producer1@example.com", "producer1", "I love creating chill beats and ambient soundscapes."),
    ("beatmaker@example.com", "beatmaker", "Hip-hop producer specializing in hard-hitting drums and 808s."),
]


def create_tables() -> Backend:
    """Create all database tables"""
    database_url, secret_key = settings.resolve_backend_config()
    backend = Backend(database_url, secret_key, settings.STORAGE_DIR, echo=True)

    print("Creating tables...")
    backend.create_all()
    print("Tables created successfully!")

    return backend


def seed_genres(backend: Backend) -> int:
    """Insert any missing genres and return how many were added"""
    added = 0
    with Session(backend.engine) as session:
        existing = set(session.exec(select(Genre.name)).all())
        for name, description in GENRES:
            if name not in existing:
                session.add(Genre(name=name, description=description))
                added += 1
        session.commit()
    return added


async def seed_test_users(backend: Backend):
    """Add test accounts with profiles"""
    print("\nSeeding test users...")
    for email, username, bio in TEST_USERS:
        auth_session = await backend.auth().sign_up(email, "password123")
        await update_profile(backend.db, auth_session.user_id, username, bio=bio)
        print(f"Created user: {username}")

    print("\nTest credentials:")
    for email, _, _ in TEST_USERS:
        print(f"  Email: {email}, Password: password123")


if __name__ == "__main__":
    print("=== Kohina Database Setup ===\n")

    backend = create_tables()
    print(f"Added {seed_genres(backend)} genres")

    seed = input("\nWould you like to seed test users? (y/n): ").strip().lower()

    if seed == 'y':
        asyncio.run(seed_test_users(backend))

    print("\n=== Setup Complete ===")
    print("You can now run the application with: python main.py")
