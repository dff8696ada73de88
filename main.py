"""
Kohina - Social Audio Sharing.

This module implements the FastAPI application for Kohina, a platform where
users upload tracks, browse a public feed filtered by genre, keep a profile
and follow each other.

The application provides:
- Session-gated pages (feed, profile, upload/manage)
- HTMX fragments for retries, audio players, follow toggles and lists
- Routes serving stored media through signed or public URLs
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    FastAPI,
    Request,
    Form,
    Depends,
    status,
    UploadFile,
    File,
    Query,
    HTTPException
)
from fastapi.responses import HTMLResponse, RedirectResponse, FileResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

import settings
from backend import Backend
from errors import AuthError, FieldValidationError, KohinaError, NotFoundError, StorageError, friendly_message
from feed import FeedLoader, display_name
from follows import FOLLOWERS, FOLLOWING, load_follow_list, load_follow_toggle
from media import SignedMediaResolver, MediaState, UNAVAILABLE_MESSAGE
from models import AuthSession
from profiles import ProfileAggregator, update_profile, upload_avatar
from session_gate import Decision, SessionGate
from uploads import SelectedFile, UploadFlow, list_own_tracks

# --- Initialization ---
settings.configure_logging()
logger = logging.getLogger(__name__)

database_url, secret_key = settings.resolve_backend_config()
backend = Backend(database_url, secret_key, settings.STORAGE_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend.create_all()
    logger.info("Kohina started")
    yield
    logger.info("Kohina shutting down")


app = FastAPI(title="Kohina", lifespan=lifespan)

# Static files and templates
app.mount("/static", StaticFiles(directory=settings.BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=settings.BASE_DIR / "templates")


def get_backend() -> Backend:
    """Dependency providing the backend adapter."""
    return backend


async def get_gate(request: Request, backend: Backend = Depends(get_backend)):
    """
    Dependency providing a started session gate for the request.

    The gate is bound to the access token in the session cookie and is
    closed, releasing its auth listener, once the response is sent.
    """
    gate = SessionGate(backend.auth(request.cookies.get(settings.SESSION_COOKIE)))
    await gate.start()
    try:
        yield gate
    finally:
        gate.close()


def guard_response(request: Request, gate: SessionGate):
    """Return the response a protected page must send instead of rendering, if any."""
    decision = gate.decision()
    if decision is Decision.PLACEHOLDER:
        return templates.TemplateResponse(request, "loading.html", {})
    if decision is Decision.REDIRECT:
        return RedirectResponse(url=settings.ENTRY_ROUTE, status_code=status.HTTP_302_FOUND)
    return None


def fragment_unauthorized() -> HTMLResponse:
    return HTMLResponse("<p>Please log in</p>", status_code=401)


def signed_in_response(auth_session: AuthSession) -> RedirectResponse:
    response = RedirectResponse(url=settings.HOME_ROUTE, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        key=settings.SESSION_COOKIE,
        value=auth_session.access_token,
        httponly=True,
        max_age=settings.SESSION_MAX_AGE,
    )
    return response


def parse_genre_id(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# --- Entry and auth routes ---

@app.get("/", response_class=HTMLResponse)
async def entry(request: Request, gate: SessionGate = Depends(get_gate)):
    """Login page when signed out, otherwise redirect to the feed"""
    if gate.decision() is Decision.RENDER:
        return RedirectResponse(url=settings.HOME_ROUTE, status_code=status.HTTP_302_FOUND)
    return templates.TemplateResponse(request, "login.html", {})


@app.post("/login", response_class=HTMLResponse)
async def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    backend: Backend = Depends(get_backend)
):
    """Handle login"""
    try:
        auth_session = await backend.auth().sign_in_with_password(email, password)
    except AuthError as e:
        return templates.TemplateResponse(
            request, "login.html", {"error": friendly_message(e), "email": email}
        )

    logger.info(f"User signed in: {auth_session.user_id}")
    return signed_in_response(auth_session)


@app.get("/register", response_class=HTMLResponse)
async def register_page(request: Request):
    """Registration page"""
    return templates.TemplateResponse(request, "register.html", {})


@app.post("/register", response_class=HTMLResponse)
async def register(
    request: Request,
    email: str = Form(...),
    username: str = Form(...),
    password: str = Form(...),
    backend: Backend = Depends(get_backend)
):
    """Create an account, then write its profile row"""
    context = {"email": email, "username": username}
    if not username.strip():
        context["error"] = "Username is required"
        return templates.TemplateResponse(request, "register.html", context)

    try:
        auth_session = await backend.auth().sign_up(email, password)
        await update_profile(backend.db, auth_session.user_id, username)
    except KohinaError as e:
        context["error"] = friendly_message(e)
        return templates.TemplateResponse(request, "register.html", context)

    return signed_in_response(auth_session)


@app.post("/logout", response_class=HTMLResponse)
async def logout(gate: SessionGate = Depends(get_gate)):
    """Handle logout"""
    await gate.auth.sign_out()
    response = RedirectResponse(url=settings.ENTRY_ROUTE, status_code=status.HTTP_302_FOUND)
    response.delete_cookie(settings.SESSION_COOKIE)
    return response


# --- Feed ---

@app.get("/home", response_class=HTMLResponse)
async def home(
    request: Request,
    genre: list[int] = Query(default=[]),
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Public feed"""
    blocked = guard_response(request, gate)
    if blocked:
        return blocked

    feed = FeedLoader(backend.db)
    await feed.load()
    feed.select_genres(genre)
    name = await display_name(backend.db, gate.session)

    return templates.TemplateResponse(
        request, "home.html", {"session": gate.session, "feed": feed, "display_name": name}
    )


@app.get("/feed/tracks", response_class=HTMLResponse)
async def feed_tracks(
    request: Request,
    genre: list[int] = Query(default=[]),
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Re-fetch only the track list"""
    if gate.session is None:
        return fragment_unauthorized()

    feed = FeedLoader(backend.db)
    await feed.retry_tracks()
    feed.select_genres(genre)
    return templates.TemplateResponse(request, "partials/feed_tracks.html", {"feed": feed})


@app.get("/feed/genres", response_class=HTMLResponse)
async def feed_genres(
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Re-fetch only the genre list"""
    if gate.session is None:
        return fragment_unauthorized()

    feed = FeedLoader(backend.db)
    await feed.retry_genres()
    return templates.TemplateResponse(request, "partials/genre_filter.html", {"feed": feed})


@app.get("/tracks/{track_id}/player", response_class=HTMLResponse)
async def track_player(
    track_id: int,
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Audio player bound to a freshly signed URL"""
    if gate.session is None:
        return fragment_unauthorized()

    try:
        rows = await backend.db.select(
            "tracks", columns=("id", "user_id", "audio_path", "is_public"), filters={"id": track_id}
        )
    except KohinaError as e:
        logger.error(f"Error fetching track {track_id}: {e}")
        rows = []

    track = rows[0] if rows else None
    if track is None or not (track["is_public"] or track["user_id"] == gate.user_id):
        return templates.TemplateResponse(
            request,
            "partials/player.html",
            {"state": MediaState.FAILED, "error": UNAVAILABLE_MESSAGE, "track_id": track_id},
        )

    resolver = SignedMediaResolver(backend.storage, track["audio_path"])
    await resolver.resolve()
    return templates.TemplateResponse(
        request,
        "partials/player.html",
        {"state": resolver.state, "url": resolver.url, "error": resolver.error, "track_id": track_id},
    )


# --- Profiles and follows ---

@app.get("/profile", response_class=HTMLResponse)
async def profile_page(
    request: Request,
    user: Optional[str] = None,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Own profile, or another user's with ?user=<id>"""
    blocked = guard_response(request, gate)
    if blocked:
        return blocked

    aggregator = ProfileAggregator(backend.db)
    view = await aggregator.load(user, gate.user_id)

    return templates.TemplateResponse(
        request,
        "profile.html",
        {"session": gate.session, "view": view, "error": aggregator.error},
    )


@app.post("/profile", response_class=HTMLResponse)
async def edit_profile(
    request: Request,
    username: str = Form(""),
    bio: str = Form(""),
    location: str = Form(""),
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Save the signed-in user's profile fields"""
    if gate.session is None:
        return fragment_unauthorized()

    profile = {"id": gate.user_id, "username": username, "bio": bio, "location": location}
    context = {"profile": profile}
    try:
        context["profile"] = await update_profile(backend.db, gate.user_id, username, bio, location)
        context["success"] = "Profile updated"
    except KohinaError as e:
        context["error"] = friendly_message(e)

    return templates.TemplateResponse(request, "partials/profile_form.html", context)


@app.post("/profile/avatar", response_class=HTMLResponse)
async def change_avatar(
    request: Request,
    avatar: UploadFile = File(...),
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Upload a new avatar image"""
    if gate.session is None:
        return fragment_unauthorized()

    context = {}
    try:
        data = await avatar.read()
        context["avatar_url"] = await upload_avatar(
            backend.storage, backend.db, gate.user_id, avatar.filename, data, avatar.content_type
        )
    except KohinaError as e:
        context["error"] = friendly_message(e)

    return templates.TemplateResponse(request, "partials/avatar.html", context)


@app.post("/follow/{user_id}", response_class=HTMLResponse)
async def toggle_follow(
    user_id: str,
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Follow or unfollow a user and return the updated button"""
    if gate.session is None:
        return fragment_unauthorized()

    try:
        toggle = await load_follow_toggle(backend.db, gate.user_id, user_id)
    except FieldValidationError as e:
        return HTMLResponse(f"<p>{e.message}</p>", status_code=400)
    except KohinaError as e:
        logger.error(f"Error loading follow state for {user_id}: {e}")
        return templates.TemplateResponse(
            request, "partials/banner.html", {"error": "Could not load follow status"}
        )

    await toggle.toggle()
    return templates.TemplateResponse(
        request,
        "partials/follow_button.html",
        {"user_id": user_id, "following": toggle.following, "count": toggle.count, "error": toggle.error},
    )


@app.get("/profile/{user_id}/{relation}", response_class=HTMLResponse)
async def follow_list(
    user_id: str,
    relation: str,
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Followers or following list for the modal"""
    if gate.session is None:
        return fragment_unauthorized()
    if relation not in (FOLLOWERS, FOLLOWING):
        raise HTTPException(status_code=404, detail="Unknown list")

    context = {"relation": relation, "entries": []}
    try:
        context["entries"] = await load_follow_list(backend.db, relation, user_id, gate.user_id)
    except KohinaError as e:
        logger.error(f"Error loading {relation} of {user_id}: {e}")
        context["error"] = f"Failed to load {relation}"

    return templates.TemplateResponse(request, "partials/follow_list.html", context)


# --- Upload and manage ---

@app.get("/upload", response_class=HTMLResponse)
async def upload_page(
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """Upload form and the user's own tracks"""
    blocked = guard_response(request, gate)
    if blocked:
        return blocked

    feed = FeedLoader(backend.db)
    await feed.load_genres()

    context = {"session": gate.session, "genres": feed.genres, "genres_error": feed.genres_error, "tracks": []}
    try:
        context["tracks"] = await list_own_tracks(backend.db, gate.user_id)
    except KohinaError as e:
        logger.error(f"Error fetching tracks for {gate.user_id}: {e}")
        context["tracks_error"] = "Failed to load tracks"

    return templates.TemplateResponse(request, "upload.html", context)


@app.get("/upload/tracks", response_class=HTMLResponse)
async def own_tracks(
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """The user's own tracks"""
    if gate.session is None:
        return fragment_unauthorized()

    context = {"tracks": []}
    try:
        context["tracks"] = await list_own_tracks(backend.db, gate.user_id)
    except KohinaError as e:
        logger.error(f"Error fetching tracks for {gate.user_id}: {e}")
        context["tracks_error"] = "Failed to load tracks"

    return templates.TemplateResponse(request, "partials/own_tracks.html", context)


@app.post("/upload", response_class=HTMLResponse)
async def upload_track(
    request: Request,
    title: str = Form(""),
    artist: str = Form(""),
    album: str = Form(""),
    genre_id: str = Form(""),
    is_public: bool = Form(False),
    file: Optional[UploadFile] = File(None),
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """
    Upload a new track with metadata.

    Args:
        request: HTTP request
        title: Track title
        artist: Performing artist
        album: Optional album name
        genre_id: Selected genre
        is_public: Whether the track appears in other users' views
        file: Audio file upload
        gate: Session gate (injected)
        backend: Backend adapter (injected)

    Returns:
        HTMLResponse: Upload result HTML fragment
    """
    if gate.session is None:
        return fragment_unauthorized()

    selected = None
    if file is not None and file.filename:
        selected = SelectedFile(filename=file.filename, content_type=file.content_type, data=await file.read())

    flow = UploadFlow(backend.db, backend.storage)
    try:
        await flow.submit(
            gate.user_id, title, artist, parse_genre_id(genre_id), selected, album=album, is_public=is_public
        )
    except FieldValidationError as e:
        return templates.TemplateResponse(
            request, "partials/upload_result.html", {"error": e.message, "field": e.field}
        )
    except KohinaError as e:
        return templates.TemplateResponse(request, "partials/upload_result.html", {"error": e.message})

    response = templates.TemplateResponse(
        request, "partials/upload_result.html", {"success": "Track uploaded successfully!"}
    )
    response.headers["HX-Trigger"] = "tracks-changed"
    return response


@app.delete("/tracks/{track_id}", response_class=HTMLResponse)
async def delete_track(
    track_id: int,
    request: Request,
    gate: SessionGate = Depends(get_gate),
    backend: Backend = Depends(get_backend)
):
    """
    Delete a track and, best effort, its stored audio.

    Only the track owner can delete it.

    Raises:
        HTTPException: 401 if not authenticated, 404 if not found, 403 if not the owner
    """
    if gate.session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    flow = UploadFlow(backend.db, backend.storage)
    try:
        await flow.delete(track_id, gate.user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Track not found")
    except AuthError:
        raise HTTPException(status_code=403, detail="Not authorized to delete this track")
    except KohinaError as e:
        return templates.TemplateResponse(request, "partials/banner.html", {"error": e.message})

    # Empty response for HTMX to remove the element
    return HTMLResponse("", status_code=200)


# --- Stored media ---

@app.get("/storage/sign/{bucket}/{path:path}")
async def signed_object(
    bucket: str,
    path: str,
    token: str = "",
    backend: Backend = Depends(get_backend)
):
    """Serve a private object through a signed URL"""
    try:
        target = backend.storage.open_signed(bucket, path, token)
    except StorageError as e:
        status_code = 404 if e.code == "storage/not-found" else 403
        raise HTTPException(status_code=status_code, detail=e.message)
    return FileResponse(target)


@app.get("/storage/public/{bucket}/{path:path}")
async def public_object(
    bucket: str,
    path: str,
    backend: Backend = Depends(get_backend)
):
    """Serve an object from a public bucket"""
    try:
        target = backend.storage.open_public(bucket, path)
    except StorageError as e:
        status_code = 404 if e.code == "storage/not-found" else 403
        raise HTTPException(status_code=status_code, detail=e.message)
    return FileResponse(target)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True
    )
