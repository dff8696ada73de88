"""
Session gate and route guard.

The gate owns the cached session for one client. It registers a single
listener with the auth provider, fetches the initial session, and fans
session changes out to the views that subscribed to it. The route guard is
a pure decision over the gate's current (session, loading) pair.
"""
import logging
from enum import Enum
from typing import Callable, Optional

from backend import AuthProvider
from errors import KohinaError
from models import AuthSession

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class Decision(str, Enum):
    PLACEHOLDER = "placeholder"
    REDIRECT = "redirect"
    RENDER = "render"


def guard(session: Optional[AuthSession], loading: bool) -> Decision:
    """
    Decide what a protected view should do for the current session state.

    Args:
        session: The cached session, or None when signed out
        loading: True until the initial session fetch has settled

    Returns:
        Decision: PLACEHOLDER while loading, REDIRECT to the entry route
        when signed out, RENDER otherwise
    """
    if loading:
        return Decision.PLACEHOLDER
    if session is None:
        return Decision.REDIRECT
    return Decision.RENDER


class SessionGate:
    """Holds the current session and notifies subscribed views of changes."""

    def __init__(self, auth: AuthProvider):
        self.auth = auth
        self.session: Optional[AuthSession] = None
        self.state = GateState.LOADING
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._subscribers: list[Callable[["SessionGate"], None]] = []
        self._changes = 0

    @property
    def loading(self) -> bool:
        return self.state is GateState.LOADING

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    def decision(self) -> Decision:
        return guard(self.session, self.loading)

    async def start(self) -> "SessionGate":
        """Register for session changes, then fetch the initial session."""
        if self._unsubscribe is None:
            self._unsubscribe = self.auth.on_session_change(self._handle_change)

        seen = self._changes
        try:
            session = await self.auth.get_session()
        except KohinaError as e:
            logger.error(f"Initial session fetch failed: {e}")
            session = None
        # A change pushed while the fetch was pending is newer than its result
        if self._changes == seen:
            self._settle(session)
        return self

    def subscribe(self, callback: Callable[["SessionGate"], None]) -> Callable[[], None]:
        """
        Register a view for session changes.

        Returns:
            Callable: Unsubscribe function for the view
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def close(self) -> None:
        """Release the auth provider listener and all view subscriptions."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._subscribers.clear()

    def _handle_change(self, event: str, session: Optional[AuthSession]) -> None:
        logger.info(f"Session change: {event}")
        self._changes += 1
        self._settle(session)

    def _settle(self, session: Optional[AuthSession]) -> None:
        self.session = session
        self.state = GateState.AUTHENTICATED if session else GateState.ANONYMOUS
        for callback in list(self._subscribers):
            callback(self)

    async def __aenter__(self) -> "SessionGate":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
