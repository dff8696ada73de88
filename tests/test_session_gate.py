import asyncio
import unittest
from unittest.mock import MagicMock

from backend import AuthProvider, SIGNED_IN, SIGNED_OUT
from models import AuthSession
from session_gate import Decision, GateState, SessionGate, guard

SESSION = AuthSession(user_id="u1", email="u1@example.com", access_token="token")


class FakeAuth(AuthProvider):
    """Auth provider whose initial fetch blocks until released."""

    def __init__(self, session=None):
        self.session = session
        self.release = asyncio.Event()
        self.listeners = []

    async def get_session(self):
        await self.release.wait()
        return self.session

    def on_session_change(self, callback):
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    def push(self, event, session):
        for callback in list(self.listeners):
            callback(event, session)

    async def sign_up(self, email, password):
        raise NotImplementedError

    async def sign_in_with_password(self, email, password):
        raise NotImplementedError

    async def refresh_session(self):
        raise NotImplementedError

    async def sign_out(self):
        self.push(SIGNED_OUT, None)


class TestGuard(unittest.TestCase):

    def test_loading_never_redirects(self):
        self.assertEqual(guard(None, True), Decision.PLACEHOLDER)
        self.assertEqual(guard(SESSION, True), Decision.PLACEHOLDER)

    def test_settled_decisions(self):
        self.assertEqual(guard(None, False), Decision.REDIRECT)
        self.assertEqual(guard(SESSION, False), Decision.RENDER)


class TestSessionGate(unittest.IsolatedAsyncioTestCase):

    async def test_loading_until_initial_fetch_settles(self):
        auth = FakeAuth(session=None)
        gate = SessionGate(auth)
        states = []
        gate.subscribe(lambda g: states.append(g.state))

        task = asyncio.create_task(gate.start())
        await asyncio.sleep(0)
        # Listener is registered before the fetch resolves
        self.assertEqual(len(auth.listeners), 1)
        self.assertEqual(gate.state, GateState.LOADING)
        self.assertEqual(gate.decision(), Decision.PLACEHOLDER)

        auth.release.set()
        await task
        self.assertEqual(gate.state, GateState.ANONYMOUS)
        self.assertEqual(states, [GateState.ANONYMOUS])

    async def test_authenticated_session(self):
        auth = FakeAuth(session=SESSION)
        auth.release.set()
        async with SessionGate(auth) as gate:
            self.assertEqual(gate.state, GateState.AUTHENTICATED)
            self.assertEqual(gate.user_id, "u1")
        self.assertEqual(auth.listeners, [])

    async def test_change_during_fetch_wins_over_stale_result(self):
        auth = FakeAuth(session=None)
        gate = SessionGate(auth)
        task = asyncio.create_task(gate.start())
        await asyncio.sleep(0)

        auth.push(SIGNED_IN, SESSION)
        auth.release.set()
        await task
        self.assertEqual(gate.session, SESSION)
        self.assertEqual(gate.decision(), Decision.RENDER)

    async def test_sign_out_redirects_immediately(self):
        auth = FakeAuth(session=SESSION)
        auth.release.set()
        gate = await SessionGate(auth).start()
        self.assertEqual(gate.decision(), Decision.RENDER)

        await auth.sign_out()
        self.assertEqual(gate.decision(), Decision.REDIRECT)

    async def test_close_releases_subscriptions(self):
        auth = FakeAuth(session=SESSION)
        auth.release.set()
        gate = await SessionGate(auth).start()
        view = MagicMock()
        gate.subscribe(view)

        gate.close()
        self.assertEqual(auth.listeners, [])
        auth.push(SIGNED_OUT, None)
        view.assert_not_called()


if __name__ == "__main__":
    unittest.main()
