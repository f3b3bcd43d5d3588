import asyncio
import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from spotify_session.errors import NotAuthenticatedError, RenewalFailedError, TransientRequestError
from spotify_session.storage import TOKENS_KEY, MemoryStorage
from spotify_session.tokens import TokenSet, TokenState, TokenStore
from tests.fakes import FakeClock


class ScriptedRenewer:
    def __init__(self, clock, *, fail_with=None, gate=None, lifetime=3600):
        self.clock = clock
        self.fail_with = fail_with
        self.gate = gate
        self.lifetime = lifetime
        self.calls = []

    async def __call__(self, token: TokenSet) -> TokenSet:
        self.calls.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return TokenSet(access_token=f"renewed-{len(self.calls)}", expires_at=self.clock() + self.lifetime)


class TestTokenSet(unittest.TestCase):
    def test_from_token_response_computes_expiry(self):
        token = TokenSet.from_token_response(
            {"access_token": "at", "expires_in": 3600, "refresh_token": "rt", "scope": "a b"},
            now=1000.0,
        )
        self.assertEqual(token.expires_at, 4600.0)
        self.assertEqual(token.refresh_token, "rt")
        self.assertEqual(token.granted_scopes(), ["a", "b"])

    def test_missing_expires_in_uses_default_lifetime(self):
        token = TokenSet.from_token_response({"access_token": "at"}, now=1000.0, default_lifetime=3600)
        self.assertEqual(token.expires_at, 4600.0)

    def test_refresh_response_keeps_previous_refresh_token(self):
        token = TokenSet.from_token_response(
            {"access_token": "at2", "expires_in": 3600},
            now=0.0,
            previous_refresh_token="rt1",
        )
        self.assertEqual(token.refresh_token, "rt1")

    def test_missing_scopes(self):
        token = TokenSet(access_token="at", scope="playlist-read-private")
        self.assertEqual(
            token.missing_scopes(["playlist-read-private", "playlist-modify-public"]),
            ["playlist-modify-public"],
        )

    def test_dict_roundtrip(self):
        token = TokenSet(access_token="at", expires_at=12.5, refresh_token="rt", scope="x")
        self.assertEqual(TokenSet.from_dict(token.to_dict()), token)


class TestTokenStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.storage = MemoryStorage()
        self.renewer = ScriptedRenewer(self.clock)
        self.store = TokenStore(self.storage, renewer=self.renewer, refresh_margin_seconds=300, clock=self.clock)

    def _set(self, seconds_left: float, refresh_token="rt") -> TokenSet:
        return self.store.set(
            TokenSet(access_token="original", expires_at=self.clock() + seconds_left, refresh_token=refresh_token)
        )

    async def test_empty_store_is_unauthenticated(self):
        self.assertEqual(self.store.state, TokenState.UNAUTHENTICATED)
        with self.assertRaises(NotAuthenticatedError):
            await self.store.get_valid_token()

    async def test_fresh_token_is_returned_without_renewal(self):
        self._set(3600)
        self.assertEqual(self.store.state, TokenState.FRESH)
        self.assertEqual(await self.store.get_valid_token(), "original")
        self.assertEqual(self.renewer.calls, [])

    async def test_token_inside_margin_is_renewed_first(self):
        self._set(299)
        self.assertEqual(self.store.state, TokenState.NEAR_EXPIRY)
        self.assertEqual(await self.store.get_valid_token(), "renewed-1")
        self.assertEqual(len(self.renewer.calls), 1)
        # Renewal responses without a refresh token keep the old one.
        self.assertEqual(self.store.current.refresh_token, "rt")
        self.assertEqual(self.store.state, TokenState.FRESH)

    async def test_exactly_at_margin_renews(self):
        self._set(300)
        self.assertEqual(await self.store.get_valid_token(), "renewed-1")

    async def test_set_without_expiry_uses_default_lifetime(self):
        token = self.store.set(TokenSet(access_token="at"))
        self.assertEqual(token.expires_at, self.clock() + 3600)

    async def test_set_rejects_empty_access_token(self):
        with self.assertRaises(ValueError):
            self.store.set(TokenSet(access_token=""))

    async def test_concurrent_callers_share_one_renewal(self):
        gate = asyncio.Event()
        self.renewer.gate = gate
        self._set(10)

        first = asyncio.create_task(self.store.get_valid_token())
        second = asyncio.create_task(self.store.get_valid_token())
        await asyncio.sleep(0)
        self.assertEqual(self.store.state, TokenState.RENEWING)
        gate.set()

        self.assertEqual(await asyncio.gather(first, second), ["renewed-1", "renewed-1"])
        self.assertEqual(len(self.renewer.calls), 1)

    async def test_renewal_failure_clears_session_and_notifies(self):
        self.renewer.fail_with = TransientRequestError("network down")
        ended = []
        self.store.add_termination_listener(ended.append)
        self._set(10)

        with self.assertRaises(RenewalFailedError):
            await self.store.get_valid_token()

        self.assertIsNone(self.store.current)
        self.assertIsNone(self.storage.load(TOKENS_KEY))
        self.assertEqual(len(ended), 1)
        self.assertIsInstance(ended[0], TransientRequestError)
        with self.assertRaises(NotAuthenticatedError):
            await self.store.get_valid_token()

    async def test_near_expiry_without_refresh_token_ends_session(self):
        ended = []
        self.store.add_termination_listener(ended.append)
        self._set(10, refresh_token=None)
        with self.assertRaises(RenewalFailedError):
            await self.store.get_valid_token()
        self.assertIsNone(self.store.current)
        self.assertEqual(self.renewer.calls, [])
        self.assertEqual(len(ended), 1)

    async def test_force_renew_replaces_rejected_token(self):
        self._set(3600)
        renewed = await self.store.force_renew("original")
        self.assertEqual(renewed.access_token, "renewed-1")

    async def test_force_renew_with_outdated_token_is_noop(self):
        self._set(3600)
        await self.store.force_renew("original")
        again = await self.store.force_renew("original")
        self.assertEqual(again.access_token, "renewed-1")
        self.assertEqual(len(self.renewer.calls), 1)

    async def test_persisted_token_survives_restart(self):
        self._set(3600)
        restarted = TokenStore(self.storage, renewer=self.renewer, clock=self.clock)
        self.assertEqual(restarted.init().access_token, "original")
        self.assertEqual(await restarted.get_valid_token(), "original")

    async def test_persist_disabled_keeps_storage_empty(self):
        store = TokenStore(self.storage, renewer=self.renewer, persist=False, clock=self.clock)
        store.set(TokenSet(access_token="at", expires_at=self.clock() + 3600))
        self.assertIsNone(self.storage.load(TOKENS_KEY))
        self.assertIsNone(TokenStore(self.storage, persist=False, clock=self.clock).init())

    async def test_clear_removes_memory_and_storage(self):
        self._set(3600)
        self.store.clear()
        self.assertIsNone(self.store.current)
        self.assertIsNone(self.storage.load(TOKENS_KEY))


if __name__ == "__main__":
    unittest.main(verbosity=2)
