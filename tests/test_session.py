import asyncio
import sys
import unittest
import urllib.parse
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from spotify_session import (
    AuthorizationDeniedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ConfigurationError,
    FatalRequestError,
    LockContendedError,
    NotAuthenticatedError,
    RenewalFailedError,
    SpotifySession,
    StateMismatchError,
)
from spotify_session.pkce import code_challenge_from_verifier
from spotify_session.storage import PKCE_KEY, TOKENS_KEY, MemoryStorage
from spotify_session.tokens import TokenSet
from tests.fakes import FakeClock, FakeSpotify, RecordingSleep, form_fields, json_response, make_settings


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    settings_overrides = {}

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.sleep = RecordingSleep()
        self.storage = MemoryStorage()
        self.spotify = FakeSpotify()
        self.spotify.route("POST", "/api/token", self.token_endpoint)
        self.spotify.route("GET", "/v1/me", self.me_endpoint)
        self.http = self.spotify.client()
        self.addAsyncCleanup(self.http.aclose)
        self.session = self.make_session()

    def make_session(self, **overrides):
        settings = make_settings(**{**self.settings_overrides, **overrides})
        session = SpotifySession(settings, storage=self.storage, http_client=self.http, clock=self.clock, sleep=self.sleep)
        return session.init()

    def token_endpoint(self, request):
        fields = form_fields(request)
        if fields["grant_type"] == "authorization_code":
            self.exchanged = fields
            return json_response(200, self.spotify.issue_token())
        if fields["grant_type"] == "refresh_token":
            if fields["refresh_token"] != "refresh-1":
                return json_response(400, {"error": "invalid_grant", "error_description": "Refresh token revoked"})
            payload = self.spotify.issue_token(refresh_token=None)
            return json_response(200, payload)
        return json_response(400, {"error": "unsupported_grant_type"})

    def me_endpoint(self, request):
        if self.spotify.bearer(request) not in self.spotify.valid_tokens:
            return json_response(401, {"error": {"status": 401, "message": "The access token expired"}})
        return json_response(200, {"id": "user-1", "display_name": "Tester"})

    async def login(self):
        url = await self.session.start_authorization()
        query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
        await self.session.complete_authorization("auth-code", query["state"][0])
        return query


class TestAuthorizationFlow(SessionTestCase):
    async def test_authorize_url_carries_pkce_parameters(self):
        url = await self.session.start_authorization(show_dialog=True)
        parsed = urllib.parse.urlparse(url)
        query = urllib.parse.parse_qs(parsed.query)

        self.assertEqual(f"{parsed.scheme}://{parsed.netloc}{parsed.path}", "https://accounts.test/authorize")
        self.assertEqual(query["client_id"], ["test-client"])
        self.assertEqual(query["response_type"], ["code"])
        self.assertEqual(query["code_challenge_method"], ["S256"])
        self.assertEqual(query["show_dialog"], ["true"])
        self.assertIn("playlist-modify-public", query["scope"][0].split())
        stored = self.storage.load(PKCE_KEY)
        self.assertEqual(query["state"], [stored["state"]])
        self.assertEqual(query["code_challenge"], [stored["challenge"]])

    async def test_complete_exchanges_code_with_matching_verifier(self):
        query = await self.login()

        self.assertEqual(self.exchanged["code"], "auth-code")
        self.assertEqual(self.exchanged["client_id"], "test-client")
        self.assertEqual(self.exchanged["redirect_uri"], "http://127.0.0.1:5173/auth/spotify/callback")
        self.assertEqual(code_challenge_from_verifier(self.exchanged["code_verifier"]), query["code_challenge"][0])

        self.assertTrue(self.session.is_authenticated)
        self.assertEqual(await self.session.get_valid_token(), "access-1")
        self.assertIsNone(self.storage.load(PKCE_KEY))
        self.assertEqual(self.storage.load(TOKENS_KEY)["refresh_token"], "refresh-1")

    async def test_redirect_cannot_be_replayed(self):
        url = await self.session.start_authorization()
        state = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["state"][0]
        await self.session.complete_authorization("auth-code", state)
        with self.assertRaises(ChallengeNotFoundError):
            await self.session.complete_authorization("auth-code", state)
        self.assertEqual(len(self.spotify.calls("POST", "/api/token")), 1)

    async def test_second_start_while_pending_is_rejected(self):
        await self.session.start_authorization()
        with self.assertRaises(LockContendedError):
            await self.session.start_authorization()

    async def test_state_mismatch_never_reaches_token_endpoint(self):
        await self.session.start_authorization()
        with self.assertRaises(StateMismatchError):
            await self.session.complete_authorization("auth-code", "forged-state-value")
        self.assertEqual(self.spotify.calls("POST", "/api/token"), [])
        self.assertFalse(self.session.is_authenticated)

    async def test_expired_challenge(self):
        url = await self.session.start_authorization()
        state = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["state"][0]
        self.clock.advance(600)
        with self.assertRaises(ChallengeExpiredError):
            await self.session.complete_authorization("auth-code", state)

    async def test_provider_error_cancels_attempt(self):
        await self.session.start_authorization()
        with self.assertRaises(AuthorizationDeniedError) as ctx:
            await self.session.complete_from_redirect(
                "http://127.0.0.1:5173/auth/spotify/callback?error=access_denied&state=abc"
            )
        self.assertIn("denied", ctx.exception.user_message)
        self.assertIsNone(self.storage.load(PKCE_KEY))
        # A new attempt may start right away.
        await self.session.start_authorization()

    async def test_complete_from_pasted_redirect(self):
        url = await self.session.start_authorization()
        state = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["state"][0]
        await self.session.complete_from_redirect(
            f"http://127.0.0.1:5173/auth/spotify/callback?code=pasted-code&state={state}"
        )
        self.assertEqual(self.exchanged["code"], "pasted-code")

    async def test_failed_exchange_releases_the_lease(self):
        self.spotify.route("POST", "/api/token", lambda r: json_response(400, {"error": "invalid_grant"}))
        url = await self.session.start_authorization()
        state = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["state"][0]
        with self.assertRaises(FatalRequestError):
            await self.session.complete_authorization("bad-code", state)
        self.assertFalse(self.session.is_authenticated)
        await self.session.start_authorization()

    async def test_missing_client_id(self):
        session = self.make_session(client_id="")
        with self.assertRaises(ConfigurationError):
            await session.start_authorization()
        self.assertIsNone(self.storage.load(PKCE_KEY))

    async def test_pending_challenge_survives_restart(self):
        url = await self.session.start_authorization()
        state = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["state"][0]
        restarted = self.make_session()
        await restarted.complete_authorization("auth-code", state)
        self.assertTrue(restarted.is_authenticated)


class TestAuthenticatedRequests(SessionTestCase):
    async def test_request_without_login(self):
        with self.assertRaises(NotAuthenticatedError):
            await self.session.request("/me")

    async def test_request_uses_bearer_token(self):
        await self.login()
        me = await self.session.request("/me")
        self.assertEqual(me["id"], "user-1")
        self.assertEqual(self.spotify.bearer(self.spotify.calls("GET", "/v1/me")[0]), "access-1")

    async def test_proactive_renewal_inside_margin(self):
        await self.login()
        self.clock.advance(3600 - 299)
        await self.session.request("/me")
        refreshes = [r for r in self.spotify.calls("POST", "/api/token") if form_fields(r)["grant_type"] == "refresh_token"]
        self.assertEqual(len(refreshes), 1)
        self.assertEqual(self.spotify.bearer(self.spotify.calls("GET", "/v1/me")[0]), "access-2")
        # The refresh response omitted refresh_token; the old one is kept.
        self.assertEqual(self.session.tokens.current.refresh_token, "refresh-1")

    async def test_401_triggers_one_renewal_and_replay(self):
        await self.login()
        self.spotify.valid_tokens.discard("access-1")
        me = await self.session.request("/me")
        self.assertEqual(me["display_name"], "Tester")
        self.assertEqual([self.spotify.bearer(r) for r in self.spotify.calls("GET", "/v1/me")], ["access-1", "access-2"])

    async def test_second_401_logs_out(self):
        await self.login()
        self.spotify.route("GET", "/v1/me", lambda r: json_response(401, {"error": {"message": "revoked"}}))
        with self.assertRaises(NotAuthenticatedError):
            await self.session.request("/me")
        self.assertFalse(self.session.is_authenticated)
        self.assertIsNone(self.storage.load(TOKENS_KEY))

    async def test_failed_renewal_ends_session_and_notifies(self):
        ended = []
        self.session.add_termination_listener(ended.append)
        self.session.tokens.set(TokenSet(access_token="old", expires_at=self.clock() + 10, refresh_token="revoked"))
        with self.assertRaises(RenewalFailedError):
            await self.session.request("/me")
        self.assertFalse(self.session.is_authenticated)
        self.assertEqual(len(ended), 1)
        self.assertEqual(self.spotify.calls("GET", "/v1/me"), [])

    async def test_concurrent_requests_share_one_renewal(self):
        await self.login()
        self.clock.advance(3500)
        await asyncio.gather(*(self.session.request("/me") for _ in range(5)))
        refreshes = [r for r in self.spotify.calls("POST", "/api/token") if form_fields(r)["grant_type"] == "refresh_token"]
        self.assertEqual(len(refreshes), 1)

    async def test_rate_limited_request_is_retried(self):
        await self.login()
        replies = [json_response(429, {"error": {"message": "slow"}}, headers={"Retry-After": "4"})]

        def me(request):
            return replies.pop(0) if replies else self.me_endpoint(request)

        self.spotify.route("GET", "/v1/me", me)
        subscription = self.session.events.subscribe()
        self.assertEqual((await self.session.request("/me"))["id"], "user-1")
        self.assertEqual(self.sleep.calls, [4.0])
        self.assertEqual([e.delay_ms for e in subscription.pending()], [4000])

    async def test_token_status(self):
        self.assertEqual(self.session.token_status()["state"], "unauthenticated")
        await self.login()
        status = self.session.token_status()
        self.assertEqual(status["state"], "fresh")
        self.assertEqual(status["seconds_remaining"], 3600)
        self.assertTrue(status["has_refresh_token"])
        self.assertFalse(status["authorization_pending"])

    async def test_logout_clears_everything(self):
        await self.login()
        await self.session.start_authorization()
        await self.session.logout()
        self.assertFalse(self.session.is_authenticated)
        self.assertEqual(self.storage.keys(), [])
        with self.assertRaises(NotAuthenticatedError):
            await self.session.get_valid_token()

    async def test_tokens_persist_across_restart(self):
        await self.login()
        restarted = self.make_session()
        self.assertEqual(await restarted.get_valid_token(), "access-1")

    async def test_cache_disabled_forgets_tokens_on_restart(self):
        self.session = self.make_session(cache_tokens=False)
        await self.login()
        self.assertIsNone(self.storage.load(TOKENS_KEY))
        self.assertFalse(self.make_session(cache_tokens=False).is_authenticated)


class TestSessionLifecycle(unittest.IsolatedAsyncioTestCase):
    async def test_async_context_manager_closes_owned_client(self):
        async with SpotifySession(make_settings(), storage=MemoryStorage()) as session:
            client = session.http_client
            self.assertFalse(client.is_closed)
        self.assertTrue(client.is_closed)

    async def test_owned_client_uses_configured_request_timeout(self):
        async with SpotifySession(make_settings(request_timeout_seconds=30), storage=MemoryStorage()) as session:
            timeout = session.http_client.timeout
            self.assertEqual(session.executor.policy.timeout_seconds, 30)
            self.assertEqual(timeout.connect, 30)
            self.assertEqual(timeout.read, 30)
            self.assertEqual(timeout.write, 30)
            self.assertEqual(timeout.pool, 30)

    async def test_injected_client_is_left_open(self):
        spotify = FakeSpotify()
        http = spotify.client()
        async with SpotifySession(make_settings(), storage=MemoryStorage(), http_client=http):
            pass
        self.assertFalse(http.is_closed)
        await http.aclose()


if __name__ == "__main__":
    unittest.main(verbosity=2)
