import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .auth import SpotifyPKCEAuth, check_spotify_credentials, extract_code_from_redirect_url
from .errors import (
    AuthorizationDeniedError,
    ConfigurationError,
    NotAuthenticatedError,
)
from .executor import RequestExecutor, ResourceRequest, RetryEvents, decode_json, raise_for_outcome
from .mutations import CollectionCounts, CountedStore, MutationCoordinator
from .pkce import ChallengeStore
from .settings import SessionSettings
from .storage import JsonFileStorage, KeyValueStorage
from .tokens import TokenStore

logger = logging.getLogger(__name__)


class SpotifySession:
    """Entry point the rest of the application talks to.

    Owns one challenge store, one token store, the request executor and the
    mutation coordinator, all built from the same settings, storage and
    clock so tests can assemble an isolated session.
    """

    def __init__(
        self,
        settings: SessionSettings,
        *,
        storage: Optional[KeyValueStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        counts: Optional[CountedStore] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.storage = storage if storage is not None else JsonFileStorage(settings.storage_path)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            follow_redirects=False,
        )
        self._clock = clock

        self.events = RetryEvents()
        self.executor = RequestExecutor(
            self.http_client,
            policy=settings.retry_policy(),
            events=self.events,
            sleep=sleep,
            accounts_base_url=settings.accounts_base_url,
            api_base_url=settings.api_base_url,
        )
        self.auth = SpotifyPKCEAuth(settings, self.executor, clock=clock)
        self.challenges = ChallengeStore(
            self.storage,
            ttl_seconds=settings.pkce_ttl_seconds,
            lock_lease_seconds=settings.pkce_lock_lease_seconds,
            clock=clock,
        )
        self.tokens = TokenStore(
            self.storage,
            renewer=self.auth.refresh_access_token,
            refresh_margin_seconds=settings.token_refresh_margin_seconds,
            default_lifetime_seconds=settings.token_default_lifetime_seconds,
            persist=settings.cache_tokens,
            clock=clock,
        )
        self.counts = counts if counts is not None else CollectionCounts()
        self.coordinator = MutationCoordinator(
            self.counts,
            reconcile_delay=settings.reconcile_delay_seconds,
            sleep=sleep,
            clock=clock,
        )

    # -----------------
    # Lifecycle
    # -----------------

    def init(self) -> "SpotifySession":
        self.challenges.init()
        self.tokens.init()
        return self

    def reset(self) -> None:
        self.tokens.reset()
        self.challenges.reset()

    async def aclose(self) -> None:
        await self.coordinator.teardown()
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "SpotifySession":
        return self.init()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def add_termination_listener(self, listener: Callable[[BaseException], None]) -> None:
        """Called when a failed renewal forces the session to end."""

        self.tokens.add_termination_listener(listener)

    # -----------------
    # Authorization
    # -----------------

    async def start_authorization(self, *, show_dialog: bool = False) -> str:
        status = check_spotify_credentials(self.settings)
        if not status["ok"]:
            raise ConfigurationError(status["message"])

        challenge = await self.challenges.begin()
        try:
            return self.auth.get_authorize_url(
                code_challenge=challenge.challenge,
                state=challenge.state,
                show_dialog=show_dialog,
            )
        except Exception:
            self.challenges.cancel()
            raise

    async def complete_authorization(
        self,
        code: Optional[str],
        state: Optional[str],
        *,
        error: Optional[str] = None,
    ) -> None:
        if error:
            self.challenges.cancel()
            raise AuthorizationDeniedError(error)

        verifier = self.challenges.validate_and_consume(state, code)
        try:
            token = await self.auth.exchange_code_for_token(code=str(code), code_verifier=verifier)
        finally:
            self.challenges.release_lock()

        self.tokens.set(token)
        logger.info("Spotify authorization completed")

    async def complete_from_redirect(self, redirect_url: str) -> None:
        parsed = extract_code_from_redirect_url(redirect_url)
        await self.complete_authorization(parsed.get("code"), parsed.get("state"), error=parsed.get("error"))

    # -----------------
    # Tokens
    # -----------------

    @property
    def is_authenticated(self) -> bool:
        return self.tokens.current is not None

    async def get_valid_token(self) -> str:
        return await self.tokens.get_valid_token()

    def token_status(self) -> Dict[str, Any]:
        token = self.tokens.current
        now = self._clock()
        return {
            "state": self.tokens.state.value,
            "expires_at": token.expires_at if token else None,
            "seconds_remaining": int(token.seconds_remaining(now)) if token else None,
            "scope": token.scope if token else None,
            "has_refresh_token": bool(token and token.refresh_token),
            "authorization_pending": self.challenges.peek() is not None,
        }

    # -----------------
    # Requests
    # -----------------

    async def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Dict[str, Any]:
        """Authenticated resource call; returns parsed JSON or raises a typed error.

        A 401 triggers one reactive renewal and a single replay; a second 401
        ends the session.
        """

        request = ResourceRequest(method=method, path=endpoint, params=params, json=json)
        access_token = await self.tokens.get_valid_token()
        response = await self.executor.send(request, token=access_token)

        if response.status_code == 401:
            logger.warning("Spotify rejected the access token for %s %s; renewing", method, endpoint)
            renewed = await self.tokens.force_renew(access_token)
            response = await self.executor.send(request, token=renewed.access_token)
            if response.status_code == 401:
                await self.logout()
                raise NotAuthenticatedError("Spotify rejected the renewed access token")

        raise_for_outcome(response)
        return decode_json(response)

    async def mutate_counted(
        self,
        entity_id: str,
        delta: int,
        perform_remote_call: Callable[[], Awaitable[Any]],
    ) -> Any:
        return await self.coordinator.mutate_counted(entity_id, delta, perform_remote_call)

    async def deduped_fetch(
        self,
        key: str,
        perform_remote_call: Callable[[], Awaitable[Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        return await self.coordinator.deduped_fetch(key, perform_remote_call, cancel_event)

    async def logout(self) -> None:
        self.tokens.clear()
        self.challenges.reset()
        await self.coordinator.teardown()
        logger.info("Logged out of Spotify")
