import asyncio
import enum
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .errors import NotAuthenticatedError, RenewalFailedError
from .storage import TOKENS_KEY, KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class TokenSet:
    """Canonical token payload held by TokenStore."""

    access_token: str
    token_type: str = "Bearer"
    expires_at: Optional[float] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @staticmethod
    def from_token_response(
        payload: Dict[str, Any],
        *,
        now: Optional[float] = None,
        default_lifetime: float = DEFAULT_TOKEN_LIFETIME_SECONDS,
        previous_refresh_token: Optional[str] = None,
    ) -> "TokenSet":
        """Convert a token endpoint response into a TokenSet.

        Spotify returns:
        - access_token
        - token_type
        - expires_in (seconds)
        - refresh_token (optional; usually omitted on refresh)
        - scope (space-delimited string)
        """

        now_ts = float(time.time() if now is None else now)
        expires_in = payload.get("expires_in")
        try:
            lifetime = float(expires_in) if expires_in is not None else float(default_lifetime)
        except (TypeError, ValueError):
            lifetime = float(default_lifetime)

        return TokenSet(
            access_token=str(payload.get("access_token") or ""),
            token_type=str(payload.get("token_type") or "Bearer"),
            expires_at=now_ts + lifetime,
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            scope=payload.get("scope"),
        )

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TokenSet":
        expires_at = data.get("expires_at")
        return TokenSet(
            access_token=str(data.get("access_token", "")),
            token_type=str(data.get("token_type", "Bearer")),
            expires_at=float(expires_at) if expires_at is not None else None,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }

    def seconds_remaining(self, now: float) -> float:
        if self.expires_at is None:
            return 0.0
        return float(self.expires_at) - float(now)

    def granted_scopes(self) -> List[str]:
        return [s for s in (self.scope or "").split() if s]

    def missing_scopes(self, requested: Iterable[str]) -> List[str]:
        granted = set(self.granted_scopes())
        return [s for s in requested if s and s not in granted]


class TokenState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    FRESH = "fresh"
    NEAR_EXPIRY = "near_expiry"
    RENEWING = "renewing"


Renewer = Callable[[TokenSet], Awaitable[TokenSet]]
TerminationListener = Callable[[BaseException], None]


class TokenStore:
    """Holds the access/refresh token pair and renews it before it expires.

    The held set is only ever replaced as a whole (``set``) or dropped
    (``clear``). Renewal runs under an ``asyncio.Lock``; callers that queued
    behind an in-progress renewal re-check freshness and reuse its result.
    A failed renewal clears the set and notifies termination listeners.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        renewer: Optional[Renewer] = None,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        default_lifetime_seconds: float = DEFAULT_TOKEN_LIFETIME_SECONDS,
        persist: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.renewer = renewer
        self.refresh_margin_seconds = float(refresh_margin_seconds)
        self.default_lifetime_seconds = float(default_lifetime_seconds)
        self.persist = persist
        self._clock = clock
        self._token: Optional[TokenSet] = None
        self._renew_lock = asyncio.Lock()
        self._renewing = False
        self._listeners: List[TerminationListener] = []

    # -----------------
    # Lifecycle
    # -----------------

    def init(self) -> Optional[TokenSet]:
        """Load the persisted token set (if any) into memory."""

        self._token = None
        if not self.persist:
            return None

        data = self.storage.load(TOKENS_KEY)
        if not data:
            return None

        try:
            token = TokenSet.from_dict(data)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed persisted token set")
            self.storage.delete(TOKENS_KEY)
            return None

        if not token.access_token:
            return None

        self._token = self._with_expiry(token)
        return self._token

    def reset(self) -> None:
        self.clear()
        self._listeners.clear()

    def add_termination_listener(self, listener: TerminationListener) -> None:
        self._listeners.append(listener)

    # -----------------
    # State
    # -----------------

    @property
    def current(self) -> Optional[TokenSet]:
        return self._token

    @property
    def state(self) -> TokenState:
        if self._renewing:
            return TokenState.RENEWING
        if self._token is None:
            return TokenState.UNAUTHENTICATED
        if self._needs_renewal(self._token):
            return TokenState.NEAR_EXPIRY
        return TokenState.FRESH

    def _needs_renewal(self, token: TokenSet) -> bool:
        return token.seconds_remaining(self._clock()) <= self.refresh_margin_seconds

    def _with_expiry(self, token: TokenSet) -> TokenSet:
        if token.expires_at is not None:
            return token
        return replace(token, expires_at=self._clock() + self.default_lifetime_seconds)

    # -----------------
    # Mutation
    # -----------------

    def set(self, token: TokenSet) -> TokenSet:
        if not token.access_token:
            raise ValueError("Refusing to store a token set without an access token")

        token = self._with_expiry(token)
        self._token = token
        if self.persist:
            self.storage.save(TOKENS_KEY, token.to_dict())
        logger.info("Token set stored (expires in %ss)", int(token.seconds_remaining(self._clock())))
        return token

    def clear(self) -> None:
        self._token = None
        self.storage.delete(TOKENS_KEY)

    # -----------------
    # Access
    # -----------------

    async def get_valid_token(self) -> str:
        token = self._token
        if token is None or not token.access_token:
            raise NotAuthenticatedError("No Spotify access token held")

        if not self._needs_renewal(token):
            return token.access_token

        renewed = await self._renew(stale=token)
        return renewed.access_token

    async def force_renew(self, stale_access_token: str) -> TokenSet:
        """Renew after the remote service rejected ``stale_access_token``."""

        token = self._token
        if token is None:
            raise NotAuthenticatedError("No Spotify access token held")
        if token.access_token != stale_access_token:
            return token
        return await self._renew(stale=token, reactive=True)

    async def _renew(self, *, stale: TokenSet, reactive: bool = False) -> TokenSet:
        async with self._renew_lock:
            # Another caller may have renewed (or logged out) while we waited.
            token = self._token
            if token is None:
                raise NotAuthenticatedError("Session ended while waiting for token renewal")
            if token is not stale:
                if reactive or not self._needs_renewal(token):
                    return token

            self._renewing = True
            try:
                if not token.refresh_token or self.renewer is None:
                    raise RenewalFailedError("Token is near expiry and no refresh token is available")

                logger.info("Renewing access token (%ss remaining)", int(token.seconds_remaining(self._clock())))
                renewed = await self.renewer(token)
                if not renewed.refresh_token:
                    renewed = replace(renewed, refresh_token=token.refresh_token)
                return self.set(renewed)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._terminate(e)
                if isinstance(e, RenewalFailedError):
                    raise
                raise RenewalFailedError(f"Token renewal failed: {e}") from e
            finally:
                self._renewing = False

    def _terminate(self, cause: BaseException) -> None:
        logger.error("Token renewal failed, ending session: %s", cause)
        self.clear()
        for listener in list(self._listeners):
            try:
                listener(cause)
            except Exception:
                logger.exception("Session termination listener failed")
