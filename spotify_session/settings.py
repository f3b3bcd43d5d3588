from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from .executor import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_SECONDS,
    SPOTIFY_ACCOUNTS_BASE_URL,
    SPOTIFY_API_BASE_URL,
    RetryPolicy,
)
from .mutations import DEFAULT_RECONCILE_DELAY_SECONDS
from .pkce import DEFAULT_CHALLENGE_TTL_SECONDS
from .storage import DEFAULT_STORAGE_PATH
from .tokens import DEFAULT_REFRESH_MARGIN_SECONDS, DEFAULT_TOKEN_LIFETIME_SECONDS

DEFAULT_REDIRECT_URI = "http://127.0.0.1:5173/auth/spotify/callback"

DEFAULT_SCOPES = (
    "user-read-private",
    "user-read-email",
    "user-library-read",
    "user-library-modify",
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
)


@dataclass(frozen=True)
class SessionSettings:
    """Typed view of the ``spotify_*`` / ``session_*`` config keys."""

    client_id: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: Tuple[str, ...] = field(default=DEFAULT_SCOPES)
    cache_tokens: bool = True
    storage_path: str = DEFAULT_STORAGE_PATH
    pkce_ttl_seconds: float = DEFAULT_CHALLENGE_TTL_SECONDS
    pkce_lock_lease_seconds: float = DEFAULT_CHALLENGE_TTL_SECONDS
    token_refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS
    token_default_lifetime_seconds: float = DEFAULT_TOKEN_LIFETIME_SECONDS
    request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    request_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    request_backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    reconcile_delay_seconds: float = DEFAULT_RECONCILE_DELAY_SECONDS
    accounts_base_url: str = SPOTIFY_ACCOUNTS_BASE_URL
    api_base_url: str = SPOTIFY_API_BASE_URL

    @staticmethod
    def from_config(config: Dict[str, Any]) -> "SessionSettings":
        config = config or {}
        defaults = SessionSettings()

        def pick(key: str, default: Any) -> Any:
            value = config.get(key)
            return default if value is None or value == "" else value

        ttl = float(pick("pkce_ttl_seconds", defaults.pkce_ttl_seconds))
        scopes = config.get("spotify_scopes")
        return SessionSettings(
            client_id=str(config.get("spotify_client_id", "") or "").strip(),
            redirect_uri=str(pick("spotify_redirect_uri", defaults.redirect_uri)).strip(),
            scopes=tuple(str(s).strip() for s in scopes if str(s).strip()) if scopes else defaults.scopes,
            cache_tokens=bool(pick("spotify_cache_tokens", defaults.cache_tokens)),
            storage_path=str(pick("session_storage_path", defaults.storage_path)),
            pkce_ttl_seconds=ttl,
            pkce_lock_lease_seconds=float(pick("pkce_lock_lease_seconds", ttl)),
            token_refresh_margin_seconds=float(
                pick("token_refresh_margin_seconds", defaults.token_refresh_margin_seconds)
            ),
            token_default_lifetime_seconds=float(
                pick("token_default_lifetime_seconds", defaults.token_default_lifetime_seconds)
            ),
            request_timeout_seconds=float(pick("request_timeout_seconds", defaults.request_timeout_seconds)),
            request_max_attempts=int(pick("request_max_attempts", defaults.request_max_attempts)),
            request_backoff_base_ms=int(pick("request_backoff_base_ms", defaults.request_backoff_base_ms)),
            reconcile_delay_seconds=float(pick("reconcile_delay_seconds", defaults.reconcile_delay_seconds)),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.request_max_attempts,
            base_delay_ms=self.request_backoff_base_ms,
            timeout_seconds=self.request_timeout_seconds,
        )
