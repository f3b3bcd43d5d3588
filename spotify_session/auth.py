import logging
import time
import urllib.parse
from typing import Any, Callable, Dict, Iterable, Optional

from .errors import ConfigurationError, FatalRequestError, RenewalFailedError
from .executor import RefreshRequest, RequestExecutor, TokenExchangeRequest
from .pkce import mask_secret
from .settings import DEFAULT_REDIRECT_URI, SessionSettings
from .tokens import TokenSet

logger = logging.getLogger(__name__)


def check_spotify_credentials(settings: SessionSettings) -> Dict[str, Any]:
    """Validate the OAuth settings and return a structured status dict."""

    scopes = list(settings.scopes)
    if not settings.client_id:
        return {
            "ok": False,
            "client_id": "",
            "redirect_uri": settings.redirect_uri,
            "scopes": scopes,
            "message": (
                "Missing spotify_client_id in config.json.\n"
                "Create a Spotify app and copy its Client ID (see spotify_app_setup_instructions())."
            ),
        }

    if not settings.redirect_uri:
        return {
            "ok": False,
            "client_id": settings.client_id,
            "redirect_uri": "",
            "scopes": scopes,
            "message": (
                "Missing spotify_redirect_uri in config.json.\n"
                f"Recommended default: {DEFAULT_REDIRECT_URI}"
            ),
        }

    return {
        "ok": True,
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "scopes": scopes,
        "message": "Spotify credentials look OK.",
    }


def spotify_app_setup_instructions(*, redirect_uri: str = DEFAULT_REDIRECT_URI) -> str:
    """Return user-facing setup instructions for creating a Spotify Developer app."""

    redirect_uri = str(redirect_uri or "").strip() or DEFAULT_REDIRECT_URI
    return (
        "Spotify app setup:\n"
        "1) Go to https://developer.spotify.com/dashboard\n"
        "2) Create an app (or select an existing app)\n"
        f"3) Add this Redirect URI in the app settings: {redirect_uri}\n"
        "4) Copy the Client ID into config.json as spotify_client_id\n"
        "5) While the app is in development mode, add your account under 'Users and Access'\n\n"
        "Notes:\n"
        "- This project uses Authorization Code + PKCE (no client secret required).\n"
        "- Redirect URI must match *exactly* what you configure in the Spotify dashboard\n"
        "  (localhost and 127.0.0.1 are different origins).\n"
    )


def extract_code_from_redirect_url(redirect_url: str) -> Dict[str, str]:
    """Parse a redirect URL and return {"code": ..., "state": ...} (missing keys omitted)."""

    parsed = urllib.parse.urlparse(str(redirect_url or "").strip())
    qs = urllib.parse.parse_qs(parsed.query)
    out: Dict[str, str] = {}
    if qs.get("code"):
        out["code"] = str(qs["code"][0])
    if qs.get("state"):
        out["state"] = str(qs["state"][0])
    if qs.get("error"):
        out["error"] = str(qs["error"][0])
    return out


class SpotifyPKCEAuth:
    """Spotify OAuth (Authorization Code + PKCE) endpoints.

    Builds the authorize URL and talks to the token endpoint through the
    request executor, so token exchange and refresh get the same timeout and
    retry behaviour as every other call.
    """

    def __init__(
        self,
        settings: SessionSettings,
        executor: RequestExecutor,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.executor = executor
        self._clock = clock

    def _require_credentials(self) -> None:
        status = check_spotify_credentials(self.settings)
        if not status["ok"]:
            raise ConfigurationError(status["message"])

    def get_authorize_url(
        self,
        *,
        code_challenge: str,
        state: str,
        scopes: Optional[Iterable[str]] = None,
        show_dialog: bool = False,
    ) -> str:
        self._require_credentials()

        scope_list = list(scopes if scopes is not None else self.settings.scopes)
        scope_str = " ".join([str(s).strip() for s in scope_list if str(s).strip()])

        params: Dict[str, str] = {
            "client_id": self.settings.client_id,
            "response_type": "code",
            "redirect_uri": self.settings.redirect_uri,
            "code_challenge_method": "S256",
            "code_challenge": str(code_challenge),
            "state": str(state),
            "show_dialog": "true" if show_dialog else "false",
        }
        if scope_str:
            params["scope"] = scope_str

        return f"{self.executor.accounts_base_url}/authorize?{urllib.parse.urlencode(params)}"

    async def exchange_code_for_token(self, *, code: str, code_verifier: str) -> TokenSet:
        self._require_credentials()
        logger.info("Exchanging authorization code %s for tokens", mask_secret(code))

        payload = await self.executor.request_json(
            TokenExchangeRequest(
                code=code,
                verifier=code_verifier,
                redirect_uri=self.settings.redirect_uri,
                client_id=self.settings.client_id,
            )
        )
        token = TokenSet.from_token_response(
            payload,
            now=self._clock(),
            default_lifetime=self.settings.token_default_lifetime_seconds,
        )
        if not token.access_token:
            raise FatalRequestError("Spotify token exchange returned no access_token")

        missing = token.missing_scopes(self.settings.scopes) if token.scope is not None else []
        if missing:
            logger.warning("Spotify did not grant scopes: %s", ", ".join(missing))
        return token

    async def refresh_access_token(self, token: TokenSet) -> TokenSet:
        """Renew ``token``; Spotify usually omits refresh_token here, so the old one is kept."""

        if not token.refresh_token:
            raise RenewalFailedError("No refresh_token available")

        payload = await self.executor.request_json(
            RefreshRequest(refresh_token=token.refresh_token, client_id=self.settings.client_id)
        )
        renewed = TokenSet.from_token_response(
            payload,
            now=self._clock(),
            default_lifetime=self.settings.token_default_lifetime_seconds,
            previous_refresh_token=token.refresh_token,
        )
        if not renewed.access_token:
            raise FatalRequestError("Spotify token refresh returned no access_token")
        return renewed
