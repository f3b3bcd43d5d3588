import asyncio
import time
import webbrowser
from typing import Any, Awaitable, Callable, Optional

import questionary

from spotify_session import (
    LockContendedError,
    SessionSettings,
    SpotifyClient,
    SpotifySession,
    user_message_for,
)
from spotify_session.auth import check_spotify_credentials, spotify_app_setup_instructions
from spotify_session.executor import RetryEvent
from utils.logger import log_error, log_info, log_success, log_warning


def _announce_retry(event: RetryEvent) -> None:
    log_warning(
        f"Spotify busy ({event.reason.value}); retrying in {event.delay_ms / 1000:.1f}s "
        f"(attempt {event.attempt + 1}/{event.max_attempts})"
    )


def _announce_termination(error: BaseException) -> None:
    log_warning(f"Spotify session ended: {user_message_for(error)}")


def run_with_session(config: dict, action: Callable[[SpotifySession], Awaitable[Any]]) -> Optional[Any]:
    """Run one menu action against a fresh session; stored challenge and tokens carry over."""

    async def runner():
        settings = SessionSettings.from_config(config)
        async with SpotifySession(settings) as session:
            session.events.add_listener(_announce_retry)
            session.add_termination_listener(_announce_termination)
            return await action(session)

    try:
        return asyncio.run(runner())
    except Exception as e:
        log_error(user_message_for(e))
        log_info(f"Details: {e}")
        return None


def _format_expiry(expires_at: Optional[float]) -> str:
    if not expires_at:
        return "unknown"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(float(expires_at)))


def spotify_setup_help(config: dict) -> None:
    settings = SessionSettings.from_config(config)
    creds = check_spotify_credentials(settings)
    log_info("\n" + "=" * 72)
    log_info("SPOTIFY WEB API SETUP")
    log_info("=" * 72)
    log_info(spotify_app_setup_instructions(redirect_uri=settings.redirect_uri))
    log_info("Current config status:")
    log_info(f"- spotify_client_id: {'SET' if settings.client_id else 'NOT SET'}")
    log_info(f"- spotify_redirect_uri: {settings.redirect_uri}")
    log_info(f"- spotify_scopes: {', '.join(settings.scopes)}")
    if creds["ok"]:
        log_info(creds["message"])
    else:
        log_warning(creds["message"])
    log_info("=" * 72 + "\n")


def start_authorization(config: dict) -> None:
    """Begin a PKCE login and show (optionally open) the authorize URL."""

    async def action(session: SpotifySession) -> Optional[str]:
        try:
            return await session.start_authorization(show_dialog=True)
        except LockContendedError as e:
            log_warning(e.user_message)
            if not await questionary.confirm("Abandon the pending login and start over?", default=False).ask_async():
                return None
            session.challenges.cancel()
            return await session.start_authorization(show_dialog=True)

    auth_url = run_with_session(config, action)
    if not auth_url:
        return

    log_info("\n" + "=" * 72)
    log_info("SPOTIFY AUTHENTICATION")
    log_info("=" * 72)
    log_info("1) Log in to Spotify in your browser and approve the requested permissions.")
    log_info("2) Spotify redirects you to your redirect URI.")
    log_info("3) Copy the FULL redirect URL and choose 'Complete authorization'.")
    log_info("")
    log_info(f"Authorize URL:\n{auth_url}")
    log_info("=" * 72)

    if questionary.confirm("Open the authorize URL in your default browser?", default=True).ask():
        try:
            webbrowser.open(auth_url)
        except webbrowser.Error as e:
            log_warning(f"Could not open a browser: {e}")


def complete_authorization(config: dict) -> None:
    pasted = questionary.text("Paste the full redirect URL (it contains ?code=...&state=...):").ask()
    pasted = (pasted or "").strip()
    if not pasted:
        log_warning("No redirect URL provided.")
        return

    async def action(session: SpotifySession) -> bool:
        await session.complete_from_redirect(pasted)
        status = session.token_status()
        log_success(f"Spotify authentication successful. Token expires at: {_format_expiry(status['expires_at'])}")
        if not config.get("spotify_cache_tokens", True):
            log_warning("spotify_cache_tokens is disabled; the token is forgotten when this action ends.")
        return True

    run_with_session(config, action)


def show_token_status(config: dict) -> None:
    async def action(session: SpotifySession) -> None:
        status = session.token_status()
        if status["state"] == "unauthenticated":
            log_info("No Spotify token stored.")
        else:
            log_info(
                f"Token state: {status['state']} | Expires at: {_format_expiry(status['expires_at'])} "
                f"| Refresh token: {'YES' if status['has_refresh_token'] else 'NO'}"
            )
            if status["scope"]:
                log_info(f"Granted scopes: {status['scope']}")
        if status["authorization_pending"]:
            log_info("A login is pending; complete it with the redirect URL.")

    run_with_session(config, action)


def list_playlists(config: dict) -> None:
    async def action(session: SpotifySession) -> None:
        client = SpotifyClient(session)
        me = await client.me()
        display = (me.get("display_name") or me.get("id") or "").strip()
        if display:
            log_info(f"Signed in as: {display}")

        playlists = await client.get_user_playlists()
        if not playlists:
            log_info("No playlists found for this account.")
            return
        for p in playlists:
            owner = f" - {p['owner']}" if p.get("owner") else ""
            log_info(f"  {p['name']} ({p['tracks_total']} tracks){owner}")

    run_with_session(config, action)


def add_track_to_playlist(config: dict) -> None:
    async def action(session: SpotifySession) -> None:
        client = SpotifyClient(session)
        playlists = await client.get_user_playlists()
        if not playlists:
            log_info("No playlists found for this account.")
            return

        # Inside the event loop: prompts must use ask_async().
        playlist_id = await questionary.select(
            "Add to which playlist?",
            choices=[questionary.Choice(title=f"{p['name']} ({p['tracks_total']} tracks)", value=p["id"]) for p in playlists],
        ).ask_async()
        if not playlist_id:
            return

        query = await questionary.text("Search for a track:").ask_async()
        results = await client.search_tracks(query or "", limit=10)
        tracks = ((results.get("tracks") or {}).get("items")) or []
        if not tracks:
            log_info("No tracks found.")
            return

        choices = []
        for t in tracks:
            artists = ", ".join(a.get("name", "") for a in t.get("artists") or [])
            choices.append(questionary.Choice(title=f"{artists} - {t.get('name')}", value=t.get("id")))
        track_id = await questionary.select("Pick a track:", choices=choices).ask_async()
        if not track_id:
            return

        await client.add_to_playlist(playlist_id, track_id)
        log_success(f"Added. Playlist now shows {client.playlists.get_count(playlist_id)} tracks.")
        await session.coordinator.wait_for_reconciliation()
        log_info(f"Spotify reports {client.playlists.get_count(playlist_id)} tracks.")

    run_with_session(config, action)


def logout(config: dict) -> None:
    async def action(session: SpotifySession) -> None:
        await session.logout()
        log_success("Logged out of Spotify.")

    run_with_session(config, action)


def session_menu(config: dict) -> None:
    """Spotify account menu: login, token status, playlists, logout."""

    while True:
        choice = questionary.select(
            "🎧 Spotify - What would you like to do?",
            choices=[
                "Start Spotify authorization",
                "Complete authorization (paste redirect URL)",
                "Show token status",
                "List playlists",
                "Add track to playlist",
                "Logout",
                "Spotify setup help",
                "Back",
            ],
        ).ask()

        if choice == "Start Spotify authorization":
            start_authorization(config)
        elif choice == "Complete authorization (paste redirect URL)":
            complete_authorization(config)
        elif choice == "Show token status":
            show_token_status(config)
        elif choice == "List playlists":
            list_playlists(config)
        elif choice == "Add track to playlist":
            add_track_to_playlist(config)
        elif choice == "Logout":
            logout(config)
        elif choice == "Spotify setup help":
            spotify_setup_help(config)
        else:
            break
