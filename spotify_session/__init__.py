"""Spotify session core (OAuth PKCE, tokens, retries, optimistic counts).

Typical use:

    settings = SessionSettings.from_config(load_config())
    async with SpotifySession(settings) as session:
        url = await session.start_authorization()
        ...
        await session.complete_from_redirect(pasted_url)
        client = SpotifyClient(session)
        playlists = await client.get_user_playlists()
"""

from .client import SpotifyClient
from .errors import (
    AuthorizationDeniedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ConfigurationError,
    FatalRequestError,
    LockContendedError,
    MutationFailedError,
    NotAuthenticatedError,
    RateLimitedError,
    RenewalFailedError,
    RequestCancelledError,
    RequestError,
    SessionError,
    StateMismatchError,
    TransientRequestError,
    user_message_for,
)
from .session import SpotifySession
from .settings import SessionSettings

__all__ = [
    "SpotifyClient",
    "SpotifySession",
    "SessionSettings",
    "SessionError",
    "ConfigurationError",
    "LockContendedError",
    "ChallengeNotFoundError",
    "ChallengeExpiredError",
    "StateMismatchError",
    "AuthorizationDeniedError",
    "NotAuthenticatedError",
    "RenewalFailedError",
    "RequestError",
    "TransientRequestError",
    "RateLimitedError",
    "FatalRequestError",
    "RequestCancelledError",
    "MutationFailedError",
    "user_message_for",
]
