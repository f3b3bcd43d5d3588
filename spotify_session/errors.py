"""Typed failures raised by the session core.

Every error carries a stable ``code`` and a ``user_message`` that the CLI (or
any other consumer) can show verbatim. ``user_message_for`` also accepts
arbitrary exceptions so callers never need to special-case foreign errors.
"""

import json
from typing import Any, Dict, Mapping, Optional


class SessionError(RuntimeError):
    """Base class for all session-core failures."""

    code = "SESSION_ERROR"
    default_message = "Something went wrong talking to Spotify. Please try again."

    @property
    def user_message(self) -> str:
        return self.default_message


# -----------------
# Authorization flow
# -----------------


class ConfigurationError(SessionError):
    code = "CONFIGURATION_ERROR"
    default_message = "Spotify is not configured. Set spotify_client_id and spotify_redirect_uri in config.json."


class LockContendedError(SessionError):
    code = "LOCK_CONTENDED"
    default_message = "A Spotify login is already in progress. Finish it or wait a few minutes before retrying."


class ChallengeNotFoundError(SessionError):
    code = "CHALLENGE_NOT_FOUND"
    default_message = "No pending Spotify login was found. Please start the login again."


class ChallengeExpiredError(SessionError):
    code = "CHALLENGE_EXPIRED"
    default_message = "The Spotify login took too long and expired. Please start the login again."


class StateMismatchError(SessionError):
    code = "STATE_MISMATCH"
    default_message = (
        "The Spotify login response did not match the most recent login attempt. "
        "For safety it was rejected; please start the login again."
    )


class AuthorizationDeniedError(SessionError):
    code = "AUTHORIZATION_DENIED"

    def __init__(self, reason: str):
        super().__init__(f"Spotify authorization error: {reason}")
        self.reason = reason

    @property
    def user_message(self) -> str:
        if self.reason == "access_denied":
            return "Spotify access was denied. Approve the requested permissions to continue."
        return f"Spotify refused the login ({self.reason}). Please start the login again."


# -----------------
# Token flow
# -----------------


class NotAuthenticatedError(SessionError):
    code = "NOT_AUTHENTICATED"
    default_message = "You are not signed in to Spotify. Please log in."


class RenewalFailedError(SessionError):
    code = "RENEWAL_FAILED"
    default_message = "Your Spotify session expired and could not be renewed. Please log in again."


# -----------------
# Request flow
# -----------------


class RequestError(SessionError):
    """An outbound call that did not produce a usable response."""

    code = "REQUEST_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.headers: Dict[str, str] = dict(headers or {})
        self.body = body


class TransientRequestError(RequestError):
    """Retriable failure (network, timeout, 408, 5xx) surfaced after exhaustion."""

    code = "TRANSIENT"
    default_message = "Spotify is having temporary problems. Please wait a moment and try again."


class RateLimitedError(TransientRequestError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after_ms: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms

    @property
    def user_message(self) -> str:
        if self.retry_after_ms:
            seconds = max(1, int(round(self.retry_after_ms / 1000.0)))
            return f"Too many requests to Spotify. Please wait {seconds}s and try again."
        return "Too many requests to Spotify. Please wait a little and try again."


class FatalRequestError(RequestError):
    """Non-retriable client error (4xx other than 408/429)."""

    code = "FATAL"

    @property
    def user_message(self) -> str:
        status = self.status_code
        if status == 401:
            return "Your Spotify access token is no longer valid. Please log in again."
        if status == 403:
            text = f"{self.message} {self.body or ''}".lower()
            if "scope" in text or "permission" in text:
                return "Spotify denied access: missing permissions. Log in again and approve all requested scopes."
            return "Spotify denied access to this resource. Check that your account is allowed to use this app."
        if status == 404:
            return "The requested Spotify resource was not found."
        if status == 400:
            return f"Spotify rejected the request: {self.message}"
        return f"Spotify rejected the request (HTTP {status}): {self.message}"


class RequestCancelledError(SessionError):
    code = "CANCELLED"
    default_message = "The request was cancelled."


# -----------------
# Mutation flow
# -----------------


class MutationFailedError(SessionError):
    """Optimistic change that was rolled back after the remote call failed."""

    code = "MUTATION_FAILED"

    def __init__(self, target_id: str, delta: int, cause: BaseException):
        super().__init__(f"Mutation on {target_id!r} failed and was rolled back ({delta:+d}): {cause}")
        self.target_id = target_id
        self.delta = delta
        self.cause = cause

    @property
    def user_message(self) -> str:
        inner = user_message_for(self.cause)
        return f"The change could not be saved and was undone. {inner}"


def user_message_for(error: BaseException) -> str:
    """Return an actionable, user-facing message for any exception."""

    if isinstance(error, SessionError):
        return error.user_message
    return "An unexpected error occurred. Please try again."


def extract_error_message(body: Optional[str], status_code: int) -> str:
    """Pull the human-readable message out of a Spotify JSON error body.

    Resource endpoints answer ``{"error": {"status": ..., "message": ...}}``,
    the accounts service answers ``{"error": ..., "error_description": ...}``.
    """

    fallback = _status_text(status_code)
    if not body:
        return fallback

    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return fallback

    if not isinstance(payload, dict):
        return fallback

    err = payload.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if payload.get("error_description"):
        return str(payload["error_description"])
    if isinstance(err, str) and err:
        return err
    if payload.get("message"):
        return str(payload["message"])
    return fallback


def _status_text(status_code: int) -> str:
    if status_code == 401:
        return "Unauthorized"
    if status_code == 403:
        return "Forbidden"
    if status_code == 404:
        return "Not found"
    if status_code == 408:
        return "Request timeout"
    if status_code == 429:
        return "Rate limited"
    if status_code >= 500:
        return "Spotify service error"
    return f"HTTP {status_code}"
