import asyncio
import base64
import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

from .errors import (
    AuthorizationDeniedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    LockContendedError,
    StateMismatchError,
)
from .storage import PKCE_KEY, KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL_SECONDS = 600
VERIFIER_LENGTH = 128
STATE_LENGTH = 16

# RFC 7636 "unreserved" characters.
UNRESERVED_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
_UNRESERVED_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")


def _base64url_no_pad(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def code_challenge_from_verifier(verifier: str) -> str:
    """Compute PKCE S256 code_challenge from code_verifier."""

    digest = hashlib.sha256((verifier or "").encode("utf-8")).digest()
    return _base64url_no_pad(digest)


def _random_unreserved(length: int) -> str:
    return "".join(secrets.choice(UNRESERVED_ALPHABET) for _ in range(length))


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    if not 43 <= length <= 128:
        raise ValueError("PKCE verifier length must be between 43 and 128")
    return _random_unreserved(length)


def generate_state(length: int = STATE_LENGTH) -> str:
    return _random_unreserved(length)


def validate_state(state: str) -> bool:
    return 8 <= len(state or "") <= 128 and bool(_UNRESERVED_RE.match(state))


def validate_verifier(verifier: str) -> bool:
    return 43 <= len(verifier or "") <= 128 and bool(_UNRESERVED_RE.match(verifier))


def mask_secret(value: Optional[str], visible: int = 8) -> str:
    if not value:
        return "<none>"
    return f"{value[:visible]}..."


@dataclass(frozen=True)
class PKCEChallenge:
    """One outstanding authorization attempt."""

    verifier: str
    challenge: str
    state: str
    created_at: float
    lock_expires_at: Optional[float] = None

    def age(self, now: float) -> float:
        return float(now) - float(self.created_at)

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return self.age(now) >= float(ttl_seconds)

    def lock_held(self, now: float) -> bool:
        return self.lock_expires_at is not None and float(now) < float(self.lock_expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verifier": self.verifier,
            "challenge": self.challenge,
            "state": self.state,
            "created_at": self.created_at,
            "lock_expires_at": self.lock_expires_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PKCEChallenge":
        lock = data.get("lock_expires_at")
        return PKCEChallenge(
            verifier=str(data.get("verifier", "")),
            challenge=str(data.get("challenge", "")),
            state=str(data.get("state", "")),
            created_at=float(data.get("created_at", 0)),
            lock_expires_at=float(lock) if lock is not None else None,
        )


class ChallengeStore:
    """Persists the single outstanding PKCE challenge and its single-flight lease.

    The lease is an expiry timestamp stored with the challenge and checked on
    every ``begin()``; nothing depends on a timer firing. A ``begin()`` while a
    lease is live raises ``LockContendedError``. Once the lease lapses (or
    ``release_lock()`` drops it) a new ``begin()`` supersedes the old challenge,
    making its verifier unrecoverable.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        ttl_seconds: float = DEFAULT_CHALLENGE_TTL_SECONDS,
        lock_lease_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds <= 0:
            raise ValueError("PKCE challenge TTL must be positive")
        self.storage = storage
        self.ttl_seconds = float(ttl_seconds)
        self.lock_lease_seconds = float(lock_lease_seconds if lock_lease_seconds is not None else ttl_seconds)
        self._clock = clock

    def init(self) -> None:
        """Drop a persisted challenge that expired while the process was down."""

        current = self._load()
        if current is not None and current.is_expired(self._clock(), self.ttl_seconds):
            logger.info("Discarding expired PKCE challenge left over from a previous run")
            self.storage.delete(PKCE_KEY)

    def reset(self) -> None:
        self.storage.delete(PKCE_KEY)

    def _load(self) -> Optional[PKCEChallenge]:
        data = self.storage.load(PKCE_KEY)
        if not data:
            return None
        try:
            return PKCEChallenge.from_dict(data)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed PKCE record")
            self.storage.delete(PKCE_KEY)
            return None

    def peek(self) -> Optional[PKCEChallenge]:
        current = self._load()
        if current is None or not current.challenge:
            return None
        if current.is_expired(self._clock(), self.ttl_seconds):
            return None
        return current

    async def begin(self) -> PKCEChallenge:
        now = self._clock()
        current = self._load()
        if current is not None and current.lock_held(now):
            logger.warning(
                "PKCE lock already held (age %ss)", int(current.age(now))
            )
            raise LockContendedError("Another Spotify authorization attempt is in progress")

        verifier = generate_code_verifier()
        state = generate_state()

        # The lease is stored before the first suspension point.
        reserved = PKCEChallenge(
            verifier=verifier,
            challenge="",
            state=state,
            created_at=now,
            lock_expires_at=now + self.lock_lease_seconds,
        )
        self.storage.save(PKCE_KEY, reserved.to_dict())

        try:
            challenge = await asyncio.to_thread(code_challenge_from_verifier, verifier)
        except BaseException:
            self.storage.delete(PKCE_KEY)
            raise

        created = replace(reserved, challenge=challenge)
        self.storage.save(PKCE_KEY, created.to_dict())
        logger.info("PKCE challenge created (state=%s)", mask_secret(state))
        return created

    def validate_and_consume(self, returned_state: Optional[str], returned_code: Optional[str]) -> str:
        """Check the redirect parameters against the stored challenge and return its verifier.

        The stored challenge is gone after this call whatever the outcome:
        a successful exchange may use the verifier exactly once, and every
        failure is terminal for the attempt.
        """

        current = self._load()
        if current is None or not current.challenge:
            raise ChallengeNotFoundError("No pending PKCE challenge")

        self.storage.delete(PKCE_KEY)

        if current.is_expired(self._clock(), self.ttl_seconds):
            logger.warning("PKCE challenge expired (state=%s)", mask_secret(current.state))
            raise ChallengeExpiredError("PKCE challenge expired")

        if not returned_state or not secrets.compare_digest(str(returned_state), current.state):
            logger.error(
                "PKCE state mismatch: returned=%s stored=%s",
                mask_secret(returned_state),
                mask_secret(current.state),
            )
            raise StateMismatchError("Returned state does not match the stored challenge")

        if not returned_code:
            raise AuthorizationDeniedError("missing_code")

        logger.info("PKCE challenge consumed (state=%s)", mask_secret(current.state))
        return current.verifier

    def release_lock(self) -> None:
        current = self._load()
        if current is None or current.lock_expires_at is None:
            return
        if not current.challenge or current.is_expired(self._clock(), self.ttl_seconds):
            self.storage.delete(PKCE_KEY)
            return
        self.storage.save(PKCE_KEY, replace(current, lock_expires_at=None).to_dict())

    def cancel(self) -> None:
        self.storage.delete(PKCE_KEY)
