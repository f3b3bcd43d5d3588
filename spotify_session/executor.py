"""Resilient execution of outbound Spotify calls.

Every call gets a hard per-attempt timeout, a status classification and a
bounded exponential backoff that honours ``Retry-After``:

- 429: rate limited, retried after ``max(Retry-After, base * 2^(n-1))``
- 408 / 5xx / transport errors / timeouts: transient, retried with backoff
- any other 4xx: fatal, returned to the caller immediately

The executor never repairs authentication; a 401 is just a fatal response
that the session layer decides what to do with.
"""

import asyncio
import email.utils
import enum
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from .errors import (
    FatalRequestError,
    RateLimitedError,
    RequestError,
    TransientRequestError,
    extract_error_message,
)

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 1000


class Outcome(enum.Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_status(status_code: int) -> Outcome:
    if status_code == 429:
        return Outcome.RATE_LIMITED
    if status_code == 408 or status_code >= 500:
        return Outcome.TRANSIENT
    if status_code >= 400:
        return Outcome.FATAL
    return Outcome.OK


def parse_retry_after(headers: Mapping[str, str], *, now: Optional[float] = None) -> Optional[int]:
    """Return the server's Retry-After hint in milliseconds (delta-seconds or HTTP-date)."""

    raw = None
    for key, value in (headers or {}).items():
        if str(key).lower() == "retry-after":
            raw = str(value).strip()
            break
    if not raw:
        return None

    try:
        millis = float(raw) * 1000
    except ValueError:
        millis = None
    if millis is not None:
        # Non-finite hints carry no usable delay.
        return max(0, int(millis)) if math.isfinite(millis) else None

    try:
        when = email.utils.parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    now_ts = time.time() if now is None else float(now)
    return max(0, int((when.timestamp() - now_ts) * 1000))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BACKOFF_BASE_MS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def delay_for(self, attempt: int, server_hint_ms: Optional[int] = None) -> int:
        backoff = int(self.base_delay_ms) * (2 ** max(0, int(attempt) - 1))
        return max(int(server_hint_ms or 0), backoff)


# -----------------
# Retry event channel
# -----------------


@dataclass(frozen=True)
class RetryEvent:
    """Published before the executor sleeps ahead of another attempt."""

    attempt: int
    max_attempts: int
    delay_ms: int
    reason: Outcome
    status_code: Optional[int] = None
    error: Optional[str] = None
    description: str = ""


class RetrySubscription:
    """Async iterator over retry events published after ``subscribe()``."""

    def __init__(self, channel: "RetryEvents"):
        self._channel = channel
        self._queue: "asyncio.Queue[RetryEvent]" = asyncio.Queue()

    def _push(self, event: RetryEvent) -> None:
        self._queue.put_nowait(event)

    def pending(self) -> List[RetryEvent]:
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self._channel._unsubscribe(self)

    def __aiter__(self) -> "RetrySubscription":
        return self

    async def __anext__(self) -> RetryEvent:
        return await self._queue.get()


class RetryEvents:
    def __init__(self) -> None:
        self._subscriptions: List[RetrySubscription] = []
        self._listeners: List[Callable[[RetryEvent], None]] = []

    def subscribe(self) -> RetrySubscription:
        subscription = RetrySubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def add_listener(self, listener: Callable[[RetryEvent], None]) -> None:
        self._listeners.append(listener)

    def _unsubscribe(self, subscription: RetrySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: RetryEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription._push(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Retry event listener failed")


# -----------------
# Request variants
# -----------------


@dataclass(frozen=True)
class TokenExchangeRequest:
    code: str
    verifier: str
    redirect_uri: str
    client_id: str

    def build(self, *, accounts_base_url: str, api_base_url: str, token: Optional[str] = None) -> Dict[str, Any]:
        return {
            "method": "POST",
            "url": f"{accounts_base_url}/api/token",
            "data": {
                "grant_type": "authorization_code",
                "code": self.code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "code_verifier": self.verifier,
            },
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
        }


@dataclass(frozen=True)
class RefreshRequest:
    refresh_token: str
    client_id: str

    def build(self, *, accounts_base_url: str, api_base_url: str, token: Optional[str] = None) -> Dict[str, Any]:
        return {
            "method": "POST",
            "url": f"{accounts_base_url}/api/token",
            "data": {
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
            },
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
        }


@dataclass(frozen=True)
class ResourceRequest:
    method: str
    path: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    def build(self, *, accounts_base_url: str, api_base_url: str, token: Optional[str] = None) -> Dict[str, Any]:
        url = self.path if self.path.startswith("http") else f"{api_base_url}{self.path}"
        headers = {"Accept": "application/json", **self.headers}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        kwargs: Dict[str, Any] = {"method": self.method.upper(), "url": url, "headers": headers}
        if self.params:
            kwargs["params"] = {k: str(v) for k, v in self.params.items() if v is not None}
        if self.json is not None:
            kwargs["json"] = self.json
        return kwargs


RequestVariant = Union[TokenExchangeRequest, RefreshRequest, ResourceRequest]


# -----------------
# Executor
# -----------------


def error_from_response(response: httpx.Response) -> RequestError:
    status = response.status_code
    body = response.text
    message = extract_error_message(body, status)
    common = {"status_code": status, "headers": dict(response.headers), "body": body}

    outcome = classify_status(status)
    if outcome is Outcome.RATE_LIMITED:
        return RateLimitedError(message, retry_after_ms=parse_retry_after(response.headers), **common)
    if outcome is Outcome.TRANSIENT:
        return TransientRequestError(message, **common)
    return FatalRequestError(message, **common)


def raise_for_outcome(response: httpx.Response) -> httpx.Response:
    if classify_status(response.status_code) is Outcome.OK:
        return response
    raise error_from_response(response)


def decode_json(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise FatalRequestError(
            f"Spotify response was not JSON (status {response.status_code})",
            status_code=response.status_code,
            body=response.text,
        ) from e
    if isinstance(payload, dict):
        return payload
    return {"items": payload}


class RequestExecutor:
    """Runs one logical call with timeout, classification and bounded retries."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        policy: Optional[RetryPolicy] = None,
        events: Optional[RetryEvents] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        accounts_base_url: str = SPOTIFY_ACCOUNTS_BASE_URL,
        api_base_url: str = SPOTIFY_API_BASE_URL,
    ):
        self.client = client
        self.policy = policy or RetryPolicy()
        self.events = events or RetryEvents()
        self._sleep = sleep
        self.accounts_base_url = accounts_base_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")

    async def execute(
        self,
        call: Callable[[], Awaitable[httpx.Response]],
        *,
        description: str = "request",
    ) -> httpx.Response:
        """Run ``call`` until it yields an OK/fatal response or attempts run out.

        Returns the last response when the final attempt produced one; raises
        ``TransientRequestError`` when the final attempt failed in transport.
        """

        max_attempts = max(1, int(self.policy.max_attempts))
        attempt = 0
        while True:
            attempt += 1
            response: Optional[httpx.Response] = None
            failure: Optional[TransientRequestError] = None
            hint_ms: Optional[int] = None

            try:
                response = await asyncio.wait_for(call(), timeout=self.policy.timeout_seconds)
            except asyncio.TimeoutError:
                failure = TransientRequestError(
                    f"{description} timed out after {self.policy.timeout_seconds}s"
                )
                outcome = Outcome.TRANSIENT
            except httpx.TransportError as e:
                failure = TransientRequestError(f"{description} failed: {e}")
                failure.__cause__ = e
                outcome = Outcome.TRANSIENT
            else:
                outcome = classify_status(response.status_code)
                if outcome in (Outcome.OK, Outcome.FATAL):
                    return response
                if outcome is Outcome.RATE_LIMITED:
                    hint_ms = parse_retry_after(response.headers)

            if attempt >= max_attempts:
                logger.warning("%s gave up after %s attempts (%s)", description, attempt, outcome.value)
                if failure is not None:
                    raise failure
                return response

            delay_ms = self.policy.delay_for(attempt, hint_ms)
            status = response.status_code if response is not None else None
            logger.warning(
                "%s: %s (status %s). Retrying after %sms (attempt %s/%s)",
                description,
                outcome.value,
                status,
                delay_ms,
                attempt,
                max_attempts,
            )
            self.events.publish(
                RetryEvent(
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_ms=delay_ms,
                    reason=outcome,
                    status_code=status,
                    error=str(failure) if failure is not None else None,
                    description=description,
                )
            )
            await self._sleep(delay_ms / 1000.0)

    async def send(self, request: RequestVariant, *, token: Optional[str] = None) -> httpx.Response:
        kwargs = request.build(
            accounts_base_url=self.accounts_base_url,
            api_base_url=self.api_base_url,
            token=token,
        )
        description = f"{kwargs['method']} {kwargs['url']}"
        return await self.execute(lambda: self.client.request(**kwargs), description=description)

    async def request_json(self, request: RequestVariant, *, token: Optional[str] = None) -> Dict[str, Any]:
        response = await self.send(request, token=token)
        raise_for_outcome(response)
        return decode_json(response)
