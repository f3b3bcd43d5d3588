"""Shared test doubles: a controllable clock, a sleep that never waits, and a scripted Spotify."""

import json
import sys
import urllib.parse
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import httpx

from spotify_session.settings import SessionSettings

ACCOUNTS = "https://accounts.test"
API = "https://api.test/v1"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class RecordingSleep:
    """Records requested delays (seconds) and returns immediately."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_settings(**overrides: Any) -> SessionSettings:
    values: Dict[str, Any] = {
        "client_id": "test-client",
        "accounts_base_url": ACCOUNTS,
        "api_base_url": API,
        "reconcile_delay_seconds": 0.0,
    }
    values.update(overrides)
    return SessionSettings(**values)


def json_response(status: int, payload: Any = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    if payload is None:
        return httpx.Response(status, headers=headers)
    return httpx.Response(status, content=json.dumps(payload).encode("utf-8"),
                          headers={"Content-Type": "application/json", **(headers or {})})


def form_fields(request: httpx.Request) -> Dict[str, str]:
    parsed = urllib.parse.parse_qs(request.content.decode("utf-8"))
    return {k: v[0] for k, v in parsed.items()}


class FakeSpotify:
    """Routes requests to per-(method, path) handlers and records what was sent."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]] = {}
        self.token_counter = 0
        self.valid_tokens = set()

    def route(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method.upper(), path)] = handler

    def issue_token(self, *, refresh_token: Optional[str] = "refresh-1", expires_in: int = 3600,
                    scope: str = "playlist-read-private") -> Dict[str, Any]:
        self.token_counter += 1
        access = f"access-{self.token_counter}"
        self.valid_tokens.add(access)
        payload: Dict[str, Any] = {
            "access_token": access,
            "token_type": "Bearer",
            "expires_in": expires_in,
            "scope": scope,
        }
        if refresh_token:
            payload["refresh_token"] = refresh_token
        return payload

    def bearer(self, request: httpx.Request) -> str:
        return request.headers.get("Authorization", "").replace("Bearer ", "", 1)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return json_response(404, {"error": {"status": 404, "message": "Not found"}})
        return route(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())
