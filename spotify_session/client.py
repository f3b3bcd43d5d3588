import asyncio
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

from .mutations import CollectionCounts
from .session import SpotifySession

logger = logging.getLogger(__name__)


def _quote_id(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


class SpotifyClient:
    """Spotify Web API calls used by the application, routed through the session.

    Design goals:
    - every call goes through the session's retry + token handling
    - playlist track reads are deduplicated per playlist id
    - adding a track bumps the playlist's visible count optimistically
    """

    def __init__(self, session: SpotifySession):
        self.session = session
        if self.session.coordinator.reconcile is None:
            self.session.coordinator.reconcile = self.refresh_playlist_count

    @property
    def playlists(self) -> Optional[CollectionCounts]:
        counts = self.session.counts
        return counts if isinstance(counts, CollectionCounts) else None

    # -----------------
    # Convenience endpoints
    # -----------------

    async def me(self) -> Dict[str, Any]:
        return await self.session.request("/me")

    async def search_tracks(
        self,
        query: str,
        *,
        search_type: str = "track",
        limit: int = 20,
        offset: int = 0,
        market: Optional[str] = None,
    ) -> Dict[str, Any]:
        query = (query or "").strip()
        if not query:
            return {"tracks": {"items": [], "total": 0, "limit": limit, "offset": offset}}
        return await self.session.request(
            "/search",
            params={"q": query, "type": search_type, "limit": limit, "offset": offset, "market": market},
        )

    async def current_user_playlists(self, *, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        page = await self.session.request("/me/playlists", params={"limit": limit, "offset": offset})
        if self.playlists is not None:
            for p in page.get("items") or []:
                if isinstance(p, dict) and p.get("id"):
                    summary = self._summarize_playlist(p)
                    self.playlists.update(summary["id"], **summary)
        return page

    async def playlist_items(self, playlist_id: str, *, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        # Without a market parameter, region-unavailable tracks come back as null.
        return await self.session.request(
            f"/playlists/{_quote_id(playlist_id)}/tracks",
            params={"limit": limit, "offset": offset},
        )

    async def _paginate(self, path: str, *, params: Optional[Dict[str, Any]] = None, page_key: str = "items") -> List[Dict[str, Any]]:
        """Fetch all pages for an endpoint that returns {items, total, limit, offset}."""

        out: List[Dict[str, Any]] = []
        limit = int((params or {}).get("limit") or 50)
        offset = int((params or {}).get("offset") or 0)

        while True:
            page = await self.session.request(path, params={**(params or {}), "limit": limit, "offset": offset})
            items = page.get(page_key) or []
            if isinstance(items, list):
                out.extend([x for x in items if isinstance(x, dict)])

            total = page.get("total")
            if total is None:
                break

            got = len(items) if isinstance(items, list) else 0
            offset += got
            if got <= 0 or offset >= int(total):
                break

        return out

    # -----------------
    # Playlists
    # -----------------

    async def get_user_playlists(self, *, limit: int = 50) -> List[Dict[str, Any]]:
        """Return every playlist of the current user and refresh the visible counts."""

        raw = await self._paginate("/me/playlists", params={"limit": min(50, int(limit))})
        playlists = [self._summarize_playlist(p) for p in raw]
        playlists = [p for p in playlists if p["id"]]
        if self.playlists is not None:
            self.playlists.set_collections(playlists)
        logger.info("Fetched %s playlists", len(playlists))
        return playlists

    async def refresh_playlist_count(self, playlist_id: str) -> int:
        payload = await self.session.request(f"/playlists/{_quote_id(playlist_id)}", params={"fields": "tracks.total"})
        total = int(((payload.get("tracks") or {}).get("total")) or 0)
        if self.playlists is not None:
            self.playlists.update(playlist_id, tracks_total=total)
        return total

    async def get_playlist_tracks(
        self,
        playlist_id: str,
        *,
        limit: int = 50,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Dict[str, Any]]:
        """First page of a playlist's tracks; concurrent calls for one playlist share a request."""

        async def fetch() -> List[Dict[str, Any]]:
            page = await self.playlist_items(playlist_id, limit=limit, offset=0)
            items = page.get("items") if isinstance(page.get("items"), list) else []
            tracks = [self._normalize_item(item, idx) for idx, item in enumerate(items)]
            logger.info("Fetched %s tracks for playlist %s", len(tracks), playlist_id)
            return tracks

        return await self.session.deduped_fetch(f"playlist-tracks:{playlist_id}", fetch, cancel_event)

    async def add_to_playlist(self, playlist_id: str, track_id: str) -> Dict[str, Any]:
        """Add one track; the playlist's visible count goes up before Spotify answers."""

        uri = track_id if track_id.startswith("spotify:") else f"spotify:track:{track_id}"

        async def add() -> Dict[str, Any]:
            return await self.session.request(
                f"/playlists/{_quote_id(playlist_id)}/tracks",
                method="POST",
                json={"uris": [uri]},
            )

        return await self.session.mutate_counted(playlist_id, 1, add)

    # -----------------
    # Normalization
    # -----------------

    @staticmethod
    def _summarize_playlist(p: Dict[str, Any]) -> Dict[str, Any]:
        owner = p.get("owner") if isinstance(p.get("owner"), dict) else {}
        images = p.get("images") if isinstance(p.get("images"), list) else []
        return {
            "id": str(p.get("id") or "").strip(),
            "name": p.get("name") or "(unnamed)",
            "tracks_total": int(((p.get("tracks") or {}).get("total")) or 0),
            "owner": owner.get("display_name") or owner.get("id"),
            "public": p.get("public"),
            "collaborative": bool(p.get("collaborative")),
            "image": (images[0] or {}).get("url") if images else None,
        }

    @staticmethod
    def _normalize_item(item: Any, idx: int) -> Dict[str, Any]:
        """Turn a playlist item into a displayable track dict.

        Null tracks (region mismatch, removed content) become placeholders
        instead of being dropped so positions stay stable.
        """

        item = item if isinstance(item, dict) else {}
        track = item.get("track")
        if not isinstance(track, dict):
            return {
                "id": f"missing-{idx}",
                "name": "(unavailable track)",
                "uri": item.get("uri") or "",
                "artists": [],
                "album": {"name": "", "images": []},
                "meta": {"missing": True},
            }

        artists = track.get("artists") if isinstance(track.get("artists"), list) else []
        album = track.get("album") if isinstance(track.get("album"), dict) else {}
        return {
            "id": track.get("id") or track.get("uri") or f"local-{idx}",
            "name": track.get("name") or "(unknown title)",
            "uri": track.get("uri") or "",
            "duration_ms": track.get("duration_ms") or 0,
            "artists": [{"name": (a or {}).get("name") or ""} for a in artists if isinstance(a, dict)],
            "album": {
                "name": album.get("name") or "",
                "images": album.get("images") if isinstance(album.get("images"), list) else [],
            },
            "meta": {
                "is_episode": track.get("type") == "episode",
                "is_local": bool(item.get("is_local") or track.get("is_local")),
            },
        }
