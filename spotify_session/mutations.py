import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set

import httpx

from .errors import MutationFailedError, RequestCancelledError
from .executor import Outcome, classify_status, error_from_response

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_DELAY_SECONDS = 1.0


class CountedStore(Protocol):
    """Downstream state holding a counted remote quantity per entity."""

    def get_count(self, target_id: str) -> int:
        ...

    def adjust_count(self, target_id: str, delta: int) -> int:
        ...


class CollectionCounts:
    """Locally visible playlists and their track totals.

    Counts are clamped at zero; ``adjust_count`` returns the resulting value
    so callers can tell how much of a delta actually landed.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Any]] = {}

    def set_collections(self, collections: Iterable[Dict[str, Any]]) -> None:
        fresh: Dict[str, Dict[str, Any]] = {}
        for c in collections or []:
            cid = str((c or {}).get("id") or "").strip()
            if not cid:
                continue
            entry = dict(c)
            entry["tracks_total"] = max(0, int(entry.get("tracks_total") or 0))
            fresh[cid] = entry
        self._collections = fresh

    def get(self, target_id: str) -> Optional[Dict[str, Any]]:
        entry = self._collections.get(target_id)
        return dict(entry) if entry is not None else None

    def all(self) -> List[Dict[str, Any]]:
        return [dict(c) for c in self._collections.values()]

    def update(self, target_id: str, **fields: Any) -> None:
        entry = self._collections.setdefault(target_id, {"id": target_id, "tracks_total": 0})
        entry.update(fields)
        entry["tracks_total"] = max(0, int(entry.get("tracks_total") or 0))

    def get_count(self, target_id: str) -> int:
        return int((self._collections.get(target_id) or {}).get("tracks_total") or 0)

    def adjust_count(self, target_id: str, delta: int) -> int:
        entry = self._collections.setdefault(target_id, {"id": target_id, "tracks_total": 0})
        entry["tracks_total"] = max(0, int(entry.get("tracks_total") or 0) + int(delta))
        return entry["tracks_total"]

    def clear(self) -> None:
        self._collections = {}


@dataclass(frozen=True)
class MutationIntent:
    target_id: str
    delta: int
    applied_at: float


class _InFlight:
    def __init__(self, key: str, task: "asyncio.Task[Any]"):
        self.key = key
        self.task = task
        self.interested = 0


class MutationCoordinator:
    """Optimistic counted mutations and per-key read deduplication.

    Holds no lock: a rollback reverses exactly the delta its own mutation
    applied, so any interleaving of mutations converges.
    """

    def __init__(
        self,
        counts: CountedStore,
        *,
        reconcile: Optional[Callable[[str], Awaitable[Any]]] = None,
        reconcile_delay: float = DEFAULT_RECONCILE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.counts = counts
        self.reconcile = reconcile
        self.reconcile_delay = float(reconcile_delay)
        self._sleep = sleep
        self._clock = clock
        self._intents: List[MutationIntent] = []
        self._in_flight: Dict[str, _InFlight] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    # -----------------
    # Optimistic counted mutation
    # -----------------

    async def mutate_counted(
        self,
        target_id: str,
        delta: int,
        perform_remote_call: Callable[[], Awaitable[Any]],
        *,
        reconcile: bool = True,
    ) -> Any:
        """Apply ``delta`` locally, run the remote call, roll back on failure.

        The remote call fails by raising, or by returning an ``httpx.Response``
        whose status is not a success.
        """

        before = self.counts.get_count(target_id)
        after = self.counts.adjust_count(target_id, delta)
        intent = MutationIntent(target_id=target_id, delta=after - before, applied_at=self._clock())
        self._intents.append(intent)
        logger.debug("Optimistic %+d on %s (%s -> %s)", intent.delta, target_id, before, after)

        try:
            result = await perform_remote_call()
            if isinstance(result, httpx.Response) and classify_status(result.status_code) is not Outcome.OK:
                raise error_from_response(result)
        except asyncio.CancelledError:
            self._rollback(intent)
            raise
        except Exception as e:
            self._rollback(intent)
            raise MutationFailedError(target_id, intent.delta, e) from e
        finally:
            self._intents.remove(intent)

        if reconcile and self.reconcile is not None:
            self._schedule_reconcile(target_id)
        return result

    def _rollback(self, intent: MutationIntent) -> None:
        restored = self.counts.adjust_count(intent.target_id, -intent.delta)
        logger.warning("Rolled back %+d on %s (now %s)", intent.delta, intent.target_id, restored)

    def _schedule_reconcile(self, target_id: str) -> None:
        task = asyncio.create_task(self._reconcile_later(target_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reconcile_later(self, target_id: str) -> None:
        if self.reconcile_delay > 0:
            await self._sleep(self.reconcile_delay)
        try:
            await self.reconcile(target_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The optimistic value stays in place.
            logger.warning("Background reconciliation of %s failed: %s", target_id, e)

    def pending_intents(self) -> List[MutationIntent]:
        return list(self._intents)

    async def wait_for_reconciliation(self) -> None:
        """Wait until every scheduled background reconciliation has finished."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -----------------
    # Read deduplication
    # -----------------

    async def deduped_fetch(
        self,
        key: str,
        perform_remote_call: Callable[[], Awaitable[Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Share one in-flight call per ``key`` among all concurrent callers.

        Setting ``cancel_event`` withdraws only this caller (it gets
        ``RequestCancelledError``); the shared call is cancelled once every
        interested caller has withdrawn.
        """

        entry = self._in_flight.get(key)
        if entry is None or entry.task.done():
            task = asyncio.create_task(perform_remote_call())
            entry = _InFlight(key, task)
            self._in_flight[key] = entry
            task.add_done_callback(lambda t, e=entry: self._settle(e))
        else:
            logger.debug("Reusing in-flight request for %s", key)

        entry.interested += 1
        withdrawn = False
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        try:
            waitables = {entry.task} if cancel_waiter is None else {entry.task, cancel_waiter}
            await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
            if not entry.task.done():
                withdrawn = True
                raise RequestCancelledError(f"Request for {key!r} cancelled by caller")
            if entry.task.cancelled():
                raise RequestCancelledError(f"Request for {key!r} was cancelled")
            return entry.task.result()
        except asyncio.CancelledError:
            withdrawn = not entry.task.done()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            entry.interested -= 1
            if withdrawn and entry.interested <= 0 and not entry.task.done():
                logger.debug("All callers withdrew from %s; cancelling request", key)
                entry.task.cancel()
                if self._in_flight.get(key) is entry:
                    del self._in_flight[key]

    def _settle(self, entry: _InFlight) -> None:
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]
        if not entry.task.cancelled():
            # Mark the exception as retrieved when every caller has gone.
            entry.task.exception()

    def in_flight_keys(self) -> List[str]:
        return sorted(self._in_flight)

    async def teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [e.task for e in self._in_flight.values()] + list(self._background)
        tasks = [t for t in tasks if t is not current]
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
