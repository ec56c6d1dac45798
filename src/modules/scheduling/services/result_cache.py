# src/modules/scheduling/services/result_cache.py

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from src.core.errors import FetchFailed
from src.core.utils import RetryPolicy, retry_with_backoff
from src.modules.scheduling.models import MatchResult
from src.modules.scheduling.services.rgl_service import TransportError

logger = logging.getLogger(__name__)


class ResultCache:
    """
    Match results keyed by match id, kept for `ttl` seconds.

    Concurrent misses on the same id share one upstream fetch: every caller awaits
    the same task and gets its result or its exception. Only successes are cached;
    unfinished results are cached too, so a "not finished yet" answer can be up to
    `ttl` seconds old.
    """

    def __init__(
        self,
        fetch: Callable[[int], Awaitable[MatchResult]],
        ttl: float = 600.0,
        retry_policy: RetryPolicy = RetryPolicy(),
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.ttl = ttl
        self.retry_policy = retry_policy
        self._clock = clock
        self._entries: dict[int, tuple[float, MatchResult]] = {}
        self._inflight: dict[int, asyncio.Task] = {}

    def peek(self, match_id: int) -> Optional[MatchResult]:
        entry = self._entries.get(match_id)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[match_id]
            return None
        return result

    def _prune(self) -> None:
        now = self._clock()
        expired = [match_id for match_id, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl]
        for match_id in expired:
            del self._entries[match_id]

    async def get_result(self, match_id: int, deadline: Optional[float] = None) -> MatchResult:
        self._prune()
        cached = self.peek(match_id)
        if cached is not None:
            logger.debug("Result cache hit", extra={'match_id': match_id})
            return cached

        task = self._inflight.get(match_id)
        if task is None:
            logger.debug("Result cache miss, fetching", extra={'match_id': match_id})
            task = asyncio.ensure_future(self._fetch_and_store(match_id))
            self._inflight[match_id] = task
            task.add_done_callback(lambda t, key=match_id: self._forget(key, t))

        # shield: a caller giving up must not cancel the fetch the others are waiting on
        try:
            if deadline is None:
                return await asyncio.shield(task)
            return await asyncio.wait_for(asyncio.shield(task), timeout=deadline)
        except asyncio.TimeoutError as e:
            raise FetchFailed(f"match {match_id}: deadline of {deadline}s exceeded") from e

    def _forget(self, match_id: int, task: asyncio.Task) -> None:
        self._inflight.pop(match_id, None)
        if not task.cancelled():
            # mark the exception as retrieved even if every waiter already gave up
            task.exception()

    async def _fetch_and_store(self, match_id: int) -> MatchResult:
        try:
            result = await retry_with_backoff(
                lambda: self._fetch(match_id),
                f"fetch match {match_id}",
                self.retry_policy,
                (TransportError, asyncio.TimeoutError),
            )
        except (TransportError, asyncio.TimeoutError) as e:
            raise FetchFailed(f"match {match_id}: {e}") from e

        self._entries[match_id] = (self._clock(), result)
        logger.info(
            "Match result cached",
            extra={'match_id': match_id, 'finalized': result.finalized, 'winner': result.winner}
        )
        return result
