# src/core/utils.py
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Coroutine, Any, TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: attempts, first delay, growth factor and cap (seconds)."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    backoff_factor: float = 2.0

    def delays(self):
        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.backoff_factor


async def retry_with_backoff(
    coro_func: Callable[[], Coroutine[Any, Any, T]],
    operation_name: str,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
) -> T:
    """
    Runs a coroutine and retries it with exponential backoff when it raises one of `retry_on`.

    :param coro_func: a function returning a fresh coroutine on every call
        (for example: lambda: session.get(url))
    :param operation_name: descriptive name used in the logs
    :param policy: attempt count and delays
    :param retry_on: exception types considered transient
    :return: the coroutine's result on success
    :raises: the last exception once every attempt failed
    """
    delays = list(policy.delays())
    attempts = len(delays) + 1
    logger.debug(f"Starting '{operation_name}', up to {attempts} attempts.")

    for i in range(attempts):
        try:
            result = await coro_func()
            logger.debug(f"'{operation_name}' succeeded.")
            return result
        except retry_on as e:
            if i == attempts - 1:
                logger.error(
                    f"'{operation_name}' failed after {attempts} attempts. Last error: {e!r}",
                    extra={'operation': operation_name, 'attempt': i + 1}
                )
                raise

            delay = delays[i]
            logger.warning(
                f"'{operation_name}' failed (attempt {i + 1}/{attempts}): {e!r}. Retrying in {delay:.2f}s...",
                extra={'operation': operation_name, 'attempt': i + 1}
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"Retry loop for '{operation_name}' exited unexpectedly.")


async def with_deadline(coro: Coroutine[Any, Any, T], deadline: float | None) -> T:
    """Awaits `coro`, cancelling it if it takes longer than `deadline` seconds (None waits forever)."""
    if deadline is None:
        return await coro
    return await asyncio.wait_for(coro, timeout=deadline)


class KeyedLocks:
    """One asyncio.Lock per key, created on demand and dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict = {}
        self._users = defaultdict(int)

    def locked(self, key) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def hold(self, key):
        return _KeyedLockContext(self, key)


class _KeyedLockContext:
    def __init__(self, owner: KeyedLocks, key):
        self.owner = owner
        self.key = key

    async def __aenter__(self):
        lock = self.owner._locks.setdefault(self.key, asyncio.Lock())
        self.owner._users[self.key] += 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_user()
            raise
        return lock

    async def __aexit__(self, exc_type, exc, tb):
        self.owner._locks[self.key].release()
        self._release_user()

    def _release_user(self):
        self.owner._users[self.key] -= 1
        if self.owner._users[self.key] == 0:
            del self.owner._users[self.key]
            del self.owner._locks[self.key]
