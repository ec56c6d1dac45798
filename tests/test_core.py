import asyncio
import logging

import pytest

from src.core.config import Settings
from src.core.logging_setup import RedactSecretsFilter
from src.core.utils import KeyedLocks, RetryPolicy, retry_with_backoff, with_deadline


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("boom")
        return "ok"


def test_retry_policy_delays_are_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0)
    assert list(policy.delays()) == [1.0, 2.0, 3.0, 3.0]
    assert list(RetryPolicy(max_attempts=1).delays()) == []


async def test_retry_recovers_from_transient_errors():
    flaky = Flaky(failures=2)
    policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

    assert await retry_with_backoff(flaky, "flaky call", policy, (ConnectionError,)) == "ok"
    assert flaky.calls == 3


async def test_retry_reraises_after_last_attempt():
    flaky = Flaky(failures=5)
    policy = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0)

    with pytest.raises(ConnectionError):
        await retry_with_backoff(flaky, "flaky call", policy, (ConnectionError,))
    assert flaky.calls == 2


async def test_retry_does_not_retry_other_errors():
    flaky = Flaky(failures=5, error=KeyError)
    policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

    with pytest.raises(KeyError):
        await retry_with_backoff(flaky, "flaky call", policy, (ConnectionError,))
    assert flaky.calls == 1


async def test_with_deadline():
    assert await with_deadline(asyncio.sleep(0, result=1), None) == 1
    with pytest.raises(asyncio.TimeoutError):
        await with_deadline(asyncio.sleep(1), 0.01)


async def test_keyed_locks_serialize_per_key_only():
    locks = KeyedLocks()
    order = []

    async def worker(key, name):
        async with locks.hold(key):
            order.append(f"{name} in")
            await asyncio.sleep(0.01)
            order.append(f"{name} out")

    await asyncio.gather(worker("a", "first"), worker("a", "second"), worker("b", "other"))

    assert order.index("first out") < order.index("second in")
    assert order.index("other in") < order.index("first out")
    assert not locks.locked("a")
    assert locks._locks == {}


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv('GUILD_ID', '123, 456,nope')
    monkeypatch.setenv('RESERVATION_MAX_ATTEMPTS', '4')
    monkeypatch.setenv('RESULT_CACHE_TTL_SECONDS', '30')
    monkeypatch.setenv('SERVEME_BASE_URL', 'https://eu.serveme.tf/')
    monkeypatch.setenv('SCRIM_EXPIRY_ENABLED', 'false')
    monkeypatch.setenv('MAX_CONFIGURATION_ATTEMPTS', 'lots')

    settings = Settings.from_env()

    assert settings.guild_ids == [123, 456]
    assert settings.reservation_retry.max_attempts == 4
    assert settings.result_cache_ttl == 30.0
    assert settings.serveme_base_url == 'https://eu.serveme.tf'
    assert settings.scrim_expiry_enabled is False
    assert settings.max_configuration_attempts == 5


def test_secret_fields_are_masked_before_formatting():
    record = logging.LogRecord('src.test', logging.INFO, __file__, 1, "Server configured", None, None)
    record.rcon = 'scrim.rcon.abcdef'
    record.server_password = 'abc123'
    record.slot = '1001@2030-03-05T00:30:00+00:00'

    assert RedactSecretsFilter().filter(record)
    assert record.rcon == '***'
    assert record.server_password == '***'
    assert record.slot == '1001@2030-03-05T00:30:00+00:00'
