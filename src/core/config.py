# src/core/config.py
import os
import logging
from dataclasses import dataclass, field
from dotenv import load_dotenv, find_dotenv

from src.core.utils import RetryPolicy

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}='{raw}' is not an integer, using default {default}.")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}='{raw}' is not a number, using default {default}.")
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _list_env(name: str, default: str = '') -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(',') if part.strip()]


@dataclass
class Settings:
    """Runtime settings read from the environment (and .env, if present)."""
    discord_token: str | None = None
    guild_ids: list[int] = field(default_factory=list)
    db_name: str = 'scheduling.db'

    serveme_base_url: str = 'https://na.serveme.tf'
    serveme_preferred_servers: list[str] = field(default_factory=lambda: ['chi', 'ks'])
    rgl_api_base_url: str = 'https://api.rgl.gg/v0'

    reservation_retry: RetryPolicy = field(default_factory=RetryPolicy)
    rcon_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=8.0))
    fetch_retry: RetryPolicy = field(default_factory=RetryPolicy)
    rcon_timeout: float = 10.0
    http_timeout: float = 15.0

    result_cache_ttl: float = 600.0
    game_duration_minutes: int = 60
    max_configuration_attempts: int = 5
    sweep_interval_seconds: int = 60
    scrim_expiry_enabled: bool = True
    scrim_expiry_grace_minutes: int = 0

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(find_dotenv())

        guild_ids = []
        for gid in _list_env('GUILD_ID'):
            try:
                guild_ids.append(int(gid))
            except ValueError:
                logger.error(f"Ignoring GUILD_ID entry '{gid}': not a numeric id.")

        reservation_retry = RetryPolicy(
            max_attempts=_int_env('RESERVATION_MAX_ATTEMPTS', 3),
            base_delay=_float_env('RESERVATION_BASE_DELAY', 1.0),
            max_delay=_float_env('RESERVATION_MAX_DELAY', 8.0),
        )
        settings = cls(
            discord_token=os.getenv('DISCORD_TOKEN'),
            guild_ids=guild_ids,
            db_name=os.getenv('DB_NAME', 'scheduling.db'),
            serveme_base_url=os.getenv('SERVEME_BASE_URL', 'https://na.serveme.tf').rstrip('/'),
            serveme_preferred_servers=_list_env('SERVEME_PREFERRED_SERVERS', 'chi,ks'),
            rgl_api_base_url=os.getenv('RGL_API_BASE_URL', 'https://api.rgl.gg/v0').rstrip('/'),
            reservation_retry=reservation_retry,
            rcon_retry=RetryPolicy(max_attempts=_int_env('RCON_MAX_ATTEMPTS', 3), base_delay=2.0, max_delay=8.0),
            fetch_retry=RetryPolicy(max_attempts=_int_env('FETCH_MAX_ATTEMPTS', 3)),
            rcon_timeout=_float_env('RCON_TIMEOUT', 10.0),
            http_timeout=_float_env('HTTP_TIMEOUT', 15.0),
            result_cache_ttl=_float_env('RESULT_CACHE_TTL_SECONDS', 600.0),
            game_duration_minutes=_int_env('GAME_DURATION_MINUTES', 60),
            max_configuration_attempts=_int_env('MAX_CONFIGURATION_ATTEMPTS', 5),
            sweep_interval_seconds=_int_env('SWEEP_INTERVAL_SECONDS', 60),
            scrim_expiry_enabled=_bool_env('SCRIM_EXPIRY_ENABLED', True),
            scrim_expiry_grace_minutes=_int_env('SCRIM_EXPIRY_GRACE_MINUTES', 0),
        )
        logger.info(
            "Settings loaded",
            extra={'guild_count': len(settings.guild_ids), 'db_name': settings.db_name, 'serveme': settings.serveme_base_url}
        )
        return settings
