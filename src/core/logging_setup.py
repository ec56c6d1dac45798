import logging
import sys
import os
from logging.handlers import TimedRotatingFileHandler
from pythonjsonlogger import jsonlogger

# `extra` keys whose values must never reach a log sink
SECRET_FIELDS = frozenset({'password', 'server_password', 'rcon', 'credentials', 'api_key', 'serveme_api_key', 'token'})

QUIET_LOGGERS = ('discord', 'discord.http', 'aiohttp.access', 'aiosqlite')


class RedactSecretsFilter(logging.Filter):
    """Masks server passwords, rcon passwords and provider keys passed through `extra`."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in SECRET_FIELDS:
            if getattr(record, name, None):
                setattr(record, name, '***')
        return True


def setup_logging(log_dir: str | None = None, level: str | None = None):
    """
    Configures the root logger once; later calls are no-ops.

    Console: readable text at LOG_LEVEL.
    File: JSON lines in <LOG_DIR>/bot.log, rotated at midnight, every level.
    """
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        return

    console_level = getattr(logging, (level or os.getenv('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    log_dir = log_dir or os.getenv('LOG_DIR', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    # handlers do the filtering
    root_logger.setLevel(logging.DEBUG)
    redact = RedactSecretsFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    console_handler.setLevel(console_level)
    console_handler.addFilter(redact)
    root_logger.addHandler(console_handler)

    # slot, guild_id, reservation_id, match_id... from `extra` become JSON keys
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'bot.log'),
        when='midnight',
        interval=int(os.getenv('LOG_ROTATION_INTERVAL_DAYS', '1')),
        backupCount=int(os.getenv('LOG_BACKUP_COUNT', '7')),
        encoding='utf-8'
    )
    file_handler.setFormatter(jsonlogger.JsonFormatter(
        '%(asctime)s %(levelname)s %(name)s %(message)s',
        rename_fields={'asctime': 'timestamp', 'levelname': 'level'},
        static_fields={'service': 'scrim-scheduler'},
        json_ensure_ascii=False
    ))
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(redact)
    root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info("Logging initialised", extra={'log_dir': log_dir, 'console_level': logging.getLevelName(console_level)})
