import logging
from typing import Optional, Union


DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Chatty third-party loggers kept at WARNING unless the root is at DEBUG.
QUIET_LOGGERS = ('asyncio', 'aiohttp.access', 'asyncpg')


def resolve_level(level: Union[int, str, None]) -> int:
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging once from the entrypoint.

    Accepts a numeric level or a name such as ``"info"``. Subsequent calls
    are ignored if the root logger already has handlers.
    """
    if logging.getLogger().handlers:
        return

    numeric = resolve_level(level)
    logging.basicConfig(level=numeric, format=log_format or DEFAULT_FORMAT)
    if numeric > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
