import logging
from typing import Optional, Union

NOISY_LIBRARIES = ("websockets", "asyncpg", "aiohttp.access")


def resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Call once from the entrypoint. Later calls are ignored when the root
    logger already has handlers, so test runners keep their own capture.
    """
    if logging.getLogger().handlers:
        return

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=resolve_level(level), format=fmt)
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
