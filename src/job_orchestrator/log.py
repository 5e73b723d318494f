import sys

from loguru import logger


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        serialize=json,
        backtrace=False,
        diagnose=False,
    )
