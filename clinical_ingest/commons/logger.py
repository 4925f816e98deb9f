import sys
from datetime import datetime
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"


def setup_logging(root: str, level: str = "INFO", console: bool = True):
    """
    <root>/YYYY/MM/DD/ingest.log for everything at `level`, plus
    review.log collecting warnings and errors (rejected or unresolved reports).
    Console output goes to stderr so stdout stays free for command results.
    """
    logdir = Path(root) / datetime.now().strftime("%Y/%m/%d")
    logdir.mkdir(parents=True, exist_ok=True)
    logger.remove()
    common = dict(rotation="00:00", retention="14 days", enqueue=True, backtrace=True)
    # diagnose would print local variables, i.e. patient identifiers
    logger.add(str(logdir / "ingest.log"), level=level, diagnose=False, **common)
    logger.add(str(logdir / "review.log"), level="WARNING", diagnose=False, **common)
    if console:
        logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, diagnose=False)
    return logger


__all__ = ["logger", "setup_logging"]
