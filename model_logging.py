"""
model_logging.py

Single place where the loguru logger is configured for model runs.
"""

import os
import sys

from loguru import logger

_CONFIGURED = False


def setup_logging(level: str = "INFO", log_dir: str | None = None,
                  rotation: str = "1 day", retention: str = "30 days") -> None:
    """
    Route loguru output to stderr and, when ``log_dir`` is given,
    to a dated log file. Calling it again replaces the previous sinks.
    """
    global _CONFIGURED

    logger.remove()
    logger.add(sys.stderr, level=level,
               format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}")

    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            sink=os.path.join(log_dir, "{time:YYYY-MM-DD}.log"),
            rotation=rotation,
            retention=retention,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    if not _CONFIGURED:
        logger.debug("Logger initialized")
    _CONFIGURED = True
