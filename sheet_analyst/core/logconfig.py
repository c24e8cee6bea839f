from __future__ import annotations

import logging

LOGGER_NAME = "sheet_analyst"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Install a single stream handler on the package logger."""

    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    if not any(getattr(handler, "_sheet_analyst", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._sheet_analyst = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
