from __future__ import annotations

import logging

from fishops.config import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEBUG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
NOISY_LOGGERS = ("streamlit", "urllib3", "watchdog", "tornado")

_HANDLER_NAME = "fishops"


def configure_logging(settings: Settings) -> None:
    level = _coerce_level(settings.log_level)
    root = logging.getLogger()
    root.setLevel(level)

    pkg_logger = logging.getLogger("fishops")
    pkg_logger.setLevel(level)

    if level > logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    formatter = logging.Formatter(DEBUG_FORMAT if level <= logging.DEBUG else LOG_FORMAT)
    handler = next((h for h in root.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        root.addHandler(handler)
    handler.setFormatter(formatter)


def _coerce_level(raw_level) -> int:
    if isinstance(raw_level, int):
        return raw_level
    if isinstance(raw_level, str):
        candidate = raw_level.strip().upper()
        value = getattr(logging, candidate, logging.INFO)
        return value if isinstance(value, int) else logging.INFO
    return logging.INFO
