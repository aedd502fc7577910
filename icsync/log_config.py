from __future__ import annotations

import logging
import os


LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(name)s - %(message)s"

NOISY_LOGGERS = {
    "caldav": logging.WARNING,
    "urllib3.connectionpool": logging.WARNING,
    "requests.packages.urllib3": logging.WARNING,
    "httpx": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "charset_normalizer": logging.WARNING,
}


def configure_logging(debug_mode: bool = False) -> None:
    """Set up root logging for the service.

    ``ICSYNC_DEBUG`` (1/true/yes) forces debug output for ``icsync`` modules and
    ``ICSYNC_LOG_LEVEL`` overrides the root level. Chatty third-party loggers are
    held at WARNING either way.
    """
    debug = debug_mode or os.getenv("ICSYNC_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("ICSYNC_LOG_LEVEL", "").upper()

    root_level = logging.DEBUG if debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("icsync").setLevel(logging.DEBUG if debug else root_level)
