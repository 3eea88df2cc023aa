import logging
import os
from logging.config import dictConfig
from typing import Dict

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Loggers used by the Supabase SDK and its HTTP transport.
PROVIDER_LOGGERS = (
    "httpx",
    "httpcore",
    "hpack",
    "supabase",
    "supabase_auth",
    "gotrue",
    "postgrest",
    "realtime",
)


def _provider_levels(debug_http: bool) -> Dict[str, Dict[str, str]]:
    level = "DEBUG" if debug_http else "WARNING"
    return {name: {"level": level} for name in PROVIDER_LOGGERS}


def configure_logging() -> None:
    """Configure process logging from environment flags.

    ``AULA_LOG_LEVEL`` sets the root level and ``AULA_APP_LOG_LEVEL`` the
    level of the ``aula`` package (defaults to the root level). Provider SDK
    loggers stay at WARNING unless ``AULA_DEBUG_HTTP=1``, which also turns
    on uvicorn access logging at DEBUG.
    """
    level = os.getenv("AULA_LOG_LEVEL", "INFO").upper()
    app_level = os.getenv("AULA_APP_LOG_LEVEL", level).upper()
    debug_http = os.getenv("AULA_DEBUG_HTTP", "0") == "1"

    loggers = _provider_levels(debug_http)
    loggers["aula"] = {"level": app_level}
    if debug_http:
        loggers["uvicorn.access"] = {"level": "DEBUG"}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": DEFAULT_LOG_FORMAT,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": loggers,
            "root": {
                "handlers": ["default"],
                "level": level,
            },
        }
    )
    logging.getLogger(__name__).debug("Logging configured (root=%s, app=%s, debug_http=%s)", level, app_level, debug_http)
