import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("PAYD_LOG_FILE", "/tmp/payd.log")

# Third-party loggers and the level they're held to.
QUIET_LOGGERS = {
    "fastapi": "INFO",
    "uvicorn.access": "WARNING",  # Quiets the noisy access logs
    "httpx": "WARNING",
    "xrpl": "WARNING",  # Only show warnings/errors from xrpl-py
}


def build_logging_config(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> dict:
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": log_file,
            "mode": "a",
        }
    names = list(handlers)

    loggers = {
        "payd": {"level": level, "handlers": names, "propagate": False},
        # Operator notifications get their own name so they can be routed separately.
        "payd.notify": {"level": "INFO", "handlers": names, "propagate": False},
    }
    for name, lvl in QUIET_LOGGERS.items():
        loggers[name] = {"level": lvl, "handlers": names, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging(level: str | None = None, log_file: str | None = LOG_FILE):
    """ Apply the logging configuration. """
    logging.config.dictConfig(build_logging_config(level or LOG_LEVEL, log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
