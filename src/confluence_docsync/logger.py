import json
import logging
import os
import sys

DEFAULT_LOG_FILE = "/tmp/confluence-docsync.log"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Loggers that are noisy below WARNING
_QUIET_LOGGERS = ("urllib3", "charset_normalizer")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``msg``.

    Records logged with ``extra={"doc_path": ...}`` also carry ``doc``, so
    per-document failures can be filtered out of a run log.  Tracebacks go
    into ``exc``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        doc_path = getattr(record, "doc_path", None)
        if doc_path:
            entry["doc"] = doc_path
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_handler(
    handler: logging.Handler, debug_format: str, with_name: bool
) -> logging.Handler:
    if debug_format == "json":
        handler.setFormatter(JsonFormatter(datefmt=_DATEFMT))
    elif with_name:
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] [%(levelname)s] %(name)s %(message)s",
                datefmt=_DATEFMT,
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] [%(levelname)s] %(message)s", datefmt=_DATEFMT
            )
        )
    return handler


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
) -> None:
    """
    Configure the root logger for a sync run.

    Args:
        mode: "cli" logs to stderr (plus *log_file* when given); "file"
            logs only to a file, for scheduled runs with no terminal.
        debug: Force DEBUG regardless of LOG_LEVEL.
        log_file: Log file path; in "file" mode falls back to LOG_FILE,
            then /tmp/confluence-docsync.log.
        debug_format: "text" or "json".

    Environment variables:
        LOG_LEVEL: Level name. Defaults to INFO in "cli" mode and WARNING
            in "file" mode.
        LOG_FILE: Log file for "file" mode.
    """
    fallback = "WARNING" if mode == "file" else "INFO"
    level_name = os.getenv("LOG_LEVEL", fallback).upper()
    log_level = (
        logging.DEBUG if debug else getattr(logging, level_name, logging.INFO)
    )

    handlers: list[logging.Handler] = []
    if mode == "file":
        path = log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
        handlers.append(
            _make_handler(
                logging.FileHandler(path, mode="a"), debug_format, True
            )
        )
    else:
        handlers.append(
            _make_handler(
                logging.StreamHandler(sys.stderr), debug_format, False
            )
        )
        if log_file:
            handlers.append(
                _make_handler(
                    logging.FileHandler(log_file, mode="a"),
                    debug_format,
                    True,
                )
            )

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    if log_level != logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
