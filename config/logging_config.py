"""
Logging setup for the news analysis service.

LOG_LEVEL sets the root level (default INFO). LOG_JSON=1, or running on
Railway, switches to one JSON object per line. LOG_LEVELS tunes single
loggers, e.g. ``LOG_LEVELS=services.fmp=DEBUG,httpx=INFO``.

Messages carry news ids, request types and timings. API keys and full LLM
responses stay out of the logs.
"""
import json
import logging
import os
import sys
from typing import Any, Dict

# present on every LogRecord; anything else arrived via extra=
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

# chatty libraries, quieted unless LOG_LEVELS says otherwise
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "google_genai")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _default(obj: Any) -> str:
    iso = getattr(obj, "isoformat", None)
    return iso() if callable(iso) else str(obj)


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            out["exception"] = self.formatException(record.exc_info)
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_") or key in out or value is None:
                continue
            out[key] = value
        return json.dumps(out, default=_default)


def _level(name: str, fallback: int = logging.INFO) -> int:
    value = logging.getLevelName((name or "").strip().upper())
    return value if isinstance(value, int) else fallback


def parse_logger_levels(raw: str) -> Dict[str, int]:
    """``"a=DEBUG,b.c=WARNING"`` -> {"a": 10, "b.c": 30}; malformed parts are skipped."""
    levels: Dict[str, int] = {}
    for part in (raw or "").split(","):
        name, sep, level = part.partition("=")
        if not sep or not name.strip():
            continue
        value = logging.getLevelName(level.strip().upper())
        if isinstance(value, int):
            levels[name.strip()] = value
    return levels


def json_logs_enabled() -> bool:
    return os.getenv("LOG_JSON", "").lower() in ("1", "true", "yes") or bool(os.getenv("RAILWAY_ENVIRONMENT"))


def build_handler(as_json: bool) -> logging.Handler:
    # no handler level: per-logger levels from LOG_LEVELS must get through
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if as_json else logging.Formatter(TEXT_FORMAT))
    return handler


def configure_logging() -> None:
    level = _level(os.getenv("LOG_LEVEL") or "INFO")

    root = logging.getLogger()
    root.setLevel(level)
    # uvicorn --reload imports us twice
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(build_handler(json_logs_enabled()))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, lvl in parse_logger_levels(os.getenv("LOG_LEVELS", "")).items():
        logging.getLogger(name).setLevel(lvl)
