import json
import logging
import sys
from typing import Any, Dict, Optional

import structlog

from clusterdeck.config import get_settings

_CONFIGURED = False


class JSONFormatter(logging.Formatter):
    """One JSON object per line: time, level, name, message plus any extra fields.

    Values under sensitive-looking keys are redacted.
    """

    REDACT_KEYS = {"password", "secret", "token", "authorization", "kubeconfig"}
    _RESERVED = {
        "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs", "message", "msg", "name",
        "pathname", "process", "processName", "relativeCreated", "stack_info", "thread",
        "threadName", "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in self._RESERVED:
                continue
            payload[key] = "***REDACTED***" if key.lower() in self.REDACT_KEYS else value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def redact_sensitive(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor applying the same key redaction as ``JSONFormatter``."""
    for key in event_dict:
        if key.lower() in JSONFormatter.REDACT_KEYS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def setup_logging(level: Optional[str] = None, use_json: Optional[bool] = None) -> None:
    """Configure the root logger and route structlog through it.

    structlog events are handed to stdlib loggers, so they reach the same
    handler as uvicorn's records. In JSON mode their key/value pairs become
    record extras for ``JSONFormatter``; otherwise they are rendered into the
    message. Safe to call more than once; only the first call installs handlers.
    """
    global _CONFIGURED
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    as_json = settings.log_json if use_json is None else use_json

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if _CONFIGURED:
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if as_json:
        console_handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
    root.addHandler(console_handler)

    # uvicorn and fastapi loggers go through the root handlers
    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        named = logging.getLogger(log_name)
        named.handlers = []
        named.propagate = True

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        redact_sensitive,
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.stdlib.render_to_log_kwargs]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True
