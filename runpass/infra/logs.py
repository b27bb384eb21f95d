import logging
from datetime import datetime, timezone

import orjson

# extra= keys surfaced in JSON output when present
_EXTRA_KEYS = (
    "order_number", "order_id", "ticket_id", "status", "target",
    "external_status", "outcome", "error_code", "attempt", "path",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(log, default=str).decode()


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    root = logging.getLogger()
    # idempotent: create_app may run more than once per process (tests)
    for h in list(root.handlers):
        if getattr(h, "_runpass", False):
            root.removeHandler(h)
    handler = logging.StreamHandler()
    handler._runpass = True
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s - %(message)s",
        ))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
