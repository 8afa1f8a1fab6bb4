from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys

from hookrelay.core.config import get_settings


_configured = False


class JsonLineFormatter(logging.Formatter):
    # Render one JSON object per record so log shippers can index delivery outcomes.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


def configure_logging(*, level: str | None = None, force: bool = False) -> None:
    # Configure the root logger once per process; modules only call logging.getLogger(__name__).
    global _configured
    if _configured and not force:
        return
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())
    # Keep per-request transport chatter out of delivery logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
