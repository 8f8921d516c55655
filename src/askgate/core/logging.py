from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


@dataclass(frozen=True)
class LogContext:
    request_id: str | None = None
    provider: str | None = None
    model: str | None = None
    message_id: str | None = None


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS and key != "extra":
                base[key] = value
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            base.update(extra)
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Merges the bound context with per-call `extra` instead of replacing it."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        merged = {k: v for k, v in self.extra["extra"].items() if v is not None}
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = {"extra": merged}
        return msg, kwargs


def configure_logging(*, level: str) -> None:
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)


def with_context(logger: logging.Logger, ctx: LogContext) -> ContextAdapter:
    return ContextAdapter(logger, extra={"extra": asdict(ctx)})
