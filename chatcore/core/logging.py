import json
import logging
from datetime import UTC, datetime

_EXTRA_FIELDS = (
    "request_id",
    "org_id",
    "user_id",
    "conversation_id",
    "message_id",
    "model",
    "provider",
    "tool",
    "state",
    "action",
    "categories",
    "event_type",
    "delivery_id",
    "status_code",
    "latency_ms",
    "duration_ms",
    "token_in",
    "token_out",
    "cost_micros",
    "error",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(log_level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())
