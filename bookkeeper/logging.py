import json
import logging
import logging.config
from datetime import datetime, timezone

from bookkeeper.config import settings

# Structured fields copied from `extra=` into the JSON payload when present.
CONTEXT_FIELDS = (
    "request_id",
    "organization_id",
    "customer_id",
    "checkout_session_id",
    "invoice_id",
    "purchase_id",
    "payment_id",
    "fee_calculation_id",
    "livemode",
    "amount",
)

# httpx logs every Stripe request line at INFO.
QUIET_LOGGERS = ("httpx", "httpcore")


def _json_value(value):
    if isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, _json_value(getattr(record, key)))
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str | None = None) -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonLogFormatter}},
            "handlers": {
                "default": {"class": "logging.StreamHandler", "formatter": "json"}
            },
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
            "root": {"handlers": ["default"], "level": level or settings.log_level},
        }
    )
