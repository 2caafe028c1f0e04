"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

_service_name = "dunning-scheduler"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = _service_name


def setup_logging(level: str = "INFO", service_name: Optional[str] = None) -> None:
    """Configure structured JSON logging"""
    global _service_name
    if service_name:
        _service_name = service_name

    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_delivery(
    record_id: str,
    credit_id: str,
    channel: str,
    outcome: str,
    duration_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log structured delivery outcome for analysis"""
    logging.getLogger("dunning_scheduler.delivery").info(
        "Notification delivery finished",
        extra={
            "record_id": record_id,
            "credit_id": credit_id,
            "channel": channel,
            "step": "delivery_complete",
            "outcome": outcome,
            "duration_ms": duration_ms,
            "error": error,
        },
    )
