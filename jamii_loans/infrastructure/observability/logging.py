"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from jamii_loans.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_transition(
    loan_id: Any,
    field: str,
    from_state: Optional[str],
    to_state: str,
    actor_id: Any = None,
) -> None:
    """Log structured loan lifecycle transition for audit and analysis"""
    logging.getLogger("jamii_loans.lifecycle").info(
        "Loan transition",
        extra={
            "loan_id": str(loan_id),
            "field": field,
            "from_state": from_state,
            "to_state": to_state,
            "actor_id": str(actor_id) if actor_id is not None else None,
        },
    )
