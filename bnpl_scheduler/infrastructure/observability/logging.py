"""Structured JSON logging for production observability"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from bnpl_scheduler.config import settings

# Set per HTTP request by RequestIDMiddleware; empty for ticker runs
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name
        request_id = request_id_var.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


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


logger = logging.getLogger("bnpl_scheduler")


def log_schedule_created(
    transaction_id: str,
    installment_count: int,
    total_cents: int,
    interval: str,
    duration_ms: float,
) -> None:
    """Log structured schedule creation outcome"""
    logger.info(
        "Schedule created",
        extra={
            "transaction_id": transaction_id,
            "step": "schedule_created",
            "installment_count": installment_count,
            "total_cents": total_cents,
            "interval": interval,
            "duration_ms": duration_ms,
        },
    )


def log_installment_transition(
    installment_id: str,
    from_status: str,
    to_status: str,
    retry_count: int,
    reason: Optional[str] = None,
) -> None:
    """Log one installment state change"""
    logger.info(
        "Installment transition",
        extra={
            "installment_id": installment_id,
            "step": "installment_transition",
            "from_status": from_status,
            "to_status": to_status,
            "retry_count": retry_count,
            "reason": reason,
        },
    )


def log_batch_completed(
    run_type: str,
    total: int,
    succeeded: int,
    retried: int,
    failed: int,
    errored: int,
    duration_ms: float,
) -> None:
    """Log aggregate outcome of a batch run for analysis"""
    logger.info(
        "Batch completed",
        extra={
            "step": "batch_complete",
            "run_type": run_type,
            "total_processed": total,
            "succeeded": succeeded,
            "retried": retried,
            "failed": failed,
            "errored": errored,
            "duration_ms": duration_ms,
        },
    )
