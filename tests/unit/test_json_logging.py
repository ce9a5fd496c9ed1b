"""Unit tests for the structured log formatter"""

import json
import logging

from bnpl_scheduler.infrastructure.observability.logging import CustomJsonFormatter, request_id_var


def format_record(**extra) -> dict:
    record = logging.LogRecord("bnpl_scheduler.test", logging.INFO, __file__, 1, "Installment transition", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s").format(record))


def test_service_metadata_and_extras():
    data = format_record(installment_id="inst_1", to_status="completed")

    assert data["level"] == "INFO"
    assert data["service"] == "bnpl-scheduler"
    assert data["installment_id"] == "inst_1"
    assert "request_id" not in data


def test_request_id_from_context():
    token = request_id_var.set("req-42")
    try:
        data = format_record()
    finally:
        request_id_var.reset(token)

    assert data["request_id"] == "req-42"
