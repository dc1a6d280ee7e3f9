"""
Tests for structured JSON logging.
"""

import json
import logging
import sys
from uuid import UUID

from pharmacall.shared.logging import StructuredFormatter, correlation_id_var


def make_record(msg: str = "Pharmacy call completed", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="pharmacall.scheduling.service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_basic_fields(self) -> None:
        payload = json.loads(StructuredFormatter("pharmacall-test").format(make_record()))

        assert payload["service"] == "pharmacall-test"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "pharmacall.scheduling.service"
        assert payload["message"] == "Pharmacy call completed"
        assert "correlation_id" not in payload

    def test_extra_fields_are_folded_in(self) -> None:
        record = make_record(job_id="job-1", attempt=2, level="shadowed")

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["job_id"] == "job-1"
        assert payload["attempt"] == 2
        assert payload["level"] == "INFO"
        assert payload["extra_level"] == "shadowed"

    def test_correlation_id(self) -> None:
        token = correlation_id_var.set("msg_123")
        try:
            payload = json.loads(StructuredFormatter().format(make_record()))
        finally:
            correlation_id_var.reset(token)

        assert payload["correlation_id"] == "msg_123"

    def test_exception_is_rendered(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()

        payload = json.loads(StructuredFormatter().format(record))

        assert "RuntimeError: boom" in payload["exception"]

    def test_non_json_values_are_stringified(self) -> None:
        job_id = UUID("6f1c1f7e-5c1a-4d55-9d0b-3c1b2c9d0a11")
        payload = json.loads(StructuredFormatter().format(make_record(job_id=job_id)))

        assert payload["job_id"] == str(job_id)
