"""
Tests for Logging Infrastructure
"""
import pytest
import json
import logging
import re
from io import StringIO

from app.core.exceptions import ErrorCategory, VersionConflictError
from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id,
    generate_correlation_id,
    correlation_id_var,
    JSONFormatter,
    log_async_operation,
    log_critical,
    log_error,
    presence,
    redact,
    serialize_error,
)


class TestCorrelationId:
    """Tests for correlation ID management"""

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        """Correlation IDs look like wh_<ms>_<random>"""
        cid = generate_correlation_id()

        assert re.fullmatch(r"wh_\d{13}_[0-9a-f]{9}", cid)

    @pytest.mark.unit
    def test_generated_ids_are_unique(self):
        assert len({generate_correlation_id() for _ in range(50)}) == 50

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        """Test setting and getting correlation ID"""
        result = set_correlation_id("wh_test_1234")

        assert result == "wh_test_1234"
        assert get_correlation_id() == "wh_test_1234"

    @pytest.mark.unit
    def test_get_generates_and_persists(self):
        token = correlation_id_var.set("")
        try:
            first = get_correlation_id()
            assert first.startswith("wh_")
            assert get_correlation_id() == first
        finally:
            correlation_id_var.reset(token)


class TestJSONFormatter:
    """Tests for JSON log formatting"""

    @pytest.fixture
    def log_stream(self) -> StringIO:
        """Create a string stream for capturing logs"""
        return StringIO()

    @pytest.fixture
    def json_logger(self, log_stream: StringIO):
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())
        logger = get_logger("test.json_formatter")
        logger.handlers = [handler]
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        yield logger
        logger.handlers = []

    @pytest.mark.unit
    def test_json_output_with_extra_and_category(self, json_logger, log_stream: StringIO):
        set_correlation_id("wh_json_1")

        json_logger.warning(
            "Inventory low",
            extra_data={"new_inventory": 3},
            category=ErrorCategory.INVENTORY_UPDATE,
        )

        entry = json.loads(log_stream.getvalue().strip())
        assert entry["level"] == "WARNING"
        assert entry["message"] == "Inventory low"
        assert entry["correlation_id"] == "wh_json_1"
        assert entry["category"] == "INVENTORY_UPDATE"
        assert entry["extra"] == {"new_inventory": 3}

    @pytest.mark.unit
    def test_plain_message_has_no_extra(self, json_logger, log_stream: StringIO):
        json_logger.info("hello")

        entry = json.loads(log_stream.getvalue().strip())
        assert "extra" not in entry
        assert "category" not in entry


class TestErrorHelpers:

    @pytest.mark.unit
    def test_serialize_exception_with_retry_code(self):
        info = serialize_error(VersionConflictError("product", "prod_1", 2))

        assert info["name"] == "VersionConflictError"
        assert info["code"] == "version_conflict"
        assert "prod_1" in info["message"]

    @pytest.mark.unit
    def test_serialize_non_exception(self):
        assert serialize_error({"a": 1}) == {"message": '{"a": 1}', "type": "dict"}
        assert serialize_error("oops") == {"message": "oops", "type": "str"}

    @pytest.mark.unit
    def test_log_error_carries_category_and_context(self, caplog):
        logger = get_logger("test.log_error")

        with caplog.at_level(logging.ERROR, logger="test.log_error"):
            log_error(logger, ErrorCategory.CUSTOMER_DATA, "Customer write failed", ValueError("bad"), {"session_id": "cs_1"})

        record = caplog.records[-1]
        assert record.error_category == "CUSTOMER_DATA"
        assert record.extra_data["error"] == {"name": "ValueError", "message": "bad"}
        assert record.extra_data["context"] == {"session_id": "cs_1"}

    @pytest.mark.unit
    def test_log_critical_requires_attention(self, caplog):
        logger = get_logger("test.log_critical")

        with caplog.at_level(logging.CRITICAL, logger="test.log_critical"):
            log_critical(logger, ErrorCategory.SIGNATURE_VERIFICATION, "No secret", RuntimeError("x"))

        record = caplog.records[-1]
        assert record.levelname == "CRITICAL"
        assert record.extra_data["context"]["requires_immediate_attention"] is True

    @pytest.mark.unit
    def test_pii_helpers(self):
        assert presence("buyer@example.com") == "present"
        assert presence(None) == "missing"
        assert redact("203.0.113.7") == "[REDACTED]"
        assert redact("") == "not_captured"


class TestLogAsyncOperation:

    @pytest.mark.unit
    async def test_logs_completion_with_duration(self, caplog):
        @log_async_operation("sample_operation")
        async def sample() -> int:
            return 7

        with caplog.at_level(logging.DEBUG, logger=__name__):
            assert await sample() == 7

        completed = [r for r in caplog.records if r.getMessage().startswith("Operation sample_operation completed")]
        assert len(completed) == 1
        assert completed[0].extra_data["success"] is True
        assert isinstance(completed[0].extra_data["duration_ms"], int)

    @pytest.mark.unit
    async def test_failure_logged_and_reraised(self, caplog):
        @log_async_operation("failing_operation")
        async def failing() -> None:
            raise RuntimeError("nope")

        with caplog.at_level(logging.DEBUG, logger=__name__):
            with pytest.raises(RuntimeError):
                await failing()

        completed = [r for r in caplog.records if "failing_operation completed" in r.getMessage()]
        assert completed[0].levelname == "WARNING"
        assert completed[0].extra_data["status"] == "failed"

    @pytest.mark.unit
    async def test_slow_operation_warning(self, caplog, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "SLOW_OPERATION_THRESHOLD_MS", -1)

        @log_async_operation("slow_operation")
        async def slow() -> None:
            return None

        with caplog.at_level(logging.DEBUG, logger=__name__):
            await slow()

        slow_records = [r for r in caplog.records if r.getMessage().startswith("Slow webhook operation detected")]
        assert slow_records
        assert slow_records[0].error_category == "WEBHOOK_PROCESSING"
