"""Tests for batch observability and logging."""

import logging

import pytest

from receipt_batch.adapters.simulated_processor import SimulatedRemoteProcessor
from receipt_batch.observability.batch_logger import (
    BatchObservabilityRecorder,
    create_batch_logger,
)
from receipt_batch.observability.logging_setup import get_log_level_from_settings, setup_logging
from receipt_batch.services.batch_orchestrator import BatchUploadOrchestrator


@pytest.fixture(autouse=True)
def capture_batch_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="batch_upload")
    return caplog


class TestBatchObservabilityRecorder:
    """Tests for BatchObservabilityRecorder."""

    def test_create_batch_logger(self):
        """Test creating a batch logger."""
        logger = create_batch_logger(batch_id="test-batch-123", item_id="item-456")

        assert logger.batch_id == "test-batch-123"
        assert logger.item_id == "item-456"
        assert logger.enable_verbose is False

    def test_record_event_minimal_format(self, caplog):
        """Batch and item ids are shortened to eight characters."""
        logger = create_batch_logger(batch_id="batch-123456789", item_id="item-123456789")

        logger.record_event("item_stage", {
            "file_name": "receipt.jpg",
            "stage": "ai_processing",
            "progress": 80,
        })

        assert "[ITEM_STAGE]" in caplog.text
        assert "batch=batch-12" in caplog.text
        assert "item=item-123" in caplog.text
        assert "file=receipt.jpg" in caplog.text
        assert "ai_processing 80%" in caplog.text

    def test_details_override_constructor_ids(self, caplog):
        logger = create_batch_logger(batch_id="aaaaaaaa-default")

        logger.record_event("item_admitted", {"batch_id": "bbbbbbbb-override", "item_id": "cccccccc-1"})

        assert "batch=bbbbbbbb" in caplog.text
        assert "item=cccccccc" in caplog.text
        assert "batch=aaaaaaaa" not in caplog.text

    def test_record_batch_started(self, caplog):
        logger = create_batch_logger()

        logger.record_event("batch_started", {"total_items": 5, "max_concurrent_uploads": 2})

        assert "[BATCH_STARTED]" in caplog.text
        assert "5 items" in caplog.text
        assert "max_concurrent=2" in caplog.text

    def test_record_item_completed(self, caplog):
        logger = create_batch_logger()

        logger.record_event("item_completed", {"file_name": "a.png", "result_id": "receipt-1"})

        assert "✓ result=receipt-1" in caplog.text

    def test_failures_are_logged_as_warnings(self, caplog):
        logger = create_batch_logger()

        logger.record_event("item_timeout", {"error": "Processing timed out after 600s"})

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "✗ Processing timed out after 600s" in record.getMessage()

    def test_record_batch_completed(self, caplog):
        logger = create_batch_logger()

        logger.record_event("batch_completed", {
            "completed_count": 2,
            "total_items": 3,
            "success_rate": 66.666,
            "duration_ms": 18789.5,
        })

        assert "[BATCH_COMPLETED]" in caplog.text
        assert "2/3 completed" in caplog.text
        assert "(67% success)" in caplog.text
        assert "⏱ 18790ms" in caplog.text  # Rounded

    def test_verbose_mode_logs_details(self, caplog):
        logger = BatchObservabilityRecorder(enable_verbose=True)
        logging.getLogger("batch_upload").setLevel(logging.DEBUG)

        logger.record_event("batch_paused", {"batch_id": "batch-123"})

        assert "└─ {'batch_id': 'batch-123'}" in caplog.text

    def test_verbose_mode_disabled_by_default(self):
        logger = create_batch_logger()
        assert logger.enable_verbose is False


class TestOrchestratorLogging:
    """The orchestrator reports its lifecycle through the recorder."""

    @pytest.mark.asyncio
    async def test_batch_run_emits_lifecycle_lines(self, caplog, candidates):
        orchestrator = BatchUploadOrchestrator(
            SimulatedRemoteProcessor(stage_latency=0.001),
            observability=create_batch_logger(),
        )

        state = await orchestrator.run(candidates[:2])

        assert f"[BATCH_STARTED] batch={state.id[:8]}" in caplog.text
        assert caplog.text.count("[ITEM_ADMITTED]") == 2
        assert caplog.text.count("[ITEM_COMPLETED]") == 2
        assert "[ITEM_STAGE]" in caplog.text
        assert "2/2 completed (100% success)" in caplog.text


class TestLoggingSetup:
    """Tests for the central logging configuration."""

    def test_log_level_follows_settings(self, monkeypatch):
        from receipt_batch.config import settings

        monkeypatch.setattr(settings, "log_level", "debug")
        assert get_log_level_from_settings() == logging.DEBUG

        monkeypatch.setattr(settings, "log_level", "warn")
        assert get_log_level_from_settings() == logging.WARNING

        monkeypatch.setattr(settings, "log_level", "nonsense")
        assert get_log_level_from_settings() == logging.INFO

    def test_setup_logging_installs_single_handler(self):
        root = logging.getLogger()
        original_handlers = root.handlers[:]
        original_level = root.level
        try:
            setup_logging()
            setup_logging()
            stream_handlers = [
                handler for handler in root.handlers if type(handler) is logging.StreamHandler
            ]
            assert len(stream_handlers) == 1
            assert logging.getLogger("urllib3").level == logging.WARNING
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
            for handler in original_handlers:
                root.addHandler(handler)
            root.setLevel(original_level)
