"""Observability recorder for batch uploads with concise, one-line progress logs."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..application.interfaces import ObservabilityRecorder

logger = logging.getLogger("batch_upload")


class BatchObservabilityRecorder(ObservabilityRecorder):
    """Clean, minimal logging for batch uploads.

    Provides:
    - Concise progress lines (e.g., "[ITEM_STAGE] batch=1a2b3c4d item=5e6f7a8b file=receipt.jpg 40%")
    - Batch and item identification on every line
    - Stage-specific metrics (progress, result id, error, success rate)
    """

    def __init__(
        self,
        batch_id: str | None = None,
        item_id: str | None = None,
        enable_verbose: bool = False,
    ) -> None:
        """Initialize batch observability recorder.

        Args:
            batch_id: Batch identifier added to every line
            item_id: Upload item identifier added to every line
            enable_verbose: Also log the raw details mapping at DEBUG level
        """
        self.batch_id = batch_id
        self.item_id = item_id
        self.enable_verbose = enable_verbose

        from .logging_setup import get_log_level_from_settings

        logger.setLevel(get_log_level_from_settings())

    def record_event(
        self,
        stage: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        """Record event with clean, minimal logging format."""
        details = details or {}

        msg_parts = [f"[{stage.upper()}]"]

        batch_id = details.get("batch_id") or self.batch_id
        item_id = details.get("item_id") or self.item_id
        if batch_id:
            msg_parts.append(f"batch={batch_id[:8]}")
        if item_id:
            msg_parts.append(f"item={item_id[:8]}")

        file_name = details.get("file_name")
        if file_name:
            msg_parts.append(f"file={file_name}")

        if stage == "batch_started":
            msg_parts.append(f"{details.get('total_items', 0)} items")
            msg_parts.append(f"max_concurrent={details.get('max_concurrent_uploads')}")
        elif stage == "item_stage":
            item_stage = details.get("stage")
            if item_stage:
                msg_parts.append(str(item_stage))
            progress = details.get("progress")
            if progress is not None:
                msg_parts.append(f"{progress}%")
        elif stage == "item_completed":
            result_id = details.get("result_id")
            if result_id:
                msg_parts.append(f"✓ result={result_id}")
        elif stage in ("item_failed", "item_timeout"):
            error = details.get("error")
            if error:
                msg_parts.append(f"✗ {error}")
        elif stage in ("batch_completed", "batch_cancelled"):
            completed = details.get("completed_count", 0)
            total = details.get("total_items", 0)
            msg_parts.append(f"{completed}/{total} completed")
            success_rate = details.get("success_rate")
            if success_rate is not None:
                msg_parts.append(f"({success_rate:.0f}% success)")
            duration = details.get("duration_ms")
            if duration:
                msg_parts.append(f"⏱ {duration:.0f}ms")

        message = " ".join(msg_parts)
        if stage in ("item_failed", "item_timeout"):
            logger.warning(message)
        else:
            logger.info(message)

        if self.enable_verbose and details:
            logger.debug(f"  └─ {dict(details)}")


def create_batch_logger(
    batch_id: str | None = None,
    item_id: str | None = None,
) -> BatchObservabilityRecorder:
    """Factory function to create batch observability recorder.

    Args:
        batch_id: Batch identifier
        item_id: Upload item identifier

    Returns:
        Configured BatchObservabilityRecorder instance
    """
    return BatchObservabilityRecorder(
        batch_id=batch_id,
        item_id=item_id,
        enable_verbose=False,  # Clean logs by default
    )
