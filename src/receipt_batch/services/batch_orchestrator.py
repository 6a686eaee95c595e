"""Batch upload orchestrator for uploading and processing receipt files concurrently."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Sequence

from ..application.interfaces import (
    BatchStateListener,
    NullObservabilityRecorder,
    ObservabilityRecorder,
    RemoteProcessor,
)
from ..config import settings
from ..domain.batch_models import (
    BatchState,
    BatchStatus,
    FileCandidate,
    UploadItem,
    UploadItemStatus,
    utcnow,
)
from ..domain.errors import BatchSetupError, BatchStateError, InvalidTransitionError, ItemNotFoundError
from ..domain.events import (
    Failure,
    ProcessingEvent,
    ProcessingHandle,
    StageUpdate,
    Success,
    is_terminal_event,
)
from ..persistence.ports import BatchSessionRepository

logger = logging.getLogger(__name__)

_WAKE = object()
_SELECTABLE = (BatchStatus.IDLE, BatchStatus.SELECTING, BatchStatus.READY)


@dataclass(frozen=True)
class _TimedOut(Failure):
    pass


class BatchUploadOrchestrator:
    """Drives one batch upload session through its lifecycle.

    The orchestrator is the only writer of the batch state. It:
    1. Queues selected files as upload items
    2. Admits queued items in selection order while fewer than
       ``max_concurrent_uploads`` items are active
    3. Hands each admitted item to the remote processor and forwards the
       processor's events into a single queue
    4. Applies those events one at a time on its drive task, so every item
       transition is followed by one consistent recomputation
    5. Bounds each item's active phase with a timeout

    Item failures are recorded on the item and never stop the batch.
    Readers get snapshots through :attr:`state` or registered listeners.

    Control methods (``pause``, ``cancel``, ``retry_failed``, ...) are
    synchronous and must run on the event loop thread that owns the batch.
    """

    def __init__(
        self,
        processor: RemoteProcessor,
        *,
        max_concurrent_uploads: int | None = None,
        item_timeout_seconds: float | None = None,
        observability: ObservabilityRecorder | None = None,
        repository: BatchSessionRepository | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            processor: Remote processor that uploads and extracts each item
            max_concurrent_uploads: Default concurrency cap for new batches
            item_timeout_seconds: Upper bound on an item's active phase
            observability: Recorder for batch and item events
            repository: Optional store that receives a snapshot after every change
        """
        if max_concurrent_uploads is None:
            max_concurrent_uploads = settings.batch.max_concurrent_uploads
        if item_timeout_seconds is None:
            item_timeout_seconds = settings.batch.item_timeout_seconds
        if max_concurrent_uploads < 1:
            raise BatchSetupError(f"max_concurrent_uploads must be at least 1, got {max_concurrent_uploads}")
        if item_timeout_seconds <= 0:
            raise BatchSetupError(f"item_timeout_seconds must be positive, got {item_timeout_seconds}")

        self.processor = processor
        self.max_concurrent_uploads = max_concurrent_uploads
        self.item_timeout_seconds = item_timeout_seconds
        self.observability = observability or NullObservabilityRecorder()
        self.repository = repository

        self._state = BatchState(max_concurrent_uploads=max_concurrent_uploads)
        self._listeners: list[BatchStateListener] = []
        self._events: asyncio.Queue[tuple[str | None, Any]] | None = None
        self._drive_task: asyncio.Task | None = None
        self._handles: dict[str, ProcessingHandle] = {}
        self._pumps: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    @property
    def state(self) -> BatchState:
        return self._state.snapshot()

    def get_item(self, item_id: str) -> UploadItem:
        item = self._state.get_item(item_id)
        return replace(item, log=list(item.log))

    def statistics(self) -> dict[str, Any]:
        return self._state.statistics()

    def add_listener(self, listener: BatchStateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: BatchStateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def begin_selection(self) -> BatchState:
        state = self._state
        if state.status is BatchStatus.IDLE:
            state.status = BatchStatus.SELECTING
            self._notify()
        elif state.status not in _SELECTABLE:
            raise BatchStateError(f"Cannot select files while batch is {state.status.value}")
        return self.state

    def add_files(self, candidates: Sequence[FileCandidate]) -> list[UploadItem]:
        """Queue the candidates in order and mark the batch ready."""
        state = self._state
        if state.status not in _SELECTABLE:
            raise BatchStateError(f"Cannot add files while batch is {state.status.value}")

        new_items = [UploadItem.from_candidate(candidate) for candidate in candidates]
        if new_items:
            state.items.extend(new_items)
            state.status = BatchStatus.READY
            logger.info("Added %d files to batch %s", len(new_items), state.id)
            self._notify()
        return [replace(item, log=list(item.log)) for item in new_items]

    def remove_item(self, item_id: str) -> BatchState:
        state = self._state
        if state.status not in _SELECTABLE:
            raise BatchStateError(f"Cannot remove items while batch is {state.status.value}")
        item = state.get_item(item_id)
        state.items.remove(item)
        if not state.items:
            state.status = BatchStatus.IDLE
        logger.info("Removed item %s from batch %s", item_id, state.id)
        self._notify()
        return self.state

    def clear_queue(self) -> BatchState:
        state = self._state
        if state.status not in _SELECTABLE:
            raise BatchStateError(f"Cannot clear queue while batch is {state.status.value}")
        state.items.clear()
        state.status = BatchStatus.IDLE
        state.error = None
        self._notify()
        return self.state

    def reset(self) -> BatchState:
        """Drop the current batch, stopping any in-flight work."""
        self._stop_inflight()
        if self._drive_task is not None and not self._drive_task.done():
            self._drive_task.cancel()
        self._drive_task = None
        self._events = None
        previous_id = self._state.id
        self._state = BatchState(max_concurrent_uploads=self.max_concurrent_uploads)
        logger.info("Batch %s reset; new batch %s", previous_id, self._state.id)
        self._notify()
        return self.state

    # ------------------------------------------------------------------
    # Processing controls
    # ------------------------------------------------------------------
    def start(
        self,
        candidates: Sequence[FileCandidate] | None = None,
        max_concurrent_uploads: int | None = None,
    ) -> BatchState:
        """Begin processing the queued items (plus ``candidates``, if given).

        Must be called from a running event loop. Setup problems raise
        :class:`BatchSetupError`, are stored in ``BatchState.error`` and leave
        the batch status and items untouched.
        """
        state = self._state
        if state.status in (BatchStatus.PROCESSING, BatchStatus.PAUSED):
            raise BatchStateError("Batch upload already in progress")
        if state.is_finished:
            raise BatchStateError(f"Batch is already {state.status.value}; reset before starting again")

        cap = state.max_concurrent_uploads if max_concurrent_uploads is None else max_concurrent_uploads
        if cap < 1:
            raise self._setup_error(f"max_concurrent_uploads must be at least 1, got {cap}")
        if not state.items and not candidates:
            raise self._setup_error("No items to process")
        try:
            asyncio.get_running_loop()
        except RuntimeError as exc:
            raise self._setup_error("Batch processing must be started from a running event loop") from exc

        if candidates:
            state.items.extend(UploadItem.from_candidate(candidate) for candidate in candidates)
        state.max_concurrent_uploads = cap
        state.status = BatchStatus.PROCESSING
        state.error = None
        if state.started_at is None:
            state.started_at = utcnow()

        logger.info("Starting batch %s with %d items (max %d concurrent)", state.id, state.total_items, cap)
        self.observability.record_event(
            "batch_started",
            {
                "batch_id": state.id,
                "total_items": state.total_items,
                "max_concurrent_uploads": cap,
            },
        )
        self._notify()
        self._ensure_driver()
        return self.state

    async def wait(self) -> BatchState:
        """Wait until the drive loop has nothing left to do and return the final state."""
        while True:
            task = self._drive_task
            if task is None or task.done():
                return self.state
            await asyncio.wait({task})

    async def run(
        self,
        candidates: Sequence[FileCandidate] | None = None,
        max_concurrent_uploads: int | None = None,
    ) -> BatchState:
        self.start(candidates, max_concurrent_uploads)
        return await self.wait()

    def pause(self) -> BatchState:
        """Stop admitting queued items; active items keep running."""
        state = self._state
        if state.status is BatchStatus.PROCESSING:
            state.status = BatchStatus.PAUSED
            logger.info("Batch %s paused", state.id)
            self.observability.record_event("batch_paused", {"batch_id": state.id})
            self._notify()
        return self.state

    def resume(self) -> BatchState:
        state = self._state
        if state.status is BatchStatus.PAUSED:
            state.status = BatchStatus.PROCESSING
            logger.info("Batch %s resumed", state.id)
            self.observability.record_event("batch_resumed", {"batch_id": state.id})
            self._notify()
            self._ensure_driver()
        return self.state

    def cancel(self) -> BatchState:
        """Cancel every unfinished item and the batch itself."""
        state = self._state
        if state.is_finished:
            return self.state

        for item in state.items:
            if not item.is_terminal:
                item.mark_cancelled("Batch cancelled")
        self._stop_inflight()
        state.status = BatchStatus.CANCELLED
        state.completed_at = utcnow()

        logger.info("Batch %s cancelled", state.id)
        self.observability.record_event("batch_cancelled", self._summary())
        self._notify()
        if self._events is not None:
            self._events.put_nowait((None, _WAKE))
        return self.state

    def cancel_item(self, item_id: str) -> UploadItem:
        state = self._state
        item = state.get_item(item_id)
        if item.is_terminal:
            raise InvalidTransitionError(f"Item {item_id} is already {item.status.value}")
        item.mark_cancelled("Cancelled by user")
        self._release(item_id, stop=True)
        self.observability.record_event(
            "item_cancelled",
            {"batch_id": state.id, "item_id": item_id, "file_name": item.file_name},
        )
        self._notify()
        if state.status in (BatchStatus.PROCESSING, BatchStatus.PAUSED):
            self._ensure_driver()
        return self.get_item(item_id)

    def retry_failed(self) -> list[UploadItem]:
        """Queue a fresh item for every failed item that has not been retried yet."""
        state = self._state
        if state.status is BatchStatus.CANCELLED:
            logger.warning("Ignoring retry request for cancelled batch %s", state.id)
            return []
        already_retried = {item.retry_of for item in state.items if item.retry_of}
        failed = [item for item in state.failed_items if item.id not in already_retried]
        return self._queue_retries(failed)

    def retry_item(self, item_id: str) -> UploadItem:
        state = self._state
        item = state.get_item(item_id)
        if item.status is not UploadItemStatus.FAILED:
            raise InvalidTransitionError(f"Only failed items can be retried; item {item_id} is {item.status.value}")
        if state.status is BatchStatus.CANCELLED:
            raise BatchStateError("Cannot retry items of a cancelled batch")
        return self._queue_retries([item])[0]

    # ------------------------------------------------------------------
    # Drive loop
    # ------------------------------------------------------------------
    def _ensure_driver(self) -> None:
        if self._events is None:
            self._events = asyncio.Queue()
        if self._drive_task is None or self._drive_task.done():
            loop = asyncio.get_running_loop()
            self._drive_task = loop.create_task(self._drive(), name=f"batch-drive-{self._state.id[:8]}")
        else:
            self._events.put_nowait((None, _WAKE))

    async def _drive(self) -> None:
        queue = self._events
        assert queue is not None
        self._step(None, _WAKE)
        while not self._state.is_finished:
            item_id, event = await queue.get()
            self._step(item_id, event)

    def _step(self, item_id: str | None, event: Any) -> None:
        """Apply one event, then admit, detect completion and publish once."""
        if event is not _WAKE and item_id is not None:
            self._apply_event(item_id, event)
        self._admit()
        self._check_completion()
        self._notify()

    def _admit(self) -> None:
        state = self._state
        if state.status is not BatchStatus.PROCESSING:
            return
        while state.active_count < state.max_concurrent_uploads:
            queued = state.queued_items
            if not queued:
                break
            self._admit_item(queued[0])

    def _admit_item(self, item: UploadItem) -> None:
        state = self._state
        item.mark_admitted()
        logger.debug("Admitted item %s (%s); %d active", item.id, item.file_name, state.active_count)
        self.observability.record_event(
            "item_admitted",
            {"batch_id": state.id, "item_id": item.id, "file_name": item.file_name},
        )

        try:
            handle = self.processor.process(replace(item, log=list(item.log)))
        except Exception as exc:
            logger.warning("Processor refused item %s: %s", item.id, exc)
            self._fail_item(item, f"Failed to start processing: {exc}")
            return

        self._handles[item.id] = handle
        self._pumps[item.id] = asyncio.create_task(
            self._pump(item.id, handle),
            name=f"upload-pump-{item.id[:8]}",
        )

    async def _pump(self, item_id: str, handle: ProcessingHandle) -> None:
        """Forward one handle's events to the drive loop, bounded by the item timeout."""
        queue = self._events
        assert queue is not None
        try:
            await asyncio.wait_for(self._forward(item_id, handle, queue), timeout=self.item_timeout_seconds)
        except asyncio.TimeoutError:
            self._cancel_handle(handle)
            queue.put_nowait((item_id, _TimedOut(f"Processing timed out after {self.item_timeout_seconds:g}s")))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Event stream for item %s failed: %s", item_id, exc)
            queue.put_nowait((item_id, Failure(str(exc) or exc.__class__.__name__)))

    async def _forward(
        self,
        item_id: str,
        handle: ProcessingHandle,
        queue: asyncio.Queue[tuple[str | None, Any]],
    ) -> None:
        async for event in handle:
            queue.put_nowait((item_id, event))
            if is_terminal_event(event):
                return
        queue.put_nowait((item_id, Failure("Processing ended without a result")))

    def _apply_event(self, item_id: str, event: ProcessingEvent) -> None:
        try:
            item = self._state.get_item(item_id)
        except ItemNotFoundError:
            logger.debug("Discarding %s for unknown item %s", type(event).__name__, item_id)
            return
        if item.is_terminal:
            logger.debug("Discarding late %s for %s item %s", type(event).__name__, item.status.value, item_id)
            return

        details = {"batch_id": self._state.id, "item_id": item.id, "file_name": item.file_name}
        try:
            if isinstance(event, StageUpdate):
                if item.apply_stage(event.stage, event.progress_percent, event.message):
                    self.observability.record_event(
                        "item_stage",
                        {**details, "stage": event.stage.value, "progress": item.progress},
                    )
                else:
                    logger.debug("Ignoring out-of-order stage %s for item %s", event.stage.value, item_id)
            elif isinstance(event, Success):
                item.mark_completed(event.result_id, event.message)
                self._release(item_id)
                self.observability.record_event("item_completed", {**details, "result_id": event.result_id})
            elif isinstance(event, Failure):
                self._fail_item(item, event.error_message, timed_out=isinstance(event, _TimedOut))
            else:
                logger.warning("Unknown processing event %r for item %s", event, item_id)
        except Exception as exc:
            logger.exception("Error applying %s to item %s", type(event).__name__, item_id)
            if not item.is_terminal:
                self._fail_item(item, f"Processing failed: {exc}")

    def _fail_item(self, item: UploadItem, error: str, *, timed_out: bool = False) -> None:
        item.mark_failed(error)
        self._release(item.id)
        self.observability.record_event(
            "item_timeout" if timed_out else "item_failed",
            {"batch_id": self._state.id, "item_id": item.id, "file_name": item.file_name, "error": error},
        )

    def _check_completion(self) -> None:
        state = self._state
        if state.status not in (BatchStatus.PROCESSING, BatchStatus.PAUSED) or not state.all_terminal:
            return
        state.status = BatchStatus.COMPLETED
        state.completed_at = utcnow()
        summary = self._summary()
        logger.info(
            "Batch %s completed: %d/%d items succeeded, %d failed",
            state.id,
            state.completed_count,
            state.total_items,
            state.failed_count,
        )
        self.observability.record_event("batch_completed", summary)

    def _queue_retries(self, failed: Sequence[UploadItem]) -> list[UploadItem]:
        state = self._state
        if not failed:
            return []
        retries = [item.new_retry() for item in failed]
        state.items.extend(retries)
        if state.status is BatchStatus.COMPLETED:
            state.status = BatchStatus.PROCESSING
            state.completed_at = None
            logger.info("Batch %s reopened to retry %d failed items", state.id, len(retries))
        for retry in retries:
            self.observability.record_event(
                "item_retry_queued",
                {"batch_id": state.id, "item_id": retry.id, "file_name": retry.file_name},
            )
        self._notify()
        if state.status in (BatchStatus.PROCESSING, BatchStatus.PAUSED):
            self._ensure_driver()
        return [replace(item, log=list(item.log)) for item in retries]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _release(self, item_id: str, *, stop: bool = False) -> None:
        handle = self._handles.pop(item_id, None)
        pump = self._pumps.pop(item_id, None)
        if stop:
            if handle is not None:
                self._cancel_handle(handle)
            if pump is not None and not pump.done():
                pump.cancel()

    def _stop_inflight(self) -> None:
        for item_id in list(self._handles):
            self._release(item_id, stop=True)
        for pump in self._pumps.values():
            pump.cancel()
        self._pumps.clear()

    def _cancel_handle(self, handle: ProcessingHandle) -> None:
        try:
            self.processor.cancel(handle)
        except Exception as exc:
            logger.warning("Processor failed to cancel item %s: %s", handle.item_id, exc)

    def _setup_error(self, message: str) -> BatchSetupError:
        logger.warning("Batch %s setup failed: %s", self._state.id, message)
        self._state.error = message
        self._notify()
        return BatchSetupError(message)

    def _summary(self) -> dict[str, Any]:
        state = self._state
        duration_ms = None
        if state.started_at and state.completed_at:
            duration_ms = (state.completed_at - state.started_at).total_seconds() * 1000
        return {
            "batch_id": state.id,
            "total_items": state.total_items,
            "completed_count": state.completed_count,
            "failed_count": state.failed_count,
            "cancelled_count": state.cancelled_count,
            "success_rate": state.success_rate,
            "duration_ms": duration_ms,
        }

    def _notify(self) -> None:
        snapshot = self._state.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Batch state listener failed")
        if self.repository is not None:
            try:
                self.repository.save(snapshot)
            except Exception:
                logger.exception("Failed to persist batch %s", snapshot.id)
