"""Domain models for batch receipt uploads."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from .errors import InvalidTransitionError, ItemNotFoundError

DEFAULT_MAX_CONCURRENT_UPLOADS = 2

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".pdf": "application/pdf",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mime_type_for(file_name: str) -> str:
    """Infer the MIME type of a receipt file from its extension."""
    return MIME_TYPES.get(Path(file_name).suffix.lower(), "application/octet-stream")


def format_file_size(size_bytes: int) -> str:
    """Render a byte count the way the upload queue displays it (B / KB / MB)."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def clamp_progress(value: float) -> int:
    return int(min(100, max(0, round(value))))


class UploadItemStatus(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadItemStatus.COMPLETED, UploadItemStatus.FAILED, UploadItemStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (UploadItemStatus.UPLOADING, UploadItemStatus.PROCESSING)


class ProcessingStage(str, Enum):
    """Fine-grained phase of an active item, in pipeline order."""

    INITIALIZING = "initializing"
    UPLOADING_IMAGE = "uploading_image"
    CREATING_RECORD = "creating_record"
    AI_PROCESSING = "ai_processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self not in (ProcessingStage.COMPLETED, ProcessingStage.FAILED)

    @property
    def order(self) -> int:
        return list(ProcessingStage).index(self)

    @property
    def item_status(self) -> UploadItemStatus:
        """Item status implied by this stage."""
        if self in (ProcessingStage.INITIALIZING, ProcessingStage.UPLOADING_IMAGE):
            return UploadItemStatus.UPLOADING
        if self is ProcessingStage.COMPLETED:
            return UploadItemStatus.COMPLETED
        if self is ProcessingStage.FAILED:
            return UploadItemStatus.FAILED
        return UploadItemStatus.PROCESSING


class BatchStatus(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    READY = "ready"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


STAGE_DESCRIPTIONS = {
    ProcessingStage.INITIALIZING: "Preparing upload...",
    ProcessingStage.UPLOADING_IMAGE: "Uploading image to cloud storage...",
    ProcessingStage.CREATING_RECORD: "Creating receipt record...",
    ProcessingStage.AI_PROCESSING: "Processing with AI Vision...",
    ProcessingStage.FINALIZING: "Finalizing processing...",
}


@dataclass(frozen=True)
class FileCandidate:
    """A locally selected file that has not been queued yet."""

    source_handle: Any
    file_name: str
    file_size_bytes: int
    mime_type: str

    @classmethod
    def from_path(cls, path: Path | str) -> FileCandidate:
        path = Path(path)
        return cls(
            source_handle=path,
            file_name=path.name,
            file_size_bytes=path.stat().st_size,
            mime_type=mime_type_for(path.name),
        )


@dataclass
class UploadItem:
    """Tracks one file's journey from the queue to a terminal status.

    Items are mutated only through the ``mark_*``/``apply_stage`` methods,
    which enforce the item state machine and append one entry to ``log`` per
    transition. Once an item is terminal every further transition raises
    :class:`InvalidTransitionError`; retries create a new item instead.

    Attributes:
        source_handle: Opaque reference to the local file
        file_name: Display name of the file
        file_size_bytes: Size of the file in bytes
        mime_type: MIME type inferred at selection time
        id: Unique identifier assigned at creation
        status: Lifecycle status (queued, uploading, processing, completed, failed, cancelled)
        stage: Active phase, only set while uploading or processing
        progress: Percentage reported by the remote processor (0-100)
        error: Failure reason, only set when failed
        result_id: Identifier of the created receipt record, only set when completed
        retry_of: Id of the failed item this item retries
        created_at: Timestamp when the item was queued
        started_at: Timestamp when the item was admitted
        completed_at: Timestamp when the item reached a terminal status
        log: Ordered trace of transitions
    """

    source_handle: Any
    file_name: str
    file_size_bytes: int = 0
    mime_type: str = "application/octet-stream"
    id: str = field(default_factory=lambda: str(uuid4()))
    status: UploadItemStatus = UploadItemStatus.QUEUED
    stage: ProcessingStage | None = None
    progress: int = 0
    error: str | None = None
    result_id: str | None = None
    retry_of: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    log: list[str] = field(default_factory=list)

    @classmethod
    def from_candidate(cls, candidate: FileCandidate) -> UploadItem:
        return cls(
            source_handle=candidate.source_handle,
            file_name=candidate.file_name,
            file_size_bytes=candidate.file_size_bytes,
            mime_type=candidate.mime_type,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def effective_progress(self) -> int:
        """Progress as it counts towards the batch total."""
        if self.status is UploadItemStatus.COMPLETED:
            return 100
        if self.status in (UploadItemStatus.FAILED, UploadItemStatus.CANCELLED):
            return 0
        return self.progress

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    @property
    def file_size_display(self) -> str:
        return format_file_size(self.file_size_bytes)

    @property
    def status_description(self) -> str:
        if self.status is UploadItemStatus.QUEUED:
            return "Waiting in queue"
        if self.is_active:
            return STAGE_DESCRIPTIONS.get(self.stage, "Processing...")
        if self.status is UploadItemStatus.COMPLETED:
            return "Processing completed successfully!"
        if self.status is UploadItemStatus.FAILED:
            return f"Failed: {self.error}"
        return "Cancelled"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def mark_admitted(self) -> None:
        """Move a queued item into the active phase (mutates self)."""
        if self.status is not UploadItemStatus.QUEUED:
            raise InvalidTransitionError(f"Cannot admit item {self.id} in status {self.status.value}")
        now = utcnow()
        self._transition(UploadItemStatus.UPLOADING, ProcessingStage.INITIALIZING, "Admitted for upload", now)
        self.progress = 0
        if self.started_at is None:
            self.started_at = now

    def apply_stage(self, stage: ProcessingStage, progress: float, message: str | None = None) -> bool:
        """Apply a stage/progress update from the remote processor.

        Returns False when the update was ignored because it would move the
        item back to an earlier stage.
        """
        if not self.is_active:
            raise InvalidTransitionError(f"Cannot update stage of item {self.id} in status {self.status.value}")
        if not stage.is_active:
            raise InvalidTransitionError(f"Stage {stage.value} is not an active stage")
        if self.stage is not None and stage.order < self.stage.order:
            return False
        self._transition(stage.item_status, stage, message)
        self.progress = max(self.progress, clamp_progress(progress))
        return True

    def mark_completed(self, result_id: str, message: str | None = None) -> None:
        if not self.is_active:
            raise InvalidTransitionError(f"Cannot complete item {self.id} in status {self.status.value}")
        if self.status is UploadItemStatus.UPLOADING:
            self._transition(UploadItemStatus.PROCESSING, ProcessingStage.FINALIZING, "Upload finished")
        now = utcnow()
        self._transition(
            UploadItemStatus.COMPLETED,
            None,
            message or "Processing completed successfully!",
            now,
            logged_stage=ProcessingStage.COMPLETED,
        )
        self.result_id = result_id
        self.progress = 100
        self.completed_at = now

    def mark_failed(self, error: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(f"Cannot fail item {self.id} in status {self.status.value}")
        now = utcnow()
        logged_stage = ProcessingStage.FAILED if self.stage is not None else None
        self._transition(UploadItemStatus.FAILED, None, error, now, logged_stage=logged_stage)
        self.error = error
        self.completed_at = now

    def mark_cancelled(self, message: str = "Cancelled") -> None:
        if self.is_terminal:
            raise InvalidTransitionError(f"Cannot cancel item {self.id} in status {self.status.value}")
        now = utcnow()
        self._transition(UploadItemStatus.CANCELLED, None, message, now)
        self.completed_at = now

    def new_retry(self) -> UploadItem:
        """Create a fresh queued item for the same file; self is left untouched."""
        return UploadItem(
            source_handle=self.source_handle,
            file_name=self.file_name,
            file_size_bytes=self.file_size_bytes,
            mime_type=self.mime_type,
            retry_of=self.id,
        )

    def _transition(
        self,
        status: UploadItemStatus,
        stage: ProcessingStage | None,
        message: str | None = None,
        when: datetime | None = None,
        *,
        logged_stage: ProcessingStage | None = None,
    ) -> None:
        when = when or utcnow()
        shown_stage = logged_stage or stage
        entry = (
            f"{when.isoformat()} {_describe(self.status, self.stage)}"
            f" -> {_describe(status, shown_stage)}"
        )
        if message:
            entry = f"{entry}: {message}"
        self.log.append(entry)
        self.status = status
        self.stage = stage

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_size_bytes": self.file_size_bytes,
            "file_size": self.file_size_display,
            "mime_type": self.mime_type,
            "source": str(self.source_handle),
            "status": self.status.value,
            "stage": self.stage.value if self.stage else None,
            "status_description": self.status_description,
            "progress": self.progress,
            "error": self.error,
            "result_id": self.result_id,
            "retry_of": self.retry_of,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "log": list(self.log),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadItem:
        return cls(
            source_handle=data.get("source"),
            file_name=data["file_name"],
            file_size_bytes=data.get("file_size_bytes", 0),
            mime_type=data.get("mime_type", "application/octet-stream"),
            id=data["id"],
            status=UploadItemStatus(data["status"]),
            stage=ProcessingStage(data["stage"]) if data.get("stage") else None,
            progress=data.get("progress", 0),
            error=data.get("error"),
            result_id=data.get("result_id"),
            retry_of=data.get("retry_of"),
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=_parse_datetime(data.get("started_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
            log=list(data.get("log", [])),
        )


@dataclass
class BatchState:
    """All items submitted in one upload session plus batch-level status.

    Every aggregate below is computed from ``items`` on read, so a snapshot
    can never carry stale progress.
    """

    id: str = field(default_factory=lambda: str(uuid4()))
    status: BatchStatus = BatchStatus.IDLE
    items: list[UploadItem] = field(default_factory=list)
    max_concurrent_uploads: int = DEFAULT_MAX_CONCURRENT_UPLOADS
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")

    @property
    def queued_items(self) -> list[UploadItem]:
        return [item for item in self.items if item.status is UploadItemStatus.QUEUED]

    @property
    def active_items(self) -> list[UploadItem]:
        return [item for item in self.items if item.is_active]

    @property
    def completed_items(self) -> list[UploadItem]:
        return [item for item in self.items if item.status is UploadItemStatus.COMPLETED]

    @property
    def failed_items(self) -> list[UploadItem]:
        return [item for item in self.items if item.status is UploadItemStatus.FAILED]

    @property
    def cancelled_items(self) -> list[UploadItem]:
        return [item for item in self.items if item.status is UploadItemStatus.CANCELLED]

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def queued_count(self) -> int:
        return len(self.queued_items)

    @property
    def active_count(self) -> int:
        return len(self.active_items)

    @property
    def completed_count(self) -> int:
        return len(self.completed_items)

    @property
    def failed_count(self) -> int:
        return len(self.failed_items)

    @property
    def cancelled_count(self) -> int:
        return len(self.cancelled_items)

    @property
    def total_progress(self) -> int:
        """Mean effective progress of all items, rounded half up (0-100)."""
        if not self.items:
            return 0
        mean = sum(item.effective_progress for item in self.items) / len(self.items)
        return min(100, max(0, math.floor(mean + 0.5)))

    @property
    def success_rate(self) -> float:
        if not self.items:
            return 0.0
        return self.completed_count / self.total_items * 100

    @property
    def is_completed(self) -> bool:
        return self.status is BatchStatus.COMPLETED

    @property
    def is_processing(self) -> bool:
        return self.status is BatchStatus.PROCESSING

    @property
    def is_finished(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.CANCELLED)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_items)

    @property
    def all_terminal(self) -> bool:
        return bool(self.items) and all(item.is_terminal for item in self.items)

    def get_item(self, item_id: str) -> UploadItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ItemNotFoundError(item_id)

    def statistics(self) -> dict[str, Any]:
        return {
            "total_items": self.total_items,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "cancelled_count": self.cancelled_count,
            "active_count": self.active_count,
            "queued_count": self.queued_count,
            "success_rate": self.success_rate,
            "total_progress": self.total_progress,
            "is_processing": self.is_processing,
            "is_completed": self.is_completed,
            "has_failures": self.has_failures,
        }

    def estimated_time_remaining(self, now: datetime | None = None) -> timedelta | None:
        """Average time per completed item multiplied by the items left."""
        if not self.is_processing or self.started_at is None:
            return None
        completed = self.completed_count
        if completed == 0:
            return None
        elapsed = (now or utcnow()) - self.started_at
        remaining = self.total_items - completed
        return elapsed / completed * remaining

    def snapshot(self) -> BatchState:
        """Copy handed to readers; mutating it does not affect this state."""
        return replace(self, items=[replace(item, log=list(item.log)) for item in self.items])

    def to_dict(self) -> dict[str, Any]:
        remaining = self.estimated_time_remaining()
        return {
            "id": self.id,
            "status": self.status.value,
            "max_concurrent_uploads": self.max_concurrent_uploads,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "estimated_seconds_remaining": remaining.total_seconds() if remaining else None,
            **self.statistics(),
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchState:
        return cls(
            id=data["id"],
            status=BatchStatus(data["status"]),
            items=[UploadItem.from_dict(item) for item in data.get("items", [])],
            max_concurrent_uploads=data.get("max_concurrent_uploads", DEFAULT_MAX_CONCURRENT_UPLOADS),
            error=data.get("error"),
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=_parse_datetime(data.get("started_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
        )


def _describe(status: UploadItemStatus, stage: ProcessingStage | None) -> str:
    return f"{status.value}/{stage.value if stage else '-'}"


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
