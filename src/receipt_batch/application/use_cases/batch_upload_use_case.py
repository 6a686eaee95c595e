"""Use case for selecting receipt files and starting a batch upload."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence
from uuid import uuid4

from ...config import BatchUploadSettings, settings
from ...domain.batch_models import BatchState, BatchStatus, FileCandidate, format_file_size
from ...domain.errors import BatchSetupError, BatchStateError, BatchUploadError
from ...services.batch_orchestrator import BatchUploadOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class FileSelection:
    """Outcome of validating a set of local files."""

    accepted: list[FileCandidate] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)  # (file name, reason)

    @property
    def has_rejections(self) -> bool:
        return bool(self.rejected)


class BatchUploadUseCase:
    """Use case for uploading and processing multiple receipts as a batch.

    This use case:
    1. Validates the selected files (extension, size, existence)
    2. Skips invalid files and reports why
    3. Queues the valid files on the orchestrator
    4. Starts processing and returns the batch snapshot immediately

    Processing continues in the background; clients follow it through the
    orchestrator's snapshots or the SSE stream.

    Files written by :meth:`stage_upload` belong to the batch that the next
    :meth:`execute` starts. They are deleted when that batch is replaced
    (reset or a new batch) or when ``execute`` fails.
    """

    def __init__(
        self,
        orchestrator: BatchUploadOrchestrator,
        batch_settings: BatchUploadSettings | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.settings = batch_settings or settings.batch
        self.last_selection = FileSelection()
        self._pending_staging: list[Path] = []
        self._staging_by_batch: dict[str, list[Path]] = {}
        orchestrator.add_listener(self._discard_replaced_staging)

    def validate(self, paths: Sequence[Path | str]) -> FileSelection:
        selection = FileSelection()
        allowed = {extension.lower() for extension in self.settings.allowed_extensions}

        for raw_path in paths:
            path = Path(raw_path)
            if not path.is_file():
                selection.rejected.append((path.name, "File not found"))
                continue

            extension = path.suffix.lower()
            if extension not in allowed:
                selection.rejected.append(
                    (path.name, f"Unsupported file type: {extension or '(none)'}. Allowed: {', '.join(sorted(allowed))}")
                )
                continue

            candidate = FileCandidate.from_path(path)
            if candidate.file_size_bytes > self.settings.max_file_size_bytes:
                selection.rejected.append(
                    (
                        path.name,
                        f"File too large ({format_file_size(candidate.file_size_bytes)}). "
                        f"Maximum is {format_file_size(self.settings.max_file_size_bytes)}",
                    )
                )
                continue

            selection.accepted.append(candidate)

        for file_name, reason in selection.rejected:
            logger.warning("Skipping %s: %s", file_name, reason)
        return selection

    def execute(
        self,
        paths: Sequence[Path | str],
        max_concurrent_uploads: int | None = None,
    ) -> BatchState:
        """Validate the files, queue the valid ones and start the batch.

        Raises:
            BatchSetupError: If no files were given, too many were given, or
                none of them is valid
            BatchStateError: If a batch is already processing
        """
        staged, self._pending_staging = self._pending_staging, []
        try:
            state = self._start(paths, max_concurrent_uploads)
        except BatchUploadError:
            self._remove_staging(staged)
            raise
        if staged:
            self._staging_by_batch.setdefault(state.id, []).extend(staged)
        return state

    def _start(self, paths: Sequence[Path | str], max_concurrent_uploads: int | None) -> BatchState:
        if not paths:
            raise BatchSetupError("No files provided")
        if len(paths) > self.settings.max_files_per_batch:
            raise BatchSetupError(
                f"Too many files ({len(paths)}). Maximum is {self.settings.max_files_per_batch}."
            )

        current = self.orchestrator.state
        if current.status in (BatchStatus.PROCESSING, BatchStatus.PAUSED):
            raise BatchStateError("Batch upload already in progress")
        if current.is_finished:
            self.orchestrator.reset()

        selection = self.validate(paths)
        self.last_selection = selection
        if not selection.accepted:
            raise BatchSetupError("No valid files to upload")

        logger.info(
            "Selected %d of %d files for batch upload (%d rejected)",
            len(selection.accepted),
            len(paths),
            len(selection.rejected),
        )
        # start() validates before queueing, so a setup error leaves no items behind
        return self.orchestrator.start(selection.accepted, max_concurrent_uploads)

    def stage_upload(self, file_name: str, payload: bytes) -> Path:
        """Write uploaded bytes into the staging directory and return the local path."""
        staging_dir = Path(self.settings.staging_dir) / uuid4().hex[:8]
        staging_dir.mkdir(parents=True, exist_ok=True)
        path = staging_dir / (Path(file_name).name or "upload")
        path.write_bytes(payload)
        self._pending_staging.append(staging_dir)
        return path

    def _discard_replaced_staging(self, state: BatchState) -> None:
        for batch_id in [batch_id for batch_id in self._staging_by_batch if batch_id != state.id]:
            self._remove_staging(self._staging_by_batch.pop(batch_id))

    def _remove_staging(self, staging_dirs: Sequence[Path]) -> None:
        for staging_dir in staging_dirs:
            shutil.rmtree(staging_dir, ignore_errors=True)
        if staging_dirs:
            logger.debug("Removed %d staged uploads", len(staging_dirs))
