from __future__ import annotations

from typing import Protocol

from ..domain.batch_models import BatchState


class BatchSessionRepository(Protocol):
    """Port defining how batch session snapshots are persisted."""

    def save(self, state: BatchState) -> None:
        """Persist the snapshot, replacing any earlier one for the same batch."""

    def get(self, batch_id: str) -> BatchState | None:
        """Fetch the latest snapshot of a batch."""

    def list_batches(self, limit: int = 10) -> list[BatchState]:
        """Return the most recent batches, newest first."""
