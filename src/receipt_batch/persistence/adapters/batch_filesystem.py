"""Filesystem adapter for batch session snapshots."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ...domain.batch_models import BatchState, UploadItem
from ..ports import BatchSessionRepository


class FileSystemBatchSessionRepository(BatchSessionRepository):
    """Stores batch session snapshots as JSON artifacts on disk.

    Storage structure:
        artifacts/batches/{batch_id}/
            batch.json          - Batch metadata, aggregates and item order
            items/
                {item_id}.json  - Individual upload item snapshots
    """

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def save(self, state: BatchState) -> None:
        """Persist the batch metadata and every item it holds."""
        batch_data = state.to_dict()
        batch_data["item_ids"] = [item.id for item in state.items]
        batch_data.pop("items")
        self._write_json(self._batch_dir(state.id) / "batch.json", batch_data)

        for item in state.items:
            self._write_json(self._items_dir(state.id) / f"{item.id}.json", item.to_dict())

    def get(self, batch_id: str) -> BatchState | None:
        """Fetch a batch snapshot by id, items in their original order."""
        batch_data = self._read_json(self._batch_dir(batch_id) / "batch.json")
        if not batch_data:
            return None

        items: list[dict[str, Any]] = []
        for item_id in batch_data.get("item_ids", []):
            item_data = self._read_json(self._items_dir(batch_id) / f"{item_id}.json")
            if item_data:
                items.append(item_data)
        batch_data["items"] = items
        return BatchState.from_dict(batch_data)

    def list_batches(self, limit: int = 10) -> list[BatchState]:
        """Return the most recently written batches."""
        batches: list[BatchState] = []

        for batch_dir in sorted(
            self.base_dir.iterdir(),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        ):
            if not batch_dir.is_dir():
                continue

            batch = self.get(batch_dir.name)
            if batch:
                batches.append(batch)

            if len(batches) >= limit:
                break

        return batches

    def get_item(self, batch_id: str, item_id: str) -> UploadItem | None:
        item_data = self._read_json(self._items_dir(batch_id) / f"{item_id}.json")
        return UploadItem.from_dict(item_data) if item_data else None

    # ------------------------------------------------------------------
    # IO utilities
    # ------------------------------------------------------------------
    def _batch_dir(self, batch_id: str) -> Path:
        return self.base_dir / batch_id

    def _items_dir(self, batch_id: str) -> Path:
        return self._batch_dir(batch_id) / "items"

    def _write_json(self, path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)

    def _read_json(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
