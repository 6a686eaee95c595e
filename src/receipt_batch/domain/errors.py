"""Exceptions raised by the batch upload core."""

from __future__ import annotations


class BatchUploadError(Exception):
    """Base class for batch upload errors."""


class BatchSetupError(BatchUploadError):
    """The batch could not be initialised (no items, bad configuration, ...)."""


class BatchStateError(BatchUploadError):
    """A control operation is not allowed in the batch's current status."""


class InvalidTransitionError(BatchUploadError):
    """An upload item was asked to make a transition its status forbids."""


class ItemNotFoundError(BatchUploadError, KeyError):
    """No item with the given id exists in the batch."""

    def __init__(self, item_id: str) -> None:
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"Upload item {self.item_id} not found"


class RemoteProcessingError(BatchUploadError):
    """The remote backend rejected or failed an upload step."""
