from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..domain.batch_models import BatchState, UploadItem
    from ..domain.events import ProcessingHandle


BatchStateListener = Callable[["BatchState"], None]


@runtime_checkable
class RemoteProcessor(Protocol):
    """Port for the collaborator that uploads a file and extracts the receipt.

    ``process`` is called at most once per item id. The returned handle emits
    zero or more ``StageUpdate`` events followed by exactly one ``Success`` or
    ``Failure``, unless it is cancelled first.
    """

    def process(self, item: UploadItem) -> ProcessingHandle:
        """Start remote processing of the item and return its event handle."""

    def cancel(self, handle: ProcessingHandle) -> None:
        """Ask the processor to stop; may be a no-op if already resolved."""


class ObservabilityRecorder(Protocol):
    """Port describing how domain events are emitted."""

    def record_event(
        self,
        stage: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        """Emit a structured event for the given stage.

        Args:
            stage: Name of the batch or item event
            details: Optional structured details about the event
        """


class NullObservabilityRecorder(ObservabilityRecorder):
    """No-op recorder used by default in tests and as a fallback."""

    def record_event(
        self,
        stage: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:  # noqa: D401
        """No-op implementation that does nothing."""
        return None
