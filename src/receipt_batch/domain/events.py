"""Events emitted by a remote processor while it works on one upload item."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Union

from .batch_models import ProcessingStage


@dataclass(frozen=True)
class StageUpdate:
    stage: ProcessingStage
    progress_percent: float
    message: str | None = None

    def __post_init__(self) -> None:
        if not self.stage.is_active:
            raise ValueError(f"StageUpdate requires an active stage, got {self.stage.value}")


@dataclass(frozen=True)
class Success:
    result_id: str
    message: str | None = None


@dataclass(frozen=True)
class Failure:
    error_message: str


ProcessingEvent = Union[StageUpdate, Success, Failure]


def is_terminal_event(event: ProcessingEvent) -> bool:
    return isinstance(event, (Success, Failure))


class ProcessingHandle:
    """Event channel for one item's remote processing.

    The processor pushes events with :meth:`emit`; the orchestrator consumes
    them by iterating the handle. Iteration stops after the first terminal
    event or when the handle is closed. ``task`` optionally holds the
    processor's own worker task so :meth:`cancel` can stop it.
    """

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        self.cancelled = False
        self.closed = False
        self.task: asyncio.Task | None = None
        self._queue: asyncio.Queue[ProcessingEvent | None] = asyncio.Queue()

    def emit(self, event: ProcessingEvent) -> None:
        if self.closed:
            return
        self._queue.put_nowait(event)
        if is_terminal_event(event):
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)

    def cancel(self) -> None:
        """Best-effort cancellation; events emitted afterwards are dropped."""
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.close()

    async def events(self) -> AsyncIterator[ProcessingEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if is_terminal_event(event):
                return

    def __aiter__(self) -> AsyncIterator[ProcessingEvent]:
        return self.events()
