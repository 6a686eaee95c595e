"""In-process remote processor that walks an item through the upload stages."""

from __future__ import annotations

import asyncio
import logging
import random
from uuid import uuid4

from ..domain.batch_models import ProcessingStage, UploadItem
from ..domain.events import Failure, ProcessingHandle, StageUpdate, Success

logger = logging.getLogger(__name__)

# (stage, progress, message) in the order the hosted pipeline reports them
STAGE_SEQUENCE: tuple[tuple[ProcessingStage, int, str], ...] = (
    (ProcessingStage.UPLOADING_IMAGE, 10, "Uploading image to cloud storage..."),
    (ProcessingStage.UPLOADING_IMAGE, 40, "Image upload completed"),
    (ProcessingStage.CREATING_RECORD, 50, "Creating receipt record..."),
    (ProcessingStage.CREATING_RECORD, 70, "Receipt record created"),
    (ProcessingStage.AI_PROCESSING, 80, "Processing with AI Vision..."),
    (ProcessingStage.FINALIZING, 98, "Finalizing processing..."),
)


class SimulatedRemoteProcessor:
    """Remote processor used for local runs and tests.

    Emits the same stage/progress sequence as the hosted backend, sleeping
    ``stage_latency`` seconds between updates, then succeeds with a fresh
    receipt id or fails with probability ``failure_rate``. Outcomes are drawn
    when processing starts, so a fixed ``seed`` gives a reproducible batch.
    """

    def __init__(
        self,
        stage_latency: float = 0.05,
        failure_rate: float = 0.0,
        seed: int | None = None,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be between 0 and 1, got {failure_rate}")
        self.stage_latency = stage_latency
        self.failure_rate = failure_rate
        self._random = random.Random(seed)
        self.processed_item_ids: list[str] = []

    def process(self, item: UploadItem) -> ProcessingHandle:
        self.processed_item_ids.append(item.id)
        will_fail = self._random.random() < self.failure_rate
        handle = ProcessingHandle(item.id)
        handle.task = asyncio.get_running_loop().create_task(
            self._run(item, handle, will_fail),
            name=f"simulated-{item.id[:8]}",
        )
        return handle

    def cancel(self, handle: ProcessingHandle) -> None:
        logger.debug("Cancelling simulated processing of item %s", handle.item_id)
        handle.cancel()

    async def _run(self, item: UploadItem, handle: ProcessingHandle, will_fail: bool) -> None:
        for stage, progress, message in STAGE_SEQUENCE:
            await asyncio.sleep(self.stage_latency)
            if will_fail and stage is ProcessingStage.FINALIZING:
                handle.emit(Failure("AI processing failed"))
                return
            handle.emit(StageUpdate(stage, progress, message))

        await asyncio.sleep(self.stage_latency)
        result_id = str(uuid4())
        logger.debug("Simulated receipt %s created for %s", result_id, item.file_name)
        handle.emit(Success(result_id))
