from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from .adapters.http_processor import HttpRemoteProcessor
from .adapters.simulated_processor import SimulatedRemoteProcessor
from .application.interfaces import RemoteProcessor
from .application.use_cases import BatchUploadUseCase
from .config import Settings, settings
from .observability.batch_logger import create_batch_logger
from .persistence.adapters.batch_filesystem import FileSystemBatchSessionRepository
from .services.batch_orchestrator import BatchUploadOrchestrator

logger = logging.getLogger(__name__)


class AppContainer:
    """Application composition root wiring the processor, repository, orchestrator and use case."""

    def __init__(self, app_settings: Settings | None = None) -> None:
        self.settings = app_settings or settings
        base_dir = Path(__file__).resolve().parents[2]

        self.remote_processor = self._create_remote_processor()
        self.observability = create_batch_logger()

        self.batch_session_repository: FileSystemBatchSessionRepository | None = None
        if self.settings.batch.persist_sessions:
            sessions_dir = self.settings.batch.sessions_dir
            if not sessions_dir.is_absolute():
                sessions_dir = base_dir / sessions_dir
            self.batch_session_repository = FileSystemBatchSessionRepository(sessions_dir.resolve())

        self.batch_orchestrator = BatchUploadOrchestrator(
            self.remote_processor,
            max_concurrent_uploads=self.settings.batch.max_concurrent_uploads,
            item_timeout_seconds=self.settings.batch.item_timeout_seconds,
            observability=self.observability,
            repository=self.batch_session_repository,
        )
        self.batch_upload_use_case = BatchUploadUseCase(
            self.batch_orchestrator,
            batch_settings=self.settings.batch,
        )

    def _create_remote_processor(self) -> RemoteProcessor:
        """Factory method selecting the remote processor from configuration."""
        processor_settings = self.settings.processor

        if processor_settings.provider == "http":
            logger.info("Using hosted backend processor at %s", processor_settings.base_url)
            return HttpRemoteProcessor(processor_settings)

        logger.info("Using simulated remote processor")
        return SimulatedRemoteProcessor(
            stage_latency=processor_settings.stage_latency_seconds,
            failure_rate=processor_settings.failure_rate,
            seed=processor_settings.seed,
        )


@lru_cache
def get_app_container() -> AppContainer:
    """Return a cached container instance so FastAPI dependencies share services."""

    return AppContainer()
