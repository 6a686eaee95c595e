"""Batch upload API endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sse_starlette.sse import EventSourceResponse

from ..application.use_cases import BatchUploadUseCase
from ..container import AppContainer, get_app_container
from ..domain.batch_models import BatchState
from ..domain.errors import BatchSetupError, BatchUploadError, ItemNotFoundError
from ..services.batch_orchestrator import BatchUploadOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batch", tags=["batch"])


def get_batch_orchestrator(container: AppContainer = Depends(get_app_container)) -> BatchUploadOrchestrator:
    """Dependency for the process-wide batch orchestrator."""
    return container.batch_orchestrator


def get_batch_upload_use_case(container: AppContainer = Depends(get_app_container)) -> BatchUploadUseCase:
    """Dependency for batch upload use case."""
    return container.batch_upload_use_case


def _http_error(exc: BatchUploadError) -> HTTPException:
    if isinstance(exc, ItemNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BatchSetupError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


@router.post("/upload")
async def batch_upload(
    files: list[UploadFile] = File(...),
    max_concurrent_uploads: int | None = None,
    use_case: BatchUploadUseCase = Depends(get_batch_upload_use_case),
) -> dict:
    """Upload receipt files and start processing them as one batch.

    The response is returned as soon as the batch has started; progress can
    be followed via ``GET /batch`` or the ``/batch/stream`` SSE endpoint.

    Example response:
        {
            "batch": {"id": "...", "status": "processing", "total_items": 3, ...},
            "rejected": [{"file_name": "notes.txt", "reason": "Unsupported file type: .txt. ..."}]
        }
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    paths = []
    for file in files:
        if not file.filename:
            raise HTTPException(status_code=400, detail="All files must have filenames")
        paths.append(use_case.stage_upload(file.filename, await file.read()))

    try:
        state = use_case.execute(paths, max_concurrent_uploads=max_concurrent_uploads)
    except BatchUploadError as exc:
        raise _http_error(exc) from exc

    return {
        "batch": state.to_dict(),
        "rejected": [
            {"file_name": file_name, "reason": reason}
            for file_name, reason in use_case.last_selection.rejected
        ],
    }


@router.get("")
async def get_batch(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    """Full snapshot of the current batch, items included."""
    return orchestrator.state.to_dict()


@router.get("/statistics")
async def get_batch_statistics(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    return orchestrator.statistics()


@router.get("/sessions")
async def list_batch_sessions(
    limit: int = 10,
    container: AppContainer = Depends(get_app_container),
) -> dict:
    """List persisted batch sessions, newest first (empty when persistence is off)."""
    repository = container.batch_session_repository
    if repository is None:
        return {"persistence_enabled": False, "batches": [], "total": 0}

    batches = repository.list_batches(limit=limit)
    return {
        "persistence_enabled": True,
        "batches": [
            {
                "id": batch.id,
                "status": batch.status.value,
                "created_at": batch.created_at.isoformat(),
                **batch.statistics(),
            }
            for batch in batches
        ],
        "total": len(batches),
    }


@router.post("/pause")
async def pause_batch(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    return orchestrator.pause().to_dict()


@router.post("/resume")
async def resume_batch(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    return orchestrator.resume().to_dict()


@router.post("/cancel")
async def cancel_batch(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    return orchestrator.cancel().to_dict()


@router.post("/retry")
async def retry_failed_items(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    retried = orchestrator.retry_failed()
    return {"retried": [item.to_dict() for item in retried], "batch": orchestrator.state.to_dict()}


@router.post("/reset")
async def reset_batch(orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator)) -> dict:
    return orchestrator.reset().to_dict()


@router.post("/items/{item_id}/retry")
async def retry_item(
    item_id: str,
    orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator),
) -> dict:
    try:
        return orchestrator.retry_item(item_id).to_dict()
    except BatchUploadError as exc:
        raise _http_error(exc) from exc


@router.post("/items/{item_id}/cancel")
async def cancel_item(
    item_id: str,
    orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator),
) -> dict:
    try:
        return orchestrator.cancel_item(item_id).to_dict()
    except BatchUploadError as exc:
        raise _http_error(exc) from exc


@router.delete("/items/{item_id}")
async def remove_item(
    item_id: str,
    orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator),
) -> dict:
    try:
        return orchestrator.remove_item(item_id).to_dict()
    except BatchUploadError as exc:
        raise _http_error(exc) from exc


@router.get("/stream")
async def batch_status_stream(
    orchestrator: BatchUploadOrchestrator = Depends(get_batch_orchestrator),
) -> EventSourceResponse:
    """Server-Sent Events stream of batch snapshots.

    Event types:
        - batch_update: The batch or one of its items changed
        - batch_completed: The batch reached completed or cancelled; the stream ends
    """
    updates: asyncio.Queue[BatchState] = asyncio.Queue()
    orchestrator.add_listener(updates.put_nowait)

    async def event_generator() -> AsyncGenerator[dict, None]:
        try:
            snapshot = orchestrator.state
            while True:
                event = "batch_completed" if snapshot.is_finished else "batch_update"
                yield {"event": event, "data": json.dumps(snapshot.to_dict())}
                if snapshot.is_finished:
                    break
                snapshot = await updates.get()
        finally:
            orchestrator.remove_listener(updates.put_nowait)

    return EventSourceResponse(event_generator())
