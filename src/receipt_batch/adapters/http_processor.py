"""Remote processor backed by the hosted receipt backend (storage, REST and edge function)."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from pathlib import Path
from typing import Any, Callable, TypeVar
from uuid import uuid4

import requests

from ..config import ProcessorSettings, settings
from ..domain.batch_models import ProcessingStage, UploadItem, utcnow
from ..domain.errors import BatchSetupError, RemoteProcessingError
from ..domain.events import Failure, ProcessingHandle, StageUpdate, Success

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPLETE_STATUSES = {"complete"}
FAILED_STATUSES = {"failed", "failed_ai"}


def describe_function_error(status_code: int, body: str | None) -> str:
    """Map a non-200 response of the processing function to a user-facing message."""
    text = body or ""
    if "WORKER_LIMIT" in text:
        return "Processing failed due to resource limits. Please try again later."
    if "compute resources" in text:
        return "The receipt is too complex to process. Try using a smaller image."
    return f"AI processing failed with status: {status_code}"


class HttpRemoteProcessor:
    """Uploads a receipt to the hosted backend and waits for AI extraction.

    Per item:
    1. Upload the file bytes to object storage
    2. Insert a placeholder receipt record
    3. Invoke the processing function for the record
    4. Poll the record until ``processing_status`` is final

    ``requests`` calls are blocking, so each one runs in the loop's default
    executor. The orchestrator's item timeout bounds the polling loop.
    """

    def __init__(
        self,
        processor_settings: ProcessorSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = processor_settings or settings.processor
        if not self.settings.base_url:
            raise BatchSetupError("processor.base_url must be set to use the http processor")

        self._base_url = self.settings.base_url.rstrip("/")
        self._timeout = self.settings.request_timeout_seconds
        self._session = session or requests.Session()
        if self.settings.api_key:
            self._session.headers.update({
                "apikey": self.settings.api_key,
                "Authorization": f"Bearer {self.settings.api_key}",
            })

    def process(self, item: UploadItem) -> ProcessingHandle:
        handle = ProcessingHandle(item.id)
        handle.task = asyncio.get_running_loop().create_task(
            self._run(item, handle),
            name=f"http-upload-{item.id[:8]}",
        )
        return handle

    def cancel(self, handle: ProcessingHandle) -> None:
        # In-flight HTTP requests finish in the executor; their results are dropped.
        handle.cancel()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _run(self, item: UploadItem, handle: ProcessingHandle) -> None:
        receipt_id = str(uuid4())
        try:
            handle.emit(StageUpdate(ProcessingStage.UPLOADING_IMAGE, 10, "Uploading image to cloud storage..."))
            image_url = await self._call(self._upload_image, item, receipt_id)
            handle.emit(StageUpdate(ProcessingStage.UPLOADING_IMAGE, 40, "Image upload completed"))

            handle.emit(StageUpdate(ProcessingStage.CREATING_RECORD, 50, "Creating receipt record..."))
            await self._call(self._create_record, receipt_id, image_url)
            handle.emit(StageUpdate(ProcessingStage.CREATING_RECORD, 70, "Receipt record created"))

            handle.emit(StageUpdate(ProcessingStage.AI_PROCESSING, 80, "Processing with AI Vision..."))
            await self._call(self._invoke_function, receipt_id, image_url)

            status = await self._wait_for_result(receipt_id)
            if status in COMPLETE_STATUSES:
                handle.emit(StageUpdate(ProcessingStage.FINALIZING, 98, "Finalizing processing..."))
                handle.emit(Success(receipt_id))
            else:
                handle.emit(Failure("AI processing failed"))
        except RemoteProcessingError as exc:
            logger.warning("Remote processing of %s failed: %s", item.file_name, exc)
            handle.emit(Failure(str(exc)))
        except requests.exceptions.RequestException as exc:
            logger.warning("Request for %s failed: %s", item.file_name, exc)
            handle.emit(Failure(f"Request failed: {exc}"))
        except OSError as exc:
            handle.emit(Failure(f"Could not read {item.file_name}: {exc}"))
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", item.file_name)
            handle.emit(Failure(f"Processing failed: {exc}"))

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _wait_for_result(self, receipt_id: str) -> str:
        while True:
            status = await self._call(self._fetch_status, receipt_id)
            if status in COMPLETE_STATUSES or status in FAILED_STATUSES:
                logger.debug("Receipt %s finished with status %s", receipt_id, status)
                return status
            await asyncio.sleep(self.settings.poll_interval_seconds)

    # ------------------------------------------------------------------
    # Blocking HTTP calls
    # ------------------------------------------------------------------
    def _upload_image(self, item: UploadItem, receipt_id: str) -> str:
        payload = Path(item.source_handle).read_bytes()
        extension = Path(item.file_name).suffix.lower()
        object_path = f"{self.settings.user_prefix}/{int(time.time() * 1000)}_{receipt_id[:8]}{extension}"
        bucket = self.settings.storage_bucket

        response = self._session.post(
            f"{self._base_url}/storage/v1/object/{bucket}/{object_path}",
            data=payload,
            headers={"Content-Type": item.mime_type},
            timeout=self._timeout,
        )
        response.raise_for_status()
        return f"{self._base_url}/storage/v1/object/public/{bucket}/{object_path}"

    def _create_record(self, receipt_id: str, image_url: str) -> None:
        now = utcnow()
        record = {
            "id": receipt_id,
            "merchant": "Processing...",
            "date": now.date().isoformat(),
            "total": 0.0,
            "tax": 0.0,
            "payment_method": "",
            "image_url": image_url,
            "status": "unreviewed",
            "processing_status": "processing",
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        response = self._session.post(
            f"{self._base_url}/rest/v1/{self.settings.records_table}",
            json=record,
            headers={"Prefer": "return=minimal"},
            timeout=self._timeout,
        )
        response.raise_for_status()

    def _invoke_function(self, receipt_id: str, image_url: str) -> None:
        response = self._session.post(
            f"{self._base_url}/functions/v1/{self.settings.function_name}",
            json={
                "receiptId": receipt_id,
                "imageUrl": image_url,
                "modelId": self.settings.model_id,
            },
            timeout=self._timeout,
        )
        if response.status_code != 200:
            raise RemoteProcessingError(describe_function_error(response.status_code, response.text))

    def _fetch_status(self, receipt_id: str) -> str | None:
        response = self._session.get(
            f"{self._base_url}/rest/v1/{self.settings.records_table}",
            params={"id": f"eq.{receipt_id}", "select": "processing_status"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        rows = response.json()
        if not isinstance(rows, list):
            raise RemoteProcessingError(f"Unexpected status response for receipt {receipt_id}")
        if not rows:
            return None
        return rows[0].get("processing_status")
