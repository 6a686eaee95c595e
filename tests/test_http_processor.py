"""Tests for the hosted backend processor, with the HTTP session replaced by a fake."""

import asyncio
import logging

import pytest
import requests

from receipt_batch.adapters.http_processor import HttpRemoteProcessor, describe_function_error
from receipt_batch.config import ProcessorSettings
from receipt_batch.domain.batch_models import ProcessingStage, UploadItem
from receipt_batch.domain.errors import BatchSetupError
from receipt_batch.domain.events import Failure, StageUpdate, Success


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Records requests and answers them from canned responses."""

    def __init__(
        self,
        function_response=None,
        statuses=("processing", "complete"),
        fail_upload=False,
        status_body=None,
        record_error=None,
    ):
        self.headers = {}
        self.calls = []
        self.function_response = function_response or FakeResponse(200, {"success": True})
        self.statuses = list(statuses)
        self.fail_upload = fail_upload
        self.status_body = status_body
        self.record_error = record_error

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        if "/storage/v1/object/" in url:
            if self.fail_upload:
                raise requests.ConnectionError("connection refused")
            return FakeResponse(200, {"Key": url})
        if "/functions/v1/" in url:
            return self.function_response
        if self.record_error is not None:
            raise self.record_error
        return FakeResponse(201)

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        if self.status_body is not None:
            return FakeResponse(200, self.status_body)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return FakeResponse(200, [{"processing_status": status}])


@pytest.fixture
def processor_settings():
    return ProcessorSettings(
        provider="http",
        base_url="https://backend.example.com/",
        api_key="secret-key",
        poll_interval_seconds=0,
    )


@pytest.fixture
def item(receipt_files):
    path = receipt_files[0]
    return UploadItem(source_handle=path, file_name=path.name, file_size_bytes=path.stat().st_size, mime_type="image/jpeg")


async def collect(handle):
    return [event async for event in handle]


class TestDescribeFunctionError:
    """Backend error bodies map to user-facing messages."""

    def test_worker_limit(self):
        message = describe_function_error(546, '{"code":"WORKER_LIMIT"}')
        assert message == "Processing failed due to resource limits. Please try again later."

    def test_compute_resources(self):
        message = describe_function_error(500, "not enough compute resources")
        assert message == "The receipt is too complex to process. Try using a smaller image."

    def test_other_status(self):
        assert describe_function_error(502, None) == "AI processing failed with status: 502"


class TestHttpRemoteProcessor:
    """Tests for the upload, record, invoke and poll sequence."""

    def test_requires_base_url(self):
        with pytest.raises(BatchSetupError):
            HttpRemoteProcessor(ProcessorSettings(provider="http"), session=FakeSession())

    def test_sets_auth_headers(self, processor_settings):
        session = FakeSession()
        HttpRemoteProcessor(processor_settings, session=session)

        assert session.headers["apikey"] == "secret-key"
        assert session.headers["Authorization"] == "Bearer secret-key"

    def test_api_key_is_hidden_from_repr(self, processor_settings):
        assert "secret-key" not in repr(processor_settings)

    @pytest.mark.asyncio
    async def test_successful_processing(self, processor_settings, item):
        session = FakeSession()
        processor = HttpRemoteProcessor(processor_settings, session=session)

        events = await collect(processor.process(item))

        assert isinstance(events[-1], Success)
        receipt_id = events[-1].result_id
        stages = [event.stage for event in events if isinstance(event, StageUpdate)]
        assert stages[0] is ProcessingStage.UPLOADING_IMAGE
        assert stages[-1] is ProcessingStage.FINALIZING

        method, upload_url, upload_kwargs = session.calls[0]
        assert upload_url.startswith("https://backend.example.com/storage/v1/object/receipt_images/batch/")
        assert upload_url.endswith(f"_{receipt_id[:8]}.jpg")
        assert upload_kwargs["headers"] == {"Content-Type": "image/jpeg"}

        _, record_url, record_kwargs = session.calls[1]
        assert record_url == "https://backend.example.com/rest/v1/receipts"
        assert record_kwargs["json"]["id"] == receipt_id
        assert record_kwargs["json"]["processing_status"] == "processing"

        _, function_url, function_kwargs = session.calls[2]
        assert function_url == "https://backend.example.com/functions/v1/process-receipt"
        assert function_kwargs["json"]["receiptId"] == receipt_id
        assert function_kwargs["json"]["modelId"] == "gemini-2.5-flash-lite"

        polls = [call for call in session.calls if call[0] == "GET"]
        assert len(polls) == 2
        assert polls[0][2]["params"]["id"] == f"eq.{receipt_id}"

    @pytest.mark.asyncio
    async def test_failed_ai_status(self, processor_settings, item):
        session = FakeSession(statuses=("failed_ai",))
        processor = HttpRemoteProcessor(processor_settings, session=session)

        events = await collect(processor.process(item))

        assert events[-1] == Failure("AI processing failed")

    @pytest.mark.asyncio
    async def test_function_error_is_mapped(self, processor_settings, item):
        session = FakeSession(function_response=FakeResponse(546, text='{"code":"WORKER_LIMIT"}'))
        processor = HttpRemoteProcessor(processor_settings, session=session)

        events = await collect(processor.process(item))

        assert events[-1] == Failure("Processing failed due to resource limits. Please try again later.")
        assert not [call for call in session.calls if call[0] == "GET"]

    @pytest.mark.asyncio
    async def test_transport_error_becomes_failure(self, processor_settings, item):
        processor = HttpRemoteProcessor(processor_settings, session=FakeSession(fail_upload=True))

        events = await collect(processor.process(item))

        assert isinstance(events[-1], Failure)
        assert events[-1].error_message.startswith("Request failed:")

    @pytest.mark.asyncio
    async def test_unreadable_file_becomes_failure(self, processor_settings, tmp_path):
        processor = HttpRemoteProcessor(processor_settings, session=FakeSession())
        missing = UploadItem(source_handle=tmp_path / "gone.jpg", file_name="gone.jpg")

        events = await collect(processor.process(missing))

        assert events[-1].error_message.startswith("Could not read gone.jpg")

    @pytest.mark.asyncio
    async def test_malformed_status_response_becomes_failure(self, processor_settings, item):
        session = FakeSession(status_body={"message": "relation does not exist"})
        processor = HttpRemoteProcessor(processor_settings, session=session)

        handle = processor.process(item)
        events = await asyncio.wait_for(collect(handle), timeout=2)

        assert isinstance(events[-1], Failure)
        assert events[-1].error_message.startswith("Unexpected status response")
        assert sum(isinstance(event, (Success, Failure)) for event in events) == 1
        await asyncio.wait_for(handle.task, timeout=1)

    @pytest.mark.asyncio
    async def test_unexpected_error_still_ends_with_failure(self, processor_settings, item, caplog):
        session = FakeSession(record_error=TypeError("bad record payload"))
        processor = HttpRemoteProcessor(processor_settings, session=session)

        with caplog.at_level(logging.ERROR, logger="receipt_batch.adapters.http_processor"):
            events = await asyncio.wait_for(collect(processor.process(item)), timeout=2)

        assert events[-1] == Failure("Processing failed: bad record payload")
        assert "Unexpected error while processing" in caplog.text
