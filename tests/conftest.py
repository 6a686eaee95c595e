from __future__ import annotations

import os
from pathlib import Path

import pytest

# Unit tests always run against the in-process processor, whatever a local .env says.
# This has to happen before any receipt_batch module reads the settings.
os.environ["PROCESSOR__PROVIDER"] = "simulated"
os.environ["BATCH__PERSIST_SESSIONS"] = "false"
os.environ.pop("PROCESSOR__BASE_URL", None)
os.environ.pop("PROCESSOR__API_KEY", None)

from receipt_batch.domain.batch_models import FileCandidate  # noqa: E402


@pytest.fixture
def receipt_files(tmp_path: Path) -> list[Path]:
    """Five small JPEG-looking files named receipt_0.jpg .. receipt_4.jpg."""
    paths = []
    for index in range(5):
        path = tmp_path / f"receipt_{index}.jpg"
        path.write_bytes(b"\xff\xd8\xff\xe0" + bytes(256 * (index + 1)))
        paths.append(path)
    return paths


@pytest.fixture
def candidates(receipt_files: list[Path]) -> list[FileCandidate]:
    return [FileCandidate.from_path(path) for path in receipt_files]
