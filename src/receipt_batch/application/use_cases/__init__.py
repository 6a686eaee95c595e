from __future__ import annotations

from .batch_upload_use_case import BatchUploadUseCase, FileSelection

__all__ = [
    "BatchUploadUseCase",
    "FileSelection",
]
