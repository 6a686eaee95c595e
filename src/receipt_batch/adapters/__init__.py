from __future__ import annotations

from .http_processor import HttpRemoteProcessor
from .simulated_processor import SimulatedRemoteProcessor

__all__ = [
    "HttpRemoteProcessor",
    "SimulatedRemoteProcessor",
]
