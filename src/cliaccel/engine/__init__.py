"""Request execution: coalescing, adaptive concurrency, batches and streams."""

from cliaccel.engine.batch import BatchExecutor
from cliaccel.engine.cancel import CancelToken
from cliaccel.engine.concurrency import ConcurrencyController, Permit
from cliaccel.engine.core import Engine
from cliaccel.engine.dedup import Deduplicator
from cliaccel.engine.stream import Stream, StreamCursor

__all__ = [
    "BatchExecutor",
    "CancelToken",
    "ConcurrencyController",
    "Deduplicator",
    "Engine",
    "Permit",
    "Stream",
    "StreamCursor",
]
