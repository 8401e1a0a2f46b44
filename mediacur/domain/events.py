"""Domain events for the download / scale / upload pipelines.

Pipelines publish these on the EventBus from their worker threads; the caller
(CLI status display, coordinator bookkeeping) subscribes to the ones it needs.
Every task produces at most one terminal event (Completed or Failed); tasks
discarded by cancel_all() produce none.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel

from .errors import PipelineError


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class ItemEvent(Event):
    """Base class for events about one caller item."""

    item_id: int


class FailureEvent(Event):
    """Mixin payload for failures: message plus the error class name."""

    error_message: str
    error_type: str = "PipelineError"

    @classmethod
    def from_error(cls, error: PipelineError, **fields):
        return cls(error_message=str(error), error_type=type(error).__name__, **fields)


# ── Downloads ──────────────────────────────────────────────────────────────────

class DownloadStarted(ItemEvent):
    pass


class DownloadProgress(ItemEvent):
    """Emitted for every received chunk; total is 0 when the size is unknown."""

    received: int
    total: int = 0


class DownloadCompleted(ItemEvent):
    path: Path


class DownloadFailed(ItemEvent, FailureEvent):
    pass


class AllDownloadsCompleted(Event):
    pass


# ── Scaling ────────────────────────────────────────────────────────────────────

class ScaleStarted(ItemEvent):
    pass


class ScaleCompleted(ItemEvent):
    output_path: Path


class ScaleFailed(ItemEvent, FailureEvent):
    pass


# ── Uploads ────────────────────────────────────────────────────────────────────

class UploadStarted(ItemEvent):
    pass


class UploadCompleted(ItemEvent):
    key: str


class UploadFailed(ItemEvent, FailureEvent):
    pass


class IndexUploadCompleted(Event):
    pass


class IndexUploadFailed(FailureEvent):
    pass


class CatalogUploadCompleted(Event):
    key: str


class CatalogUploadFailed(FailureEvent):
    pass


class CategoriesUploadCompleted(Event):
    pass


class CategoriesUploadFailed(FailureEvent):
    pass


class RemoteDeleteCompleted(Event):
    bucket: str
    key: str


class RemoteDeleteFailed(FailureEvent):
    bucket: str
    key: Optional[str] = None


# ── Drain ──────────────────────────────────────────────────────────────────────

class PoolDrained(Event):
    """Emitted once each time a pipeline goes from busy to empty backlog + no workers."""

    pool: str


class AllTasksCompleted(Event):
    """Emitted when the scale and upload pools are simultaneously drained."""

    pass


# ── Project bookkeeping ────────────────────────────────────────────────────────

class ProjectSaveFailed(FailureEvent):
    """project.json could not be written after a pool drained."""

    project: str = ""
