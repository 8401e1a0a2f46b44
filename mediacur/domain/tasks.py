"""Units of work accepted by the bounded pipelines.

A task carries everything its pipeline needs to run it; ``item_id`` is the
caller's correlation key and is ``-1`` for pipeline-internal artifacts such as
manifests and remote deletes.
"""

from enum import Enum
from pathlib import Path
from typing import Literal, Union
from pydantic import BaseModel, Field

from .models import MediaType

INTERNAL_ITEM_ID = -1

class TaskKind(str, Enum):
    DOWNLOAD = "Download"
    SCALE = "Scale"
    UPLOAD = "Upload"
    INDEX_UPLOAD = "IndexUpload"
    CATALOG_UPLOAD = "CatalogUpload"
    CATEGORIES_UPLOAD = "CategoriesUpload"
    REMOTE_DELETE = "RemoteDelete"

MANIFEST_KINDS = frozenset({
    TaskKind.INDEX_UPLOAD,
    TaskKind.CATALOG_UPLOAD,
    TaskKind.CATEGORIES_UPLOAD,
})

class Task(BaseModel):
    item_id: int = INTERNAL_ITEM_ID
    kind: TaskKind

class DownloadTask(Task):
    kind: Literal[TaskKind.DOWNLOAD] = TaskKind.DOWNLOAD
    url: str
    dest_path: Path

    @property
    def part_path(self) -> Path:
        return self.dest_path.with_name(self.dest_path.name + ".part")

class ScaleTask(Task):
    kind: Literal[TaskKind.SCALE] = TaskKind.SCALE
    media_type: MediaType = MediaType.VIDEO
    input_path: Path
    output_path: Path
    target_width: int = Field(gt=0)
    target_height: int = Field(gt=0)
    crf: int = Field(default=22, ge=0, le=51)
    preset: str = "slow"

class UploadTask(Task):
    kind: Literal[
        TaskKind.UPLOAD,
        TaskKind.INDEX_UPLOAD,
        TaskKind.CATALOG_UPLOAD,
        TaskKind.CATEGORIES_UPLOAD,
    ] = TaskKind.UPLOAD
    input_path: Path
    bucket: str
    key: str

    @property
    def is_manifest(self) -> bool:
        return self.kind in MANIFEST_KINDS

class RemoteDeleteTask(Task):
    kind: Literal[TaskKind.REMOTE_DELETE] = TaskKind.REMOTE_DELETE
    bucket: str
    category_id: str

    @property
    def key(self) -> str:
        return f"catalogs/{self.category_id}.json"

StorageTask = Union[UploadTask, RemoteDeleteTask]
