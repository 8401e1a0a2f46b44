import re
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set
from pydantic import BaseModel, Field, field_serializer

PROJECT_FORMAT_VERSION = 2

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')

class MediaType(str, Enum):
    VIDEO = "video"
    IMAGE = "image"

class MediaFile(BaseModel):
    """One downloadable rendition of a video."""
    width: int = 0
    height: int = 0
    quality: str = ""
    link: str = ""

class MediaItem(BaseModel):
    type: MediaType = MediaType.VIDEO
    id: int
    duration: int = 0  # 0 for images
    width: int = 0
    height: int = 0
    author: str = ""
    author_url: str = ""
    source_url: str = ""
    thumbnail_url: str = ""

    # Video-specific
    preview_video_url: str = ""
    media_files: List[MediaFile] = Field(default_factory=list)

    # Image-specific
    original_image_url: str = ""
    large_image_url: str = ""

    # Local pipeline state
    local_raw_path: str = ""
    local_scaled_path: str = ""
    is_rejected: bool = False
    is_downloaded: bool = False
    is_scaled: bool = False
    is_uploaded: bool = False

    @property
    def is_video(self) -> bool:
        return self.type == MediaType.VIDEO

    @property
    def file_extension(self) -> str:
        return ".mp4" if self.is_video else ".jpg"

    def best_media_file(self, max_width: int = 1920) -> Optional[MediaFile]:
        """Largest rendition not wider than max_width; smallest one if none fits."""
        best = None
        best_area = 0
        for mf in self.media_files:
            area = mf.width * mf.height
            if mf.width <= max_width and area > best_area:
                best, best_area = mf, area
        if best is None and self.media_files:
            best = min(self.media_files, key=lambda mf: mf.width * mf.height)
        return best

    def download_url(self, max_width: int = 1920) -> str:
        if not self.is_video:
            return self.large_image_url or self.original_image_url
        best = self.best_media_file(max_width)
        return best.link if best else ""

    def raw_filename(self) -> str:
        author = self.author[:20].replace(" ", "_")
        if self.is_video:
            name = f"{self.id}_{author}_{self.duration}s{self.file_extension}"
        else:
            name = f"{self.id}_{author}{self.file_extension}"
        return _INVALID_FILENAME_CHARS.sub("_", name)

class Project(BaseModel):
    version: int = PROJECT_FORMAT_VERSION
    name: str
    path: Path = Field(default=Path("."), exclude=True)
    s3_bucket: str = ""
    category_id: str = ""
    search_query: str = ""
    min_duration: int = 30
    rejected_ids: Set[int] = Field(default_factory=set)
    media: List[MediaItem] = Field(default_factory=list)

    @field_serializer("rejected_ids")
    def _sorted_ids(self, ids: Set[int]) -> List[int]:
        return sorted(ids)

    @property
    def raw_dir(self) -> Path:
        return self.path / "raw"

    @property
    def scaled_dir(self) -> Path:
        return self.path / "scaled"

    def find(self, item_id: int) -> Optional[MediaItem]:
        for item in self.media:
            if item.id == item_id:
                return item
        return None
