from typing import Optional
from pydantic import BaseModel, Field, field_validator

class GeneralConfig(BaseModel):
    projects_dir: str = "projects"
    temp_dir: Optional[str] = None  # None = system temp dir
    log_path: Optional[str] = None
    debug: bool = False

class DownloadConfig(BaseModel):
    """HTTP download pool settings."""
    max_concurrent: int = Field(default=8, ge=1)
    user_agent: str = "PexelManager/1.0"
    max_download_width: int = Field(default=1920, gt=0)
    chunk_size: int = Field(default=64 * 1024, ge=1024)
    timeout_s: Optional[float] = Field(default=None, gt=0)

class TranscodeConfig(BaseModel):
    """ffmpeg scale/crop pool settings."""
    ffmpeg_binary: str = "ffmpeg"
    max_concurrent: int = Field(default=8, ge=1)
    target_width: int = Field(default=1280, gt=0)
    target_height: int = Field(default=800, gt=0)
    crf: int = Field(default=22, ge=0, le=51)
    preset: str = "slow"
    image_quality: int = Field(default=2, ge=1, le=31)
    timeout_s: Optional[float] = Field(default=None, gt=0)

    @field_validator("preset")
    @classmethod
    def validate_preset(cls, v: str) -> str:
        allowed = {
            "ultrafast", "superfast", "veryfast", "faster", "fast",
            "medium", "slow", "slower", "veryslow", "placebo",
        }
        if v not in allowed:
            raise ValueError(f"Unsupported x264 preset: {v}. Use one of {sorted(allowed)}")
        return v

class StorageConfig(BaseModel):
    """aws CLI upload pool settings."""
    aws_binary: str = "aws"
    bucket: str = "decent-de1-media"
    profile: str = "default"
    max_concurrent: int = Field(default=8, ge=1)
    media_prefix: str = "media/"
    index_description: str = "1280x800 cropped, production-ready media"
    timeout_s: Optional[float] = Field(default=None, gt=0)

    @field_validator("media_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        v = v.strip("/")
        return f"{v}/" if v else ""

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    downloads: DownloadConfig = Field(default_factory=DownloadConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
