from typing import List
from mediacur.config.models import TranscodeConfig
from mediacur.domain.models import MediaType
from mediacur.domain.tasks import ScaleTask

def scale_crop_filter(width: int, height: int) -> str:
    """Scale up to cover width x height, then center-crop to the exact size."""
    return f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}"

class FFmpegAdapter:
    """Builds ffmpeg command lines for the scale pipeline."""

    def __init__(self, config: TranscodeConfig):
        self.config = config

    def build_command(self, task: ScaleTask) -> List[str]:
        """Constructs the ffmpeg command line arguments for one task."""
        vf = scale_crop_filter(task.target_width, task.target_height)
        cmd = [
            self.config.ffmpeg_binary,
            "-y",  # Overwrite output files
            "-i", str(task.input_path),
        ]

        if task.media_type == MediaType.IMAGE:
            cmd.extend([
                "-vf", vf,
                "-q:v", str(self.config.image_quality),
            ])
        else:
            cmd.extend([
                "-an",
                "-vf", vf,
                "-c:v", "libx264",
                "-preset", task.preset,
                "-crf", str(task.crf),
                "-pix_fmt", "yuv420p",
                "-movflags", "+faststart",
            ])

        cmd.append(str(task.output_path))
        return cmd
