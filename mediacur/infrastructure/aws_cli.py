from typing import List
from mediacur.config.models import StorageConfig
from mediacur.domain.tasks import RemoteDeleteTask, StorageTask, UploadTask

def s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key.lstrip('/')}"

class AwsCliAdapter:
    """Builds `aws s3` command lines for the upload pipeline."""

    def __init__(self, config: StorageConfig):
        self.config = config

    def _profile_args(self) -> List[str]:
        profile = (self.config.profile or "").strip()
        if not profile or profile == "default":
            return []
        return ["--profile", profile]

    def build_command(self, task: StorageTask) -> List[str]:
        if isinstance(task, RemoteDeleteTask):
            # Scoped to the category's own catalog object, never a recursive wipe
            args = ["s3", "rm", s3_uri(task.bucket, task.key)]
        elif isinstance(task, UploadTask):
            args = ["s3", "cp", str(task.input_path), s3_uri(task.bucket, task.key)]
        else:
            raise TypeError(f"Unsupported storage task: {type(task).__name__}")
        return [self.config.aws_binary, *args, *self._profile_args()]
