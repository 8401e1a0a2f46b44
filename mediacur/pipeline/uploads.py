"""aws CLI pool for media uploads, manifest uploads and scoped remote deletes.

Manifest tasks point at a locally synthesized temp file. That file is removed
after a successful upload or when cancel_all() drops the task, and kept after a
failed upload so it can be inspected.
"""

from pathlib import Path
from typing import Any, Callable, Union

from mediacur.config.models import StorageConfig
from mediacur.domain.errors import PipelineError
from mediacur.domain.events import (
    CatalogUploadCompleted,
    CatalogUploadFailed,
    CategoriesUploadCompleted,
    CategoriesUploadFailed,
    IndexUploadCompleted,
    IndexUploadFailed,
    RemoteDeleteCompleted,
    RemoteDeleteFailed,
    UploadCompleted,
    UploadFailed,
    UploadStarted,
)
from mediacur.domain.tasks import (
    INTERNAL_ITEM_ID,
    RemoteDeleteTask,
    StorageTask,
    TaskKind,
    UploadTask,
)
from mediacur.infrastructure.aws_cli import AwsCliAdapter
from mediacur.infrastructure.event_bus import EventBus
from mediacur.infrastructure.process_runner import ProcessRunner
from mediacur.pipeline.worker_queue import ActiveWorker, BoundedWorkerQueue, Outcome, TaskHandle


class UploadPipeline(BoundedWorkerQueue[StorageTask]):
    pool_name = "upload"

    def __init__(
        self,
        config: StorageConfig,
        event_bus: EventBus,
        runner_factory: Callable[..., ProcessRunner] = ProcessRunner,
        debug: bool = False,
    ):
        super().__init__(event_bus, max_concurrent=config.max_concurrent)
        self.config = config
        self.aws = AwsCliAdapter(config)
        self.debug = debug
        self._runner_factory = runner_factory

    def upload(self, item_id: int, local_path: Path, bucket: str, key: str) -> TaskHandle:
        return self.enqueue(UploadTask(item_id=item_id, input_path=Path(local_path), bucket=bucket, key=key))

    def upload_manifest(self, kind: TaskKind, local_path: Path, bucket: str, key: str) -> TaskHandle:
        task = UploadTask(
            item_id=INTERNAL_ITEM_ID,
            kind=kind,
            input_path=Path(local_path),
            bucket=bucket,
            key=key,
        )
        if not task.is_manifest:
            raise ValueError(f"Not a manifest kind: {kind}")
        return self.enqueue(task)

    def delete_catalog(self, bucket: str, category_id: str) -> TaskHandle:
        return self.enqueue(RemoteDeleteTask(bucket=bucket, category_id=category_id))

    def _admit(self, handle: TaskHandle) -> Union[ActiveWorker, Outcome]:
        task = handle.task
        if isinstance(task, UploadTask) and task.is_manifest:
            return ActiveWorker(handle, scratch_paths=[task.input_path])
        return ActiveWorker(handle)

    def _execute(self, worker: ActiveWorker) -> Outcome:
        task: StorageTask = worker.task
        cmd = self.aws.build_command(task)
        self.logger.info(f"AWS_START: {task.kind.value} item={task.item_id} s3://{task.bucket}/{task.key}")
        if self.debug:
            self.logger.debug(f"AWS_CMD: {' '.join(cmd)}")

        runner = self._runner_factory(cmd, timeout_s=self.config.timeout_s)
        worker.attach(runner)
        result = runner.run()
        runner.raise_for_result(result)
        return Outcome(result=task.key)

    def _settle(self, worker: ActiveWorker, outcome: Outcome) -> Outcome:
        task = worker.task
        if outcome.ok and isinstance(task, UploadTask) and task.is_manifest:
            try:
                task.input_path.unlink(missing_ok=True)
            except OSError as exc:
                self.logger.warning(f"Failed to remove uploaded manifest {task.input_path}: {exc}")
        return outcome

    def _discard(self, handle: TaskHandle):
        task = handle.task
        if isinstance(task, UploadTask) and task.is_manifest:
            try:
                task.input_path.unlink(missing_ok=True)
            except OSError as exc:
                self.logger.warning(f"Failed to remove discarded manifest {task.input_path}: {exc}")

    def _publish_started(self, task: StorageTask):
        if task.kind == TaskKind.UPLOAD:
            self.event_bus.publish(UploadStarted(item_id=task.item_id))

    def _publish_success(self, task: StorageTask, result: Any):
        kind = task.kind
        if kind == TaskKind.UPLOAD:
            self.event_bus.publish(UploadCompleted(item_id=task.item_id, key=task.key))
        elif kind == TaskKind.INDEX_UPLOAD:
            self.event_bus.publish(IndexUploadCompleted())
        elif kind == TaskKind.CATALOG_UPLOAD:
            self.event_bus.publish(CatalogUploadCompleted(key=task.key))
        elif kind == TaskKind.CATEGORIES_UPLOAD:
            self.event_bus.publish(CategoriesUploadCompleted())
        elif kind == TaskKind.REMOTE_DELETE:
            self.event_bus.publish(RemoteDeleteCompleted(bucket=task.bucket, key=task.key))

    def _publish_failure(self, task: StorageTask, error: PipelineError):
        kind = task.kind
        if kind == TaskKind.UPLOAD:
            self.event_bus.publish(UploadFailed.from_error(error, item_id=task.item_id))
        elif kind == TaskKind.INDEX_UPLOAD:
            self.event_bus.publish(IndexUploadFailed.from_error(error))
        elif kind == TaskKind.CATALOG_UPLOAD:
            self.event_bus.publish(CatalogUploadFailed.from_error(error))
        elif kind == TaskKind.CATEGORIES_UPLOAD:
            self.event_bus.publish(CategoriesUploadFailed.from_error(error))
        elif kind == TaskKind.REMOTE_DELETE:
            self.event_bus.publish(RemoteDeleteFailed.from_error(error, bucket=task.bucket, key=task.key))
