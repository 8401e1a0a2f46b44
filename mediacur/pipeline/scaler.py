"""ffmpeg scale/crop pool: exactly one ffmpeg process per task."""

import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from mediacur.config.models import TranscodeConfig
from mediacur.domain.errors import FilesystemFailed, PipelineError
from mediacur.domain.events import ScaleCompleted, ScaleFailed, ScaleStarted
from mediacur.domain.models import MediaType
from mediacur.domain.tasks import ScaleTask
from mediacur.infrastructure.event_bus import EventBus
from mediacur.infrastructure.ffmpeg import FFmpegAdapter
from mediacur.infrastructure.process_runner import ProcessRunner
from mediacur.pipeline.worker_queue import ActiveWorker, BoundedWorkerQueue, Outcome, TaskHandle

RunnerFactory = Callable[..., ProcessRunner]


class ScalePipeline(BoundedWorkerQueue[ScaleTask]):
    pool_name = "scale"

    def __init__(
        self,
        config: TranscodeConfig,
        event_bus: EventBus,
        runner_factory: RunnerFactory = ProcessRunner,
        debug: bool = False,
    ):
        super().__init__(event_bus, max_concurrent=config.max_concurrent)
        self.config = config
        self.ffmpeg = FFmpegAdapter(config)
        self.debug = debug
        self._runner_factory = runner_factory

    def scale(
        self,
        item_id: int,
        media_type: MediaType,
        input_path: Path,
        output_path: Path,
        target_width: Optional[int] = None,
        target_height: Optional[int] = None,
        crf: Optional[int] = None,
        preset: Optional[str] = None,
    ) -> TaskHandle:
        """Enqueues a scale task; unset encoding parameters come from the config."""
        task = ScaleTask(
            item_id=item_id,
            media_type=media_type,
            input_path=Path(input_path),
            output_path=Path(output_path),
            target_width=target_width or self.config.target_width,
            target_height=target_height or self.config.target_height,
            crf=self.config.crf if crf is None else crf,
            preset=preset or self.config.preset,
        )
        return self.enqueue(task)

    def _admit(self, handle: TaskHandle) -> Union[ActiveWorker, Outcome]:
        task: ScaleTask = handle.task
        try:
            task.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return Outcome(error=FilesystemFailed(f"Cannot create directory: {task.output_path.parent} ({exc})"))
        return ActiveWorker(handle, scratch_paths=[task.output_path])

    def _execute(self, worker: ActiveWorker) -> Outcome:
        task: ScaleTask = worker.task
        cmd: List[str] = self.ffmpeg.build_command(task)
        start_time = time.monotonic()
        self.logger.info(
            f"FFMPEG_START: item={task.item_id} {task.input_path.name} "
            f"({task.media_type.value}, {task.target_width}x{task.target_height})"
        )
        if self.debug:
            self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        runner = self._runner_factory(cmd, timeout_s=self.config.timeout_s)
        worker.attach(runner)
        result = runner.run()
        elapsed = time.monotonic() - start_time
        self.logger.info(f"FFMPEG_END: item={task.item_id} code={result.returncode} elapsed={elapsed:.2f}s")
        runner.raise_for_result(result)
        return Outcome(result=task.output_path)

    def _settle(self, worker: ActiveWorker, outcome: Outcome) -> Outcome:
        if not outcome.ok:
            # Partial ffmpeg output never survives a failed task
            worker.discard_scratch()
        return outcome

    def _publish_started(self, task: ScaleTask):
        self.event_bus.publish(ScaleStarted(item_id=task.item_id))

    def _publish_success(self, task: ScaleTask, result: Any):
        self.event_bus.publish(ScaleCompleted(item_id=task.item_id, output_path=Path(result)))

    def _publish_failure(self, task: ScaleTask, error: PipelineError):
        self.event_bus.publish(ScaleFailed.from_error(error, item_id=task.item_id))
