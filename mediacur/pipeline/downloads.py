"""HTTP download pool.

Each task streams its URL into ``<dest>.part`` and renames it onto ``<dest>``
once the transfer finishes. A destination that already exists satisfies the
task at dispatch time without a transfer and without occupying a slot.
"""

import socket
from pathlib import Path
from typing import Any, Optional, Union

import requests

from mediacur.config.models import DownloadConfig
from mediacur.domain.errors import Cancelled, FilesystemFailed, PipelineError, TransferFailed
from mediacur.domain.events import (
    AllDownloadsCompleted,
    DownloadCompleted,
    DownloadFailed,
    DownloadProgress,
    DownloadStarted,
    PoolDrained,
)
from mediacur.domain.tasks import DownloadTask
from mediacur.infrastructure.event_bus import EventBus
from mediacur.pipeline.worker_queue import ActiveWorker, BoundedWorkerQueue, Outcome, TaskHandle


def _content_length(response) -> int:
    try:
        return max(0, int(response.headers.get("Content-Length") or 0))
    except (TypeError, ValueError):
        return 0


def _connection_socket(response) -> Optional[socket.socket]:
    """The socket under a streamed requests response, if it can be reached."""
    raw = getattr(response, "raw", None)
    sock = getattr(getattr(raw, "_connection", None), "sock", None)
    if sock is None:
        # http.client response -> socket file -> socket
        fp = getattr(getattr(raw, "_fp", None), "fp", None)
        sock = getattr(getattr(fp, "raw", fp), "_sock", None)
    return sock if isinstance(sock, socket.socket) else None


class _Transfer:
    """Abort adapter for an in-flight streamed response.

    Response.close() waits on the connection while another thread is blocked
    reading it. Shutting the socket down wakes that read immediately; the worker
    then closes the response itself on its way out.
    """

    def __init__(self, response):
        self.response = response

    def abort(self):
        sock = _connection_socket(self.response)
        if sock is None:
            self.response.close()
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already closed by the worker


class DownloadPipeline(BoundedWorkerQueue[DownloadTask]):
    pool_name = "download"

    def __init__(
        self,
        config: DownloadConfig,
        event_bus: EventBus,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(event_bus, max_concurrent=config.max_concurrent)
        self.config = config
        self.session = session if session is not None else requests.Session()

    def download(self, item_id: int, url: str, dest_path: Path) -> TaskHandle:
        return self.enqueue(DownloadTask(item_id=item_id, url=url, dest_path=Path(dest_path)))

    def _admit(self, handle: TaskHandle) -> Union[ActiveWorker, Outcome]:
        task: DownloadTask = handle.task
        dest = task.dest_path

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return Outcome(error=FilesystemFailed(f"Cannot create directory: {dest.parent} ({exc})", dest.parent))

        if dest.exists():
            self.logger.info(f"DOWNLOAD_SKIP: item={task.item_id} already present: {dest.name}")
            return Outcome(result=dest)

        part = task.part_path
        try:
            stream = open(part, "wb")
        except OSError as exc:
            return Outcome(error=FilesystemFailed(f"Cannot create file: {part} ({exc})", part))

        return ActiveWorker(handle, scratch_paths=[part], stream=stream)

    def _execute(self, worker: ActiveWorker) -> Outcome:
        task: DownloadTask = worker.task
        self.logger.info(f"DOWNLOAD_START: item={task.item_id} url={task.url}")

        try:
            response = self.session.get(
                task.url,
                stream=True,
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.timeout_s,
            )
            with response:
                worker.attach(_Transfer(response))
                response.raise_for_status()
                total = _content_length(response)
                received = 0
                for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                    if worker.cancelled.is_set():
                        raise Cancelled()
                    if not chunk:
                        continue
                    worker.stream.write(chunk)
                    received += len(chunk)
                    worker.handle._set_progress(received, total)
                    self.event_bus.publish(
                        DownloadProgress(item_id=task.item_id, received=received, total=total)
                    )
        except requests.RequestException as exc:
            # RequestException derives from OSError, so it must be matched first
            raise TransferFailed(f"Download failed: {exc}") from exc
        except OSError as exc:
            raise FilesystemFailed(f"Failed to write {task.part_path.name}: {exc}", task.part_path) from exc

        return Outcome(result=task.dest_path)

    def _settle(self, worker: ActiveWorker, outcome: Outcome) -> Outcome:
        task: DownloadTask = worker.task
        part = task.part_path
        if not outcome.ok:
            worker.discard_scratch()
            return outcome

        try:
            # .part is complete; replace whatever sits at the destination
            if task.dest_path.exists():
                task.dest_path.unlink()
            part.replace(task.dest_path)
        except OSError as exc:
            worker.discard_scratch()
            return Outcome(error=FilesystemFailed(f"Failed to rename downloaded file: {exc}", task.dest_path))
        return outcome

    def _publish_started(self, task: DownloadTask):
        self.event_bus.publish(DownloadStarted(item_id=task.item_id))

    def _publish_success(self, task: DownloadTask, result: Any):
        self.event_bus.publish(DownloadCompleted(item_id=task.item_id, path=Path(result)))

    def _publish_failure(self, task: DownloadTask, error: PipelineError):
        self.event_bus.publish(DownloadFailed.from_error(error, item_id=task.item_id))

    def _publish_drained(self):
        self.event_bus.publish(PoolDrained(pool=self.pool_name))
        self.event_bus.publish(AllDownloadsCompleted())
