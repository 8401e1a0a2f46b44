"""Bounded worker queue shared by the download, scale and upload pipelines.

A pipeline owns a FIFO backlog of task handles and a slot table of active
workers keyed by task id. ``_dispatch()`` is the only place that moves work from
the backlog into a slot, so ``len(active) <= max_concurrent`` always holds.

Workers run on a thread pool. Backlog, slot table and drain bookkeeping are only
touched while holding ``self._lock``; events and handle results are delivered
outside the lock on the thread that finished the task.

Drain detection: a terminal outcome is "settling" from the moment its worker
leaves the slot table until its terminal event has been published and the
backlog refilled. The pool reports drained only when backlog, slot table and
settling count are all empty, and only once per busy period.
"""

import concurrent.futures
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, Generic, List, Optional, Tuple, TypeVar, Union

from mediacur.domain.errors import Cancelled, PipelineError
from mediacur.domain.events import PoolDrained
from mediacur.domain.tasks import Task
from mediacur.infrastructure.event_bus import EventBus

T = TypeVar("T", bound=Task)

DEFAULT_MAX_CONCURRENT = 8


class TaskHandle(Generic[T]):
    """Caller-side view of one enqueued task.

    Resolves with the task's result (e.g. the final path), fails with the task's
    PipelineError, or is cancelled when the pipeline discards it in cancel_all().
    """

    def __init__(self, task_id: int, task: T):
        self.task_id = task_id
        self.task = task
        self._future: concurrent.futures.Future = concurrent.futures.Future()
        self._progress: Tuple[int, int] = (0, 0)

    def __repr__(self) -> str:
        return f"TaskHandle(task_id={self.task_id}, kind={self.task.kind.value}, item_id={self.task.item_id})"

    @property
    def progress(self) -> Tuple[int, int]:
        """(received, total) for transfers; total is 0 when unknown."""
        return self._progress

    def result(self, timeout: Optional[float] = None) -> Any:
        return self._future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout)

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def add_done_callback(self, fn):
        self._future.add_done_callback(lambda _future: fn(self))

    def _set_progress(self, received: int, total: int):
        self._progress = (received, total)

    def _resolve(self, result: Any):
        try:
            self._future.set_result(result)
        except concurrent.futures.InvalidStateError:
            pass  # already cancelled

    def _fail(self, error: PipelineError):
        try:
            self._future.set_exception(error)
        except concurrent.futures.InvalidStateError:
            pass

    def _cancel(self):
        self._future.cancel()


@dataclass
class Outcome:
    result: Any = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(eq=False)
class ActiveWorker:
    """Binds an in-flight operation to the task occupying one slot.

    ``scratch_paths`` are partial outputs owned by the task; they are deleted if
    the task is discarded by cancel_all(). ``stream`` is a resource opened at
    admission (the .part file of a download) and closed by ``release()``.
    """

    handle: TaskHandle
    scratch_paths: List[Path] = field(default_factory=list)
    stream: Any = None
    cancelled: threading.Event = field(default_factory=threading.Event)
    _operation: Any = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def task_id(self) -> int:
        return self.handle.task_id

    @property
    def task(self) -> Task:
        return self.handle.task

    def attach(self, operation: Any):
        """Registers the abortable operation (anything with ``abort()``)."""
        with self._lock:
            if self.cancelled.is_set():
                raise Cancelled()
            self._operation = operation

    def abort(self):
        with self._lock:
            self.cancelled.set()
            operation = self._operation
        if operation is not None:
            operation.abort()
        self.discard_scratch()

    def discard_scratch(self):
        for path in self.scratch_paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logging.getLogger(__name__).warning(f"Failed to remove partial output {path}: {exc}")

    def release(self):
        stream, self.stream = self.stream, None
        if stream is not None:
            stream.close()


class BoundedWorkerQueue(Generic[T]):
    """FIFO backlog drained by at most ``max_concurrent`` workers.

    Subclasses implement ``_execute`` and the ``_publish_*`` hooks, and may
    override ``_admit`` (pre-admission checks run at dispatch time) and
    ``_settle`` (terminal bookkeeping run under the lock).
    """

    pool_name = "queue"

    def __init__(self, event_bus: EventBus, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.event_bus = event_bus
        self.max_concurrent = max_concurrent
        self.logger = logging.getLogger(__name__)
        self.drain_generation = 0

        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._backlog: Deque[TaskHandle] = deque()
        self._active: Dict[int, ActiveWorker] = {}
        self._settling = 0
        self._draining = 0
        self._drain_reported = True
        self._task_ids = itertools.count(1)
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def tag(self) -> str:
        return self.pool_name.upper()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._backlog)

    @property
    def is_idle(self) -> bool:
        """True when backlog, slot table and settling outcomes are all empty."""
        with self._lock:
            return self._is_idle_locked()

    def enqueue(self, task: T) -> TaskHandle:
        """Appends a task to the backlog and dispatches it if a slot is free."""
        with self._lock:
            handle = TaskHandle(next(self._task_ids), task)
            self._backlog.append(handle)
            self._drain_reported = False
        self.logger.debug(f"{self.tag}_QUEUED: task={handle.task_id} item={task.item_id}")
        self._dispatch()
        return handle

    def cancel_all(self):
        """Discards the backlog and aborts every active worker. Emits no events."""
        with self._lock:
            discarded = list(self._backlog)
            self._backlog.clear()
            workers = list(self._active.values())
            self._active.clear()
            self._drain_reported = True
            self._state_changed.notify_all()

        # Slots are already released, so a worker finishing now is discarded.
        # abort() may block on I/O and must not run under the lock.
        for worker in workers:
            worker.abort()
        for handle in discarded:
            handle._cancel()
            self._discard(handle)
        for worker in workers:
            worker.handle._cancel()
        if discarded or workers:
            self.logger.info(
                f"{self.tag}_CANCEL_ALL: aborted={len(workers)} discarded={len(discarded)}"
            )

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the pool is idle and its drain event has been delivered."""
        with self._state_changed:
            return self._state_changed.wait_for(
                lambda: self._is_idle_locked() and self._draining == 0, timeout
            )

    def close(self, wait: bool = True):
        """Shuts the worker threads down; a later enqueue starts a fresh pool."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # ── Subclass hooks ────────────────────────────────────────────────────────

    def _admit(self, handle: TaskHandle) -> Union[ActiveWorker, Outcome]:
        """Runs under the lock. Returning an Outcome finishes the task without a slot."""
        return ActiveWorker(handle)

    def _execute(self, worker: ActiveWorker) -> Outcome:
        raise NotImplementedError

    def _settle(self, worker: ActiveWorker, outcome: Outcome) -> Outcome:
        """Runs under the lock for tasks that still own their slot."""
        return outcome

    def _discard(self, handle: TaskHandle):
        """Called for backlog entries dropped by cancel_all() before they ever ran."""
        pass

    def _publish_started(self, task: T):
        pass

    def _publish_success(self, task: T, result: Any):
        pass

    def _publish_failure(self, task: T, error: PipelineError):
        pass

    def _publish_drained(self):
        self.event_bus.publish(PoolDrained(pool=self.pool_name))

    # ── Dispatch machinery ────────────────────────────────────────────────────

    def _is_idle_locked(self) -> bool:
        return not self._backlog and not self._active and self._settling == 0

    def _executor_locked(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.max_concurrent,
                thread_name_prefix=f"{self.pool_name}-worker",
            )
        return self._executor

    def _dispatch(self):
        immediate: List[Tuple[TaskHandle, Outcome]] = []
        with self._lock:
            while len(self._active) < self.max_concurrent and self._backlog:
                handle = self._backlog.popleft()
                try:
                    admitted = self._admit(handle)
                except PipelineError as exc:
                    admitted = Outcome(error=exc)
                if isinstance(admitted, Outcome):
                    self._settling += 1
                    immediate.append((handle, admitted))
                    continue
                self._active[handle.task_id] = admitted
                self._executor_locked().submit(self._run_worker, admitted)

        for handle, outcome in immediate:
            self._finish(handle, outcome, refill=False)

    def _run_worker(self, worker: ActiveWorker):
        if worker.cancelled.is_set():
            worker.release()
            return
        try:
            self._publish_started(worker.task)
            outcome = self._execute(worker)
        except PipelineError as exc:
            outcome = Outcome(error=exc)
        except Exception as exc:
            if not worker.cancelled.is_set():
                self.logger.exception(f"{self.tag}_CRASH: task={worker.task_id} item={worker.task.item_id}")
            outcome = Outcome(error=PipelineError(f"Unexpected error: {exc}"))
        finally:
            worker.release()
        self._on_worker_terminal(worker, outcome)

    def _on_worker_terminal(self, worker: ActiveWorker, outcome: Outcome):
        with self._lock:
            if self._active.get(worker.task_id) is not worker:
                # Slot already released by cancel_all(); discard silently
                self.logger.debug(f"{self.tag}_DISCARDED: task={worker.task_id} item={worker.task.item_id}")
                return
            del self._active[worker.task_id]
            self._settling += 1
            try:
                outcome = self._settle(worker, outcome)
            except PipelineError as exc:
                outcome = Outcome(error=exc)
            except Exception as exc:
                self.logger.exception(f"{self.tag}_SETTLE_CRASH: task={worker.task_id}")
                outcome = Outcome(error=PipelineError(f"Unexpected error: {exc}"))
        self._finish(worker.handle, outcome)

    def _finish(self, handle: TaskHandle, outcome: Outcome, refill: bool = True):
        task = handle.task
        try:
            if outcome.ok:
                self.logger.info(f"{self.tag}_END: task={handle.task_id} item={task.item_id} status=completed")
                handle._resolve(outcome.result)
                self._publish_success(task, outcome.result)
            else:
                self.logger.error(
                    f"{self.tag}_END: task={handle.task_id} item={task.item_id} status=failed "
                    f"({type(outcome.error).__name__}) {outcome.error}"
                )
                handle._fail(outcome.error)
                self._publish_failure(task, outcome.error)
        except Exception as exc:
            # A failing subscriber must not stall the queue
            self.logger.exception(f"{self.tag}_SUBSCRIBER_ERROR: task={handle.task_id} item={task.item_id}: {exc}")
        finally:
            if refill:
                self._dispatch()
            self._settled()

    def _settled(self):
        drained = False
        with self._lock:
            self._settling -= 1
            if self._is_idle_locked() and not self._drain_reported:
                self._drain_reported = True
                self.drain_generation += 1
                self._draining += 1
                drained = True
            else:
                self._state_changed.notify_all()

        if not drained:
            return
        try:
            self.logger.info(f"{self.tag}_DRAINED: generation={self.drain_generation}")
            self._publish_drained()
        except Exception as exc:
            self.logger.exception(f"{self.tag}_SUBSCRIBER_ERROR: drained: {exc}")
        finally:
            with self._lock:
                self._draining -= 1
                self._state_changed.notify_all()
