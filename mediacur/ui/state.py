import threading
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional, Tuple

STAGES = ("download", "scale", "upload", "manifest", "delete", "save")


class StatusState:
    """Thread-safe counters fed by pipeline events from worker threads."""

    def __init__(self, recent_errors_max: int = 10):
        self._lock = threading.RLock()

        self.started: Dict[str, int] = {stage: 0 for stage in STAGES}
        self.completed: Dict[str, int] = {stage: 0 for stage in STAGES}
        self.failed: Dict[str, int] = {stage: 0 for stage in STAGES}

        # Download progress per item: (received, total)
        self.transfers: Dict[int, Tuple[int, int]] = {}
        self.bytes_downloaded = 0

        self.recent_errors = deque(maxlen=recent_errors_max)
        self.drained_pools: List[str] = []
        self.all_tasks_completed = False
        self.interrupted = False
        self.start_time = datetime.now()
        self.last_action: str = ""

    def mark_started(self, stage: str):
        with self._lock:
            self.started[stage] += 1

    def mark_completed(self, stage: str):
        with self._lock:
            self.completed[stage] += 1

    def mark_failed(self, stage: str, label: str, message: str):
        with self._lock:
            self.failed[stage] += 1
            self.recent_errors.appendleft((stage, label, message))

    def update_transfer(self, item_id: int, received: int, total: int):
        with self._lock:
            self.transfers[item_id] = (received, total)

    def finish_transfer(self, item_id: int) -> Optional[Tuple[int, int]]:
        with self._lock:
            done = self.transfers.pop(item_id, None)
            if done is not None:
                self.bytes_downloaded += done[0]
            return done

    def drop_transfer(self, item_id: int):
        with self._lock:
            self.transfers.pop(item_id, None)

    def mark_drained(self, pool: str):
        with self._lock:
            self.drained_pools.append(pool)

    def mark_all_tasks_completed(self):
        with self._lock:
            self.all_tasks_completed = True

    def mark_interrupted(self):
        with self._lock:
            self.interrupted = True

    def recent_error_list(self) -> List[Tuple[str, str, str]]:
        """Newest first: (stage, label, message)"""
        with self._lock:
            return list(self.recent_errors)

    def set_last_action(self, action: str):
        with self._lock:
            self.last_action = action

    @property
    def total_failed(self) -> int:
        with self._lock:
            return sum(self.failed.values())

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()

    def snapshot(self) -> Dict[str, Tuple[int, int, int]]:
        """stage -> (started, completed, failed)"""
        with self._lock:
            return {
                stage: (self.started[stage], self.completed[stage], self.failed[stage])
                for stage in STAGES
            }
