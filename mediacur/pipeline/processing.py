"""Scale + upload pools treated as one logical processing stage.

``AllTasksCompleted`` fires when both pools are simultaneously idle. Each pool
reports its own drains; the stage publishes the joint event at most once per
combination of pool drain generations, so two pools draining back to back do
not produce a duplicate signal.
"""

import logging
import threading
import time
from typing import Optional, Tuple

from mediacur.domain.events import AllTasksCompleted, PoolDrained
from mediacur.infrastructure.event_bus import EventBus
from mediacur.pipeline.scaler import ScalePipeline
from mediacur.pipeline.uploads import UploadPipeline


class ProcessingStage:
    def __init__(self, event_bus: EventBus, scaler: ScalePipeline, uploader: UploadPipeline):
        self.event_bus = event_bus
        self.scaler = scaler
        self.uploader = uploader
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._last_reported: Optional[Tuple[int, int]] = None
        self.event_bus.subscribe(PoolDrained, self._on_pool_drained)

    @property
    def pools(self):
        return (self.scaler, self.uploader)

    @property
    def is_busy(self) -> bool:
        return not all(pool.is_idle for pool in self.pools)

    def cancel_all(self):
        for pool in self.pools:
            pool.cancel_all()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Waits until both pools are idle at the same moment."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            for pool in self.pools:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                if not pool.wait_until_idle(remaining):
                    return False
            # An upload enqueued from a scale subscriber may have restarted a pool
            if not self.is_busy:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False

    def close(self, wait: bool = True):
        for pool in self.pools:
            pool.close(wait=wait)

    def _on_pool_drained(self, event: PoolDrained):
        if event.pool not in (self.scaler.pool_name, self.uploader.pool_name):
            return
        with self._lock:
            if self.is_busy:
                return
            generations = (self.scaler.drain_generation, self.uploader.drain_generation)
            if generations == self._last_reported:
                return
            self._last_reported = generations
        self.logger.info(f"PROCESSING_DRAINED: scale_gen={generations[0]} upload_gen={generations[1]}")
        self.event_bus.publish(AllTasksCompleted())
