"""Fakes and polling helpers shared by unit and integration tests."""

import threading
import time

import requests
from pathlib import Path

from mediacur.domain import events as events_module
from mediacur.domain.errors import ToolNotFound
from mediacur.domain.events import Event
from mediacur.infrastructure.event_bus import EventBus
from mediacur.infrastructure.process_runner import ProcessResult, ProcessRunner


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Polls predicate until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class EventRecorder:
    """Records every domain event published on a bus, in publish order."""

    def __init__(self, bus: EventBus):
        self._lock = threading.Lock()
        self.events = []
        for obj in vars(events_module).values():
            if isinstance(obj, type) and issubclass(obj, Event) and obj is not Event:
                bus.subscribe(obj, self._record)

    def _record(self, event):
        with self._lock:
            self.events.append(event)

    def of_type(self, *types):
        with self._lock:
            return [e for e in self.events if isinstance(e, types)]

    def count(self, *types) -> int:
        return len(self.of_type(*types))

# ============================================================================
# HTTP fakes
# ============================================================================

class FakeResponse:
    """Streamed response stand-in. With a gate, each chunk waits for gate.set()."""

    def __init__(self, chunks=(b"payload",), status_code=200, content_length=None, gate=None):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.gate = gate
        self.closed = False
        total = sum(len(c) for c in self.chunks) if content_length is None else content_length
        self.headers = {"Content-Length": str(total)} if total else {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if self.gate is not None:
                while not self.gate.wait(0.01):
                    if self.closed:
                        raise requests.ConnectionError("connection closed")
            if self.closed:
                raise requests.ConnectionError("connection closed")
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    """Hands out FakeResponses per URL and tracks concurrent transfers."""

    def __init__(self, gate=None):
        self.gate = gate
        self.responses = {}
        self.errors = {}
        self.calls = []
        self.issued = []
        self._lock = threading.Lock()

    def get(self, url, stream=False, headers=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "stream": stream, "headers": headers, "timeout": timeout})
        if url in self.errors:
            raise self.errors[url]
        response = self.responses.get(url) or FakeResponse(chunks=(b"abc", b"def"), gate=self.gate)
        with self._lock:
            self.issued.append(response)
        return response

    @property
    def open_responses(self) -> int:
        with self._lock:
            return sum(1 for r in self.issued if not r.closed)

# ============================================================================
# Process fakes
# ============================================================================

class FakeProcessRunner(ProcessRunner):
    """ProcessRunner that never spawns; behaviour comes from its factory."""

    def __init__(self, factory, cmd, timeout_s=None):
        super().__init__(cmd, timeout_s=timeout_s)
        self.factory = factory

    def run(self) -> ProcessResult:
        factory = self.factory
        with self._lock:
            if self._aborted:
                return ProcessResult(returncode=-9)
        if factory.missing_tool:
            raise ToolNotFound(self.tool)
        factory._enter()
        try:
            if factory.touch_output:
                Path(self.cmd[-1]).write_bytes(b"partial")
            if factory.gate is not None:
                while not factory.gate.wait(0.01):
                    if self._aborted:
                        return ProcessResult(returncode=-9)
            return ProcessResult(returncode=factory.returncode, stderr=factory.stderr)
        finally:
            factory._exit()

    def abort(self):
        with self._lock:
            self._aborted = True


class FakeRunnerFactory:
    def __init__(self, returncode=0, stderr="", missing_tool=False, touch_output=False, gate=None):
        self.returncode = returncode
        self.stderr = stderr
        self.missing_tool = missing_tool
        self.touch_output = touch_output
        self.gate = gate
        self.commands = []
        self.runners = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, cmd, timeout_s=None):
        runner = FakeProcessRunner(self, cmd, timeout_s=timeout_s)
        with self._lock:
            self.commands.append(list(cmd))
            self.runners.append(runner)
        return runner

    def _enter(self):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _exit(self):
        with self._lock:
            self.active -= 1

