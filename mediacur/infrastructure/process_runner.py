import logging
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from mediacur.domain.errors import Cancelled, ProcessFailed, ToolNotFound

@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

class ProcessRunner:
    """Runs one external command to completion and captures its stderr.

    ``abort()`` may be called from any thread; it kills the child without waiting
    for a graceful exit. Aborting before ``run()`` spawned anything makes ``run()``
    raise Cancelled instead of starting the process.
    """

    def __init__(self, cmd: List[str], timeout_s: Optional[float] = None):
        if not cmd:
            raise ValueError("cmd must not be empty")
        self.cmd = [str(c) for c in cmd]
        self.tool = Path(self.cmd[0]).name
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(__name__)
        self._process: Optional[subprocess.Popen] = None
        self._aborted = False
        self._lock = threading.Lock()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def run(self) -> ProcessResult:
        with self._lock:
            if self._aborted:
                raise Cancelled(f"{self.tool} cancelled before start")
            try:
                self._process = subprocess.Popen(
                    self.cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    universal_newlines=True,
                    errors="replace",
                )
            except FileNotFoundError as exc:
                raise ToolNotFound(self.tool) from exc
            except OSError as exc:
                raise ProcessFailed(f"Failed to start {self.tool}: {exc}") from exc
            process = self._process

        timed_out = False
        try:
            _, stderr = process.communicate(timeout=self.timeout_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"PROCESS_TIMEOUT: {self.tool} exceeded {self.timeout_s}s, killing")
            process.kill()
            _, stderr = process.communicate()
            timed_out = True

        return ProcessResult(
            returncode=process.returncode,
            stderr=(stderr or "").strip(),
            timed_out=timed_out,
        )

    def abort(self):
        with self._lock:
            self._aborted = True
            process = self._process
        if process is not None and process.poll() is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass  # exited between poll() and kill()

    def raise_for_result(self, result: ProcessResult):
        """Maps a finished run onto ProcessFailed; returns silently on success."""
        if result.ok:
            return
        if result.timed_out:
            message = f"{self.tool} timed out after {self.timeout_s}s"
        elif result.stderr:
            message = result.stderr
        elif result.returncode < 0:
            message = f"{self.tool} crashed (signal {-result.returncode})"
        else:
            message = f"Exit code: {result.returncode}"
        raise ProcessFailed(message, returncode=result.returncode, stderr=result.stderr)
