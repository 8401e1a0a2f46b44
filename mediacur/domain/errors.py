"""Error taxonomy for pipeline tasks.

Every task failure is reported exactly once through its pipeline's failure event
and through the task handle. Cancellation is not a failure: ``Cancelled`` is only
used internally to unwind a worker whose slot was already released.
"""

from pathlib import Path
from typing import Optional


class PipelineError(Exception):
    """Base class for task-level failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ToolNotFound(PipelineError):
    """The external executable could not be spawned (missing from PATH)."""

    def __init__(self, tool: str, message: Optional[str] = None):
        super().__init__(message or f"{tool} not found. Please install {tool}.")
        self.tool = tool


class ProcessFailed(PipelineError):
    """External process exited nonzero, crashed or overran its deadline."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class TransferFailed(PipelineError):
    """Network-level download failure (connection, non-2xx status, read error)."""


class FilesystemFailed(PipelineError):
    """Directory creation, temp file or rename failure."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class Cancelled(PipelineError):
    """Raised inside a worker whose task was discarded by cancel_all()."""

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


class ProjectError(Exception):
    """Project store failure (create/load/save)."""
