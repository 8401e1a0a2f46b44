import logging
import os
from pathlib import Path

PART_SUFFIX = ".part"

class HousekeepingService:
    """Service for cleaning up leftovers of interrupted runs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_partial_downloads(self, directory: Path) -> int:
        """Recursively removes all .part files in the directory. Returns count removed."""
        removed = 0
        if not directory.exists():
            return removed
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(PART_SUFFIX):
                    try:
                        (Path(root) / file).unlink()
                        removed += 1
                    except OSError as exc:
                        self.logger.warning(f"Failed to remove stale partial file {file}: {exc}")
        return removed
