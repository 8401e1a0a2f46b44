"""Index, catalog and categories manifests published next to the media objects.

Documents are synthesized locally, written to a unique temp file and then
handed to the upload pool under a fixed well-known key.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from mediacur.domain.errors import FilesystemFailed
from mediacur.domain.models import MediaItem

INDEX_KEY = "index.json"
CATEGORIES_KEY = "categories.json"
CATEGORIES_FILENAME = "categories.json"
INDEX_TIMESTAMP_FORMAT = "%Y-%m-%dT%H.%M.%SZ"

logger = logging.getLogger(__name__)


def catalog_key(category_id: str) -> str:
    return f"catalogs/{category_id}.json"


def build_index(
    project_name: str,
    category_id: str,
    description: str = "",
    prefix: str = "media/",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "updated_utc": now.astimezone(timezone.utc).strftime(INDEX_TIMESTAMP_FORMAT),
        "prefixes": [
            {
                "prefix": prefix,
                "name": project_name,
                "description": description,
                "catalog": catalog_key(category_id),
            }
        ],
    }


def build_catalog(items: Iterable[MediaItem]) -> List[Dict[str, Any]]:
    """One entry per non-rejected item whose scaled file is present on disk."""
    entries = []
    for item in items:
        if item.is_rejected or not item.local_scaled_path:
            continue
        scaled = Path(item.local_scaled_path)
        try:
            size = scaled.stat().st_size
        except OSError:
            continue
        entry: Dict[str, Any] = {
            "id": item.id,
            "type": item.type.value,
            "path": scaled.name,
            "author": item.author,
            "bytes": size,
        }
        if item.is_video:
            entry["duration_s"] = item.duration
        entries.append(entry)
    return entries


class CategoryRegistry:
    """Local copy of ``categories.json``: an array of ``{id, name}``."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.entries: List[Dict[str, Any]] = []

    def load(self) -> "CategoryRegistry":
        self.entries = []
        if not self.path.exists():
            return self
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning(f"Ignoring unreadable category registry {self.path}: {exc}")
            return self
        if isinstance(data, list):
            self.entries = [e for e in data if isinstance(e, dict)]
        return self

    def upsert(self, category_id: str, name: str):
        entry = {"id": category_id, "name": name}
        for idx, existing in enumerate(self.entries):
            if existing.get("id") == category_id:
                self.entries[idx] = entry
                return
        self.entries.append(entry)

    def remove(self, category_id: str) -> bool:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.get("id") != category_id]
        return len(self.entries) != before

    def save(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self.entries, f, indent=2)
        except OSError as exc:
            raise FilesystemFailed(f"Cannot write {self.path}: {exc}", self.path) from exc


def write_manifest(document: Any, name: str, temp_dir: Optional[Path] = None) -> Path:
    """Writes ``document`` as indented JSON to a fresh temp file and returns its path."""
    stem = Path(name).stem
    try:
        if temp_dir is not None:
            Path(temp_dir).mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f"mediacur_{stem}_", suffix=".json", dir=temp_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
    except OSError as exc:
        raise FilesystemFailed(f"Cannot create file: {name} manifest ({exc})") from exc
    return Path(tmp)
