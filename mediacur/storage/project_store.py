"""Persistence of curation projects as ``<projects_dir>/<name>/project.json``.

A project directory holds the JSON state plus the ``raw/`` download and
``scaled/`` output directories.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Iterable, List

from pydantic import ValidationError

from mediacur.domain.errors import ProjectError
from mediacur.domain.models import PROJECT_FORMAT_VERSION, MediaItem, Project

PROJECT_FILENAME = "project.json"


class ProjectStore:
    """Creates, loads and atomically saves projects under one directory.

    Saves are serialized with a lock because pipeline bookkeeping may save from
    worker threads while the CLI thread is also saving.
    """

    def __init__(self, projects_dir: Path):
        """Initialize the store.

        Args:
            projects_dir: Directory containing one subdirectory per project.
        """
        self.projects_dir = Path(projects_dir)
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def project_path(self, name: str) -> Path:
        return self.projects_dir / name

    def create(self, name: str, category_id: str = "", bucket: str = "") -> Project:
        """Create a new project directory with empty raw/ and scaled/ folders.

        Raises:
            ProjectError: if the name is empty or the directory already exists.
        """
        if not name.strip():
            raise ProjectError("Project name must not be empty")
        path = self.project_path(name)
        if path.exists():
            raise ProjectError(f"Project already exists: {path}")

        project = Project(name=name, path=path, category_id=category_id, s3_bucket=bucket)
        try:
            project.raw_dir.mkdir(parents=True)
            project.scaled_dir.mkdir(parents=True)
        except OSError as exc:
            raise ProjectError(f"Cannot create project directory {path}: {exc}") from exc

        self.save(project)
        self.logger.info(f"PROJECT_CREATE: {name} at {path}")
        return project

    def load(self, path: Path) -> Project:
        """Load ``project.json`` from a project directory (or the file itself).

        Raises:
            ProjectError: if the file is missing, unreadable or invalid.
        """
        path = Path(path)
        if path.name == PROJECT_FILENAME:
            path = path.parent
        project_file = path / PROJECT_FILENAME
        try:
            with open(project_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ProjectError(f"Project file not found: {project_file}") from exc
        except (OSError, ValueError) as exc:
            raise ProjectError(f"Cannot read {project_file}: {exc}") from exc

        if not isinstance(data, dict):
            raise ProjectError(f"Invalid project file: {project_file}")
        version = data.get("version", 1)
        if version != PROJECT_FORMAT_VERSION:
            raise ProjectError(f"Unsupported project format version {version}: {project_file}")

        try:
            project = Project.model_validate(data)
        except ValidationError as exc:
            raise ProjectError(f"Invalid project file {project_file}: {exc}") from exc

        project.path = path
        for item in project.media:
            if item.id in project.rejected_ids:
                item.is_rejected = True
        return project

    def save(self, project: Project):
        """Write project.json atomically (temp file + os.replace)."""
        project_file = project.path / PROJECT_FILENAME
        payload = json.dumps(project.model_dump(mode="json"), indent=2)
        with self._lock:
            try:
                project.path.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(prefix=".project_", suffix=".json", dir=project.path)
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                    os.replace(tmp, project_file)
                except OSError:
                    Path(tmp).unlink(missing_ok=True)
                    raise
            except OSError as exc:
                raise ProjectError(f"Cannot save {project_file}: {exc}") from exc
        self.logger.debug(f"PROJECT_SAVE: {project.name} ({len(project.media)} items)")

    def delete(self, path: Path):
        path = Path(path)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ProjectError(f"Cannot delete project {path}: {exc}") from exc
        self.logger.info(f"PROJECT_DELETE: {path}")

    def list_projects(self) -> List[Path]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(
            entry for entry in self.projects_dir.iterdir()
            if entry.is_dir() and (entry / PROJECT_FILENAME).is_file()
        )

    def add_media(self, project: Project, items: Iterable[MediaItem]) -> int:
        """Append new items, skipping ids already present. Returns count added."""
        known = {item.id for item in project.media}
        added = 0
        for item in items:
            if item.id in known:
                continue
            if item.id in project.rejected_ids:
                item.is_rejected = True
            project.media.append(item)
            known.add(item.id)
            added += 1
        return added

    def reject_media(self, project: Project, item_id: int) -> bool:
        project.rejected_ids.add(item_id)
        item = project.find(item_id)
        if item is None:
            return False
        item.is_rejected = True
        return True

    def update_media(self, project: Project, item: MediaItem) -> bool:
        for idx, existing in enumerate(project.media):
            if existing.id == item.id:
                project.media[idx] = item
                return True
        return False
