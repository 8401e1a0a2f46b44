"""Project-level flows on top of the download pool and the processing stage.

The coordinator turns a project into tasks, keeps item flags in sync with the
pipeline events and saves the project when work drains. Stages are chained by
events only: an item's next task is enqueued after its previous task reported
success, never earlier.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from mediacur.config.models import AppConfig
from mediacur.domain.errors import FilesystemFailed, ProjectError
from mediacur.domain.events import (
    AllDownloadsCompleted,
    AllTasksCompleted,
    CatalogUploadFailed,
    CategoriesUploadFailed,
    DownloadCompleted,
    IndexUploadFailed,
    ProjectSaveFailed,
    ScaleCompleted,
    UploadCompleted,
)
from mediacur.domain.models import MediaItem, Project
from mediacur.domain.tasks import TaskKind
from mediacur.infrastructure.event_bus import EventBus
from mediacur.pipeline.downloads import DownloadPipeline
from mediacur.pipeline.manifests import (
    CATEGORIES_FILENAME,
    CATEGORIES_KEY,
    INDEX_KEY,
    CategoryRegistry,
    build_catalog,
    build_index,
    catalog_key,
    write_manifest,
)
from mediacur.pipeline.processing import ProcessingStage
from mediacur.storage.project_store import ProjectStore

# run_project() phases
_IDLE = "idle"
_RUNNING = "running"
_PUBLISHING = "publishing"


class PipelineCoordinator:
    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        store: ProjectStore,
        downloads: DownloadPipeline,
        processing: ProcessingStage,
        categories: Optional[CategoryRegistry] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.store = store
        self.downloads = downloads
        self.processing = processing
        self.categories = categories or CategoryRegistry(
            Path(config.general.projects_dir).resolve().parent / CATEGORIES_FILENAME
        )
        self.logger = logging.getLogger(__name__)
        self.project: Optional[Project] = None

        self._lock = threading.RLock()
        self._phase = _IDLE
        self._uploads_in_run = 0
        self._finished = threading.Event()
        self._finished.set()

        self.event_bus.subscribe(DownloadCompleted, self._on_download_completed)
        self.event_bus.subscribe(ScaleCompleted, self._on_scale_completed)
        self.event_bus.subscribe(UploadCompleted, self._on_upload_completed)
        self.event_bus.subscribe(AllDownloadsCompleted, self._on_downloads_drained)
        self.event_bus.subscribe(AllTasksCompleted, self._on_processing_drained)

    @property
    def temp_dir(self) -> Optional[Path]:
        temp = self.config.general.temp_dir
        return Path(temp) if temp else None

    @property
    def is_busy(self) -> bool:
        return not self.downloads.is_idle or self.processing.is_busy

    # ── Per-stage operations ──────────────────────────────────────────────────

    def download_project(self, project: Project) -> int:
        with self._lock:
            self.project = project
            count = 0
            for item in project.media:
                if self._enqueue_download(project, item):
                    count += 1
        self.logger.info(f"Download queued: project={project.name} items={count}")
        return count

    def scale_project(self, project: Project) -> int:
        with self._lock:
            self.project = project
            count = 0
            for item in project.media:
                if self._enqueue_scale(project, item):
                    count += 1
        self.logger.info(f"Scale queued: project={project.name} items={count}")
        return count

    def upload_project(self, project: Project) -> int:
        """Uploads every scaled item, then index, catalog and categories manifests."""
        with self._lock:
            self.project = project
            count = 0
            for item in project.media:
                if self._enqueue_upload(project, item):
                    count += 1
            if count > 0:
                self._publish_manifests(project)
        self.logger.info(f"Upload queued: project={project.name} items={count}")
        return count

    def publish_catalog(self, project: Project) -> int:
        """Uploads only the catalog manifest. Returns the number of catalog entries."""
        with self._lock:
            self.project = project
            entries = build_catalog(project.media)
            if not entries:
                self.logger.warning(f"No scaled media in {project.name}; catalog not published")
                return 0
            self._upload_document(project, TaskKind.CATALOG_UPLOAD, entries, catalog_key(project.category_id))
        return len(entries)

    def delete_category(self, project: Project):
        """Removes the category's remote catalog and drops it from categories.json."""
        bucket = self._bucket(project)
        with self._lock:
            self.project = project
            self.processing.uploader.delete_catalog(bucket, project.category_id)
            self.categories.load()
            if not self.categories.remove(project.category_id):
                self.logger.warning(f"Category {project.category_id} not present in {self.categories.path}")
            try:
                self.categories.save()
            except FilesystemFailed as exc:
                self.event_bus.publish(CategoriesUploadFailed.from_error(exc))
                return
            self._upload_document(project, TaskKind.CATEGORIES_UPLOAD, self.categories.entries, CATEGORIES_KEY)

    def run_project(self, project: Project) -> int:
        """Download, scale and upload every eligible item, chaining stages per item.

        Manifests are published once nothing is left in flight. Returns the
        number of tasks enqueued up front.
        """
        with self._lock:
            self.project = project
            self._phase = _RUNNING
            self._uploads_in_run = 0
            self._finished.clear()
            count = 0
            for item in project.media:
                if (
                    self._enqueue_download(project, item)
                    or self._enqueue_scale(project, item)
                    or self._enqueue_upload(project, item)
                ):
                    count += 1
            self.logger.info(f"Run started: project={project.name} queued={count}")
            self._maybe_finish_run()
        return count

    def wait_until_finished(self, timeout: Optional[float] = None) -> bool:
        """Blocks until run_project() has published its manifests and all pools drained."""
        return self._finished.wait(timeout)

    def cancel_all(self):
        self.downloads.cancel_all()
        self.processing.cancel_all()
        with self._lock:
            self._phase = _IDLE
            self._finished.set()
        self.logger.info("Pipelines cancelled")

    def save(self):
        with self._lock:
            if self.project is not None:
                self.store.save(self.project)

    # ── Task construction ─────────────────────────────────────────────────────

    def _bucket(self, project: Project) -> str:
        return project.s3_bucket or self.config.storage.bucket

    def _enqueue_download(self, project: Project, item: MediaItem) -> bool:
        if item.is_rejected or item.is_downloaded:
            return False
        url = item.download_url(self.config.downloads.max_download_width)
        if not url:
            self.logger.warning(f"No download URL for item {item.id}")
            return False
        self.downloads.download(item.id, url, project.raw_dir / item.raw_filename())
        return True

    def _enqueue_scale(self, project: Project, item: MediaItem) -> bool:
        if item.is_rejected or not item.is_downloaded or item.is_scaled:
            return False
        raw = Path(item.local_raw_path)
        if not item.local_raw_path or not raw.exists():
            return False
        output = project.scaled_dir / f"{raw.stem}{item.file_extension}"
        self.processing.scaler.scale(item.id, item.type, raw, output)
        return True

    def _enqueue_upload(self, project: Project, item: MediaItem) -> bool:
        if item.is_rejected or not item.is_scaled or item.is_uploaded:
            return False
        scaled = Path(item.local_scaled_path)
        if not item.local_scaled_path or not scaled.exists():
            return False
        key = f"{self.config.storage.media_prefix}{scaled.name}"
        self.processing.uploader.upload(item.id, scaled, self._bucket(project), key)
        if self._phase == _RUNNING:
            self._uploads_in_run += 1
        return True

    def _publish_manifests(self, project: Project):
        index = build_index(
            project.name,
            project.category_id,
            description=self.config.storage.index_description,
            prefix=self.config.storage.media_prefix,
        )
        self._upload_document(project, TaskKind.INDEX_UPLOAD, index, INDEX_KEY)
        self._upload_document(
            project, TaskKind.CATALOG_UPLOAD, build_catalog(project.media), catalog_key(project.category_id)
        )

        self.categories.load()
        self.categories.upsert(project.category_id, project.name)
        try:
            self.categories.save()
        except FilesystemFailed as exc:
            self.logger.warning(f"Category registry not saved: {exc}")
        self._upload_document(project, TaskKind.CATEGORIES_UPLOAD, self.categories.entries, CATEGORIES_KEY)

    def _upload_document(self, project: Project, kind: TaskKind, document, key: str):
        try:
            path = write_manifest(document, Path(key).name, self.temp_dir)
        except FilesystemFailed as exc:
            self.logger.error(f"MANIFEST_WRITE_FAILED: {kind.value}: {exc}")
            failure = {
                TaskKind.INDEX_UPLOAD: IndexUploadFailed,
                TaskKind.CATALOG_UPLOAD: CatalogUploadFailed,
                TaskKind.CATEGORIES_UPLOAD: CategoriesUploadFailed,
            }[kind]
            self.event_bus.publish(failure.from_error(exc))
            return
        self.processing.uploader.upload_manifest(kind, path, self._bucket(project), key)

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    def _find(self, item_id: int) -> Optional[MediaItem]:
        if self.project is None:
            return None
        return self.project.find(item_id)

    def _on_download_completed(self, event: DownloadCompleted):
        with self._lock:
            item = self._find(event.item_id)
            if item is None:
                return
            item.local_raw_path = str(event.path)
            item.is_downloaded = True
            if self._phase == _RUNNING:
                self._enqueue_scale(self.project, item)

    def _on_scale_completed(self, event: ScaleCompleted):
        with self._lock:
            item = self._find(event.item_id)
            if item is None:
                return
            item.local_scaled_path = str(event.output_path)
            item.is_scaled = True
            if self._phase == _RUNNING:
                self._enqueue_upload(self.project, item)

    def _on_upload_completed(self, event: UploadCompleted):
        with self._lock:
            item = self._find(event.item_id)
            if item is None:
                return
            item.is_uploaded = True

    def _on_downloads_drained(self, event: AllDownloadsCompleted):
        with self._lock:
            self._save_after_drain()
            self._maybe_finish_run()

    def _on_processing_drained(self, event: AllTasksCompleted):
        with self._lock:
            self._save_after_drain()
            self._maybe_finish_run()

    def _save_after_drain(self):
        """Saves the project; a failure is reported and never stops the run."""
        try:
            self.save()
        except ProjectError as exc:
            self.logger.error(f"PROJECT_SAVE_FAILED: {exc}")
            self.event_bus.publish(ProjectSaveFailed(
                error_message=str(exc),
                error_type=type(exc).__name__,
                project=self.project.name,
            ))

    def _maybe_finish_run(self):
        if self._phase == _IDLE or self.is_busy:
            return
        if self._phase == _RUNNING and self._uploads_in_run > 0:
            self._phase = _PUBLISHING
            self.logger.info(f"Run drained: publishing manifests for {self.project.name}")
            self._publish_manifests(self.project)
            if self.processing.is_busy:
                return
        self._phase = _IDLE
        self.logger.info(f"Run finished: project={self.project.name}")
        self._finished.set()
