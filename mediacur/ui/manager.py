import logging
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.box import ROUNDED

from mediacur.infrastructure.event_bus import EventBus
from mediacur.ui.state import STAGES, StatusState
from mediacur.domain.events import (
    AllTasksCompleted,
    CatalogUploadCompleted, CatalogUploadFailed,
    CategoriesUploadCompleted, CategoriesUploadFailed,
    DownloadCompleted, DownloadFailed, DownloadProgress, DownloadStarted,
    IndexUploadCompleted, IndexUploadFailed,
    PoolDrained,
    ProjectSaveFailed,
    RemoteDeleteCompleted, RemoteDeleteFailed,
    ScaleCompleted, ScaleFailed, ScaleStarted,
    UploadCompleted, UploadFailed, UploadStarted,
)


def format_size(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}TB"


class StatusManager:
    """Subscribes to EventBus, updates StatusState and prints one line per terminal event."""

    def __init__(self, bus: EventBus, state: StatusState, console: Optional[Console] = None, quiet: bool = False):
        self.bus = bus
        self.state = state
        self.console = console or Console()
        self.quiet = quiet
        self.logger = logging.getLogger(__name__)
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(DownloadStarted, self.on_download_started)
        self.bus.subscribe(DownloadProgress, self.on_download_progress)
        self.bus.subscribe(DownloadCompleted, self.on_download_completed)
        self.bus.subscribe(DownloadFailed, self.on_download_failed)
        self.bus.subscribe(ScaleStarted, self.on_scale_started)
        self.bus.subscribe(ScaleCompleted, self.on_scale_completed)
        self.bus.subscribe(ScaleFailed, self.on_scale_failed)
        self.bus.subscribe(UploadStarted, self.on_upload_started)
        self.bus.subscribe(UploadCompleted, self.on_upload_completed)
        self.bus.subscribe(UploadFailed, self.on_upload_failed)
        self.bus.subscribe(IndexUploadCompleted, self.on_manifest_completed)
        self.bus.subscribe(CatalogUploadCompleted, self.on_manifest_completed)
        self.bus.subscribe(CategoriesUploadCompleted, self.on_manifest_completed)
        self.bus.subscribe(IndexUploadFailed, self.on_manifest_failed)
        self.bus.subscribe(CatalogUploadFailed, self.on_manifest_failed)
        self.bus.subscribe(CategoriesUploadFailed, self.on_manifest_failed)
        self.bus.subscribe(RemoteDeleteCompleted, self.on_delete_completed)
        self.bus.subscribe(RemoteDeleteFailed, self.on_delete_failed)
        self.bus.subscribe(PoolDrained, self.on_pool_drained)
        self.bus.subscribe(AllTasksCompleted, self.on_all_tasks_completed)
        self.bus.subscribe(ProjectSaveFailed, self.on_project_save_failed)

    def _print(self, message: str):
        self.state.set_last_action(message)
        if not self.quiet:
            self.console.print(message, highlight=False)

    # Downloads

    def on_download_started(self, event: DownloadStarted):
        self.state.mark_started("download")
        self.state.update_transfer(event.item_id, 0, 0)

    def on_download_progress(self, event: DownloadProgress):
        self.state.update_transfer(event.item_id, event.received, event.total)

    def on_download_completed(self, event: DownloadCompleted):
        self.state.mark_completed("download")
        done = self.state.finish_transfer(event.item_id)
        size = f" ({format_size(done[0])})" if done else ""
        self._print(f"[green]✓[/] download {event.item_id}: {event.path.name}{size}")

    def on_download_failed(self, event: DownloadFailed):
        self.state.drop_transfer(event.item_id)
        self.state.mark_failed("download", str(event.item_id), event.error_message)
        self._print(f"[red]✗[/] download {event.item_id}: {event.error_message}")

    # Scaling

    def on_scale_started(self, event: ScaleStarted):
        self.state.mark_started("scale")

    def on_scale_completed(self, event: ScaleCompleted):
        self.state.mark_completed("scale")
        self._print(f"[green]✓[/] scale {event.item_id}: {event.output_path.name}")

    def on_scale_failed(self, event: ScaleFailed):
        self.state.mark_failed("scale", str(event.item_id), event.error_message)
        self._print(f"[red]✗[/] scale {event.item_id}: {event.error_message}")

    # Uploads

    def on_upload_started(self, event: UploadStarted):
        self.state.mark_started("upload")

    def on_upload_completed(self, event: UploadCompleted):
        self.state.mark_completed("upload")
        self._print(f"[green]✓[/] upload {event.item_id}: {event.key}")

    def on_upload_failed(self, event: UploadFailed):
        self.state.mark_failed("upload", str(event.item_id), event.error_message)
        self._print(f"[red]✗[/] upload {event.item_id}: {event.error_message}")

    def on_manifest_completed(self, event):
        self.state.mark_completed("manifest")
        name = getattr(event, "key", None) or _manifest_label(event)
        self._print(f"[green]✓[/] manifest {name}")

    def on_manifest_failed(self, event):
        label = _manifest_label(event)
        self.state.mark_failed("manifest", label, event.error_message)
        self._print(f"[red]✗[/] manifest {label}: {event.error_message}")

    def on_delete_completed(self, event: RemoteDeleteCompleted):
        self.state.mark_completed("delete")
        self._print(f"[green]✓[/] deleted s3://{event.bucket}/{event.key}")

    def on_delete_failed(self, event: RemoteDeleteFailed):
        self.state.mark_failed("delete", event.bucket, event.error_message)
        self._print(f"[red]✗[/] delete in '{event.bucket}': {event.error_message}")

    # Drain

    def on_pool_drained(self, event: PoolDrained):
        self.state.mark_drained(event.pool)
        self.logger.debug(f"UI: pool drained: {event.pool}")

    def on_all_tasks_completed(self, event: AllTasksCompleted):
        self.state.mark_all_tasks_completed()

    def on_project_save_failed(self, event: ProjectSaveFailed):
        self.state.mark_failed("save", event.project, event.error_message)
        self._print(f"[red]✗[/] save {event.project}: {event.error_message}")

    def render_summary(self) -> Table:
        table = Table(title="Summary", box=ROUNDED, show_lines=False)
        table.add_column("Stage")
        table.add_column("Started", justify="right")
        table.add_column("Completed", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        snapshot = self.state.snapshot()
        for stage in STAGES:
            started, completed, failed = snapshot[stage]
            if started or completed or failed:
                table.add_row(stage, str(started), str(completed), str(failed))
        return table

    def print_summary(self):
        self.console.print(self.render_summary())
        errors = self.state.recent_error_list()
        downloaded = self.state.bytes_downloaded
        if downloaded:
            self.console.print(f"Downloaded: {format_size(downloaded)}")
        if errors:
            self.console.print("[bold red]Recent errors:[/]")
            for stage, label, message in errors:
                self.console.print(f"  {stage} {label}: {message}", highlight=False)
        self.console.print(f"Elapsed: {self.state.elapsed_seconds:.1f}s")


def _manifest_label(event) -> str:
    name = type(event).__name__
    if name.startswith("Index"):
        return "index.json"
    if name.startswith("Categories"):
        return "categories.json"
    return "catalog"
