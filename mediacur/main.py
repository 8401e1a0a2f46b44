import json
import typer
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError

from mediacur.config.loader import load_config
from mediacur.config.models import AppConfig
from mediacur.domain.errors import ProjectError
from mediacur.domain.models import MediaItem, Project
from mediacur.infrastructure.event_bus import EventBus
from mediacur.infrastructure.housekeeping import HousekeepingService
from mediacur.infrastructure.logging import setup_logging
from mediacur.pipeline.coordinator import PipelineCoordinator
from mediacur.pipeline.downloads import DownloadPipeline
from mediacur.pipeline.processing import ProcessingStage
from mediacur.pipeline.scaler import ScalePipeline
from mediacur.pipeline.uploads import UploadPipeline
from mediacur.storage.project_store import ProjectStore
from mediacur.ui.manager import StatusManager
from mediacur.ui.state import StatusState

app = typer.Typer(help="mediacur - media curation pipeline (download, scale, upload)")

DEFAULT_CONFIG_PATH = Path("conf/mediacur.yaml")
WAIT_POLL_S = 0.5

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config")
DebugOption = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")


def _fail(message: str):
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load_config(config_path: Path, debug: bool) -> AppConfig:
    if config_path == DEFAULT_CONFIG_PATH and not config_path.exists():
        config = AppConfig()
    else:
        try:
            config = load_config(config_path)
        except FileNotFoundError as exc:
            _fail(str(exc))
        except (ValidationError, ValueError) as exc:
            _fail(f"Invalid config {config_path}: {exc}")
    if debug:
        config.general.debug = True
    return config


def _setup(config_path: Path, debug: bool):
    config = _load_config(config_path, debug)
    projects_dir = Path(config.general.projects_dir)
    log_path = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(projects_dir, debug=config.general.debug, log_path=log_path)
    return config, ProjectStore(projects_dir), logger


def _load_project(store: ProjectStore, project_path: Path) -> Project:
    try:
        return store.load(project_path)
    except ProjectError as exc:
        _fail(str(exc))


class Session:
    """Pipelines, coordinator and status display wired to one event bus."""

    def __init__(self, config: AppConfig, store: ProjectStore):
        self.config = config
        self.bus = EventBus()
        self.state = StatusState()
        self.status = StatusManager(self.bus, self.state)
        debug = config.general.debug
        self.downloads = DownloadPipeline(config.downloads, self.bus)
        self.processing = ProcessingStage(
            self.bus,
            ScalePipeline(config.transcode, self.bus, debug=debug),
            UploadPipeline(config.storage, self.bus, debug=debug),
        )
        self.coordinator = PipelineCoordinator(config, self.bus, store, self.downloads, self.processing)

    def close(self):
        self.downloads.close(wait=False)
        self.processing.close(wait=False)


def _run_pipeline(
    config_path: Path,
    debug: bool,
    project_path: Path,
    start: Callable[[Session, Project], int],
    wait: Callable[[Session, float], bool],
    label: str,
):
    config, store, logger = _setup(config_path, debug)
    project = _load_project(store, project_path)

    removed = HousekeepingService().cleanup_partial_downloads(project.raw_dir)
    if removed:
        logger.info(f"Removed {removed} stale .part files from {project.raw_dir}")

    session = Session(config, store)
    try:
        count = start(session, project)
        typer.echo(f"{label}: {count} queued for '{project.name}'")
        # Poll so Ctrl+C is delivered promptly to the main thread
        while not wait(session, WAIT_POLL_S):
            pass
        session.coordinator.save()
    except KeyboardInterrupt:
        session.coordinator.cancel_all()
        session.coordinator.save()
        session.state.mark_interrupted()
        logger.warning("Interrupted by user, all pipelines cancelled")
        typer.secho("\nStopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    except ProjectError as exc:
        _fail(str(exc))
    finally:
        session.close()

    session.status.print_summary()
    if session.state.total_failed:
        raise typer.Exit(code=1)


@app.command()
def create(
    name: str = typer.Argument(..., help="Project name (directory under projects_dir)"),
    category: str = typer.Argument(..., help="Category id used for the remote catalog"),
    bucket: Optional[str] = typer.Option(None, "--bucket", help="Target bucket (default from config)"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Create an empty project."""
    config, store, logger = _setup(config_path, debug)
    try:
        project = store.create(name, category_id=category, bucket=bucket or config.storage.bucket)
    except ProjectError as exc:
        _fail(str(exc))
    typer.echo(f"Created project '{project.name}' at {project.path}")


@app.command("list")
def list_projects(
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """List projects in the projects directory."""
    config, store, logger = _setup(config_path, debug)
    paths = store.list_projects()
    if not paths:
        typer.echo(f"No projects in {store.projects_dir}")
        return
    for path in paths:
        try:
            project = store.load(path)
        except ProjectError as exc:
            typer.secho(f"{path.name}: {exc}", fg=typer.colors.YELLOW)
            continue
        rejected = sum(1 for item in project.media if item.is_rejected)
        uploaded = sum(1 for item in project.media if item.is_uploaded)
        typer.echo(
            f"{project.name}: category={project.category_id} items={len(project.media)} "
            f"rejected={rejected} uploaded={uploaded}"
        )


@app.command("import-items")
def import_items(
    project_path: Path = typer.Argument(..., help="Project directory"),
    items_file: Path = typer.Argument(..., help="JSON array of media items"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Add candidate media items from a JSON file."""
    config, store, logger = _setup(config_path, debug)
    project = _load_project(store, project_path)
    try:
        with open(items_file, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        _fail(f"Cannot read {items_file}: {exc}")
    if not isinstance(data, list):
        _fail(f"{items_file} must contain a JSON array")
    try:
        items: List[MediaItem] = [MediaItem.model_validate(entry) for entry in data]
    except ValidationError as exc:
        _fail(f"Invalid media item in {items_file}: {exc}")

    added = store.add_media(project, items)
    try:
        store.save(project)
    except ProjectError as exc:
        _fail(str(exc))
    logger.info(f"Imported {added} items into {project.name}")
    typer.echo(f"Added {added} of {len(items)} items to '{project.name}'")


@app.command()
def reject(
    project_path: Path = typer.Argument(..., help="Project directory"),
    item_id: int = typer.Argument(..., help="Media item id"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Mark a media item as rejected."""
    config, store, logger = _setup(config_path, debug)
    project = _load_project(store, project_path)
    found = store.reject_media(project, item_id)
    try:
        store.save(project)
    except ProjectError as exc:
        _fail(str(exc))
    if not found:
        typer.secho(f"Item {item_id} not in project; remembered as rejected", fg=typer.colors.YELLOW)
    else:
        typer.echo(f"Rejected {item_id}")


@app.command()
def download(
    project_path: Path = typer.Argument(..., help="Project directory"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Download raw media for every accepted item."""
    _run_pipeline(
        config_path, debug, project_path,
        start=lambda s, p: s.coordinator.download_project(p),
        wait=lambda s, t: s.downloads.wait_until_idle(t),
        label="Downloads",
    )


@app.command()
def scale(
    project_path: Path = typer.Argument(..., help="Project directory"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Scale and crop downloaded media with ffmpeg."""
    _run_pipeline(
        config_path, debug, project_path,
        start=lambda s, p: s.coordinator.scale_project(p),
        wait=lambda s, t: s.processing.wait_until_idle(t),
        label="Scale tasks",
    )


@app.command()
def upload(
    project_path: Path = typer.Argument(..., help="Project directory"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Upload scaled media plus index, catalog and categories manifests."""
    _run_pipeline(
        config_path, debug, project_path,
        start=lambda s, p: s.coordinator.upload_project(p),
        wait=lambda s, t: s.processing.wait_until_idle(t),
        label="Uploads",
    )


@app.command("publish-catalog")
def publish_catalog(
    project_path: Path = typer.Argument(..., help="Project directory"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Upload only the catalog manifest of a project."""
    _run_pipeline(
        config_path, debug, project_path,
        start=lambda s, p: s.coordinator.publish_catalog(p),
        wait=lambda s, t: s.processing.wait_until_idle(t),
        label="Catalog entries",
    )


@app.command("delete-category")
def delete_category(
    project_path: Path = typer.Argument(..., help="Project directory"),
    purge_local: bool = typer.Option(False, "--purge-local", help="Also delete the local project directory"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Delete the project's remote catalog and drop it from categories.json."""
    def start(session: Session, project: Project) -> int:
        session.coordinator.delete_category(project)
        return 1

    _run_pipeline(
        config_path, debug, project_path,
        start=start,
        wait=lambda s, t: s.processing.wait_until_idle(t),
        label="Category delete",
    )
    if purge_local:
        config, store, logger = _setup(config_path, debug)
        try:
            store.delete(project_path)
        except ProjectError as exc:
            _fail(str(exc))
        typer.echo(f"Deleted local project {project_path}")


@app.command()
def run(
    project_path: Path = typer.Argument(..., help="Project directory"),
    config_path: Path = ConfigOption,
    debug: bool = DebugOption,
):
    """Download, scale and upload in one go, chaining stages per item."""
    _run_pipeline(
        config_path, debug, project_path,
        start=lambda s, p: s.coordinator.run_project(p),
        wait=lambda s, t: s.coordinator.wait_until_finished(t),
        label="Tasks",
    )


if __name__ == "__main__":
    app()
