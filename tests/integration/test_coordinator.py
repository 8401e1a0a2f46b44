import json
import threading
from types import SimpleNamespace

import pytest
import requests

from mediacur.domain.events import (
    AllTasksCompleted, CategoriesUploadCompleted, CatalogUploadCompleted, DownloadCompleted,
    DownloadFailed, IndexUploadCompleted, ProjectSaveFailed, RemoteDeleteCompleted, ScaleStarted, UploadCompleted,
)
from mediacur.domain.errors import ProjectError
from mediacur.domain.models import MediaItem, MediaType
from mediacur.pipeline.coordinator import PipelineCoordinator
from mediacur.pipeline.downloads import DownloadPipeline
from mediacur.pipeline.manifests import CategoryRegistry
from mediacur.pipeline.processing import ProcessingStage
from mediacur.pipeline.scaler import ScalePipeline
from mediacur.pipeline.uploads import UploadPipeline
from mediacur.storage.project_store import PROJECT_FILENAME, ProjectStore
from tests.helpers import FakeResponse, FakeRunnerFactory


class CapturingAwsFactory(FakeRunnerFactory):
    """Keeps the JSON body of every manifest handed to ``aws s3 cp``."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.documents = {}

    def __call__(self, cmd, timeout_s=None):
        if cmd[1:3] == ["s3", "cp"] and cmd[3].endswith(".json"):
            with open(cmd[3], "r", encoding="utf-8") as f:
                self.documents[cmd[4]] = json.load(f)
        return super().__call__(cmd, timeout_s=timeout_s)

    def keys(self):
        return [c[4] if c[2] == "cp" else c[3] for c in self.commands]


@pytest.fixture
def wiring(app_config, event_bus, recorder, fake_session, tmp_path):
    # recorder is subscribed before the coordinator so it sees events in publish order
    scale_factory = FakeRunnerFactory(touch_output=True)
    aws_factory = CapturingAwsFactory()
    downloads = DownloadPipeline(app_config.downloads, event_bus, session=fake_session)
    processing = ProcessingStage(
        event_bus,
        ScalePipeline(app_config.transcode, event_bus, runner_factory=scale_factory),
        UploadPipeline(app_config.storage, event_bus, runner_factory=aws_factory),
    )
    registry = CategoryRegistry(tmp_path / "categories.json")
    coordinator = PipelineCoordinator(
        app_config, event_bus, ProjectStore(tmp_path / "projects"), downloads, processing, categories=registry
    )
    yield SimpleNamespace(
        coordinator=coordinator,
        downloads=downloads,
        processing=processing,
        registry=registry,
        scale_factory=scale_factory,
        aws_factory=aws_factory,
        session=fake_session,
    )
    coordinator.cancel_all()
    downloads.close(wait=False)
    processing.close(wait=False)


def _downloaded(project, item):
    raw = project.raw_dir / item.raw_filename()
    raw.write_bytes(b"raw")
    item.local_raw_path = str(raw)
    item.is_downloaded = True
    return item


def _scaled(project, item):
    scaled = project.scaled_dir / item.raw_filename()
    scaled.write_bytes(b"scaled")
    _downloaded(project, item)
    item.local_scaled_path = str(scaled)
    item.is_scaled = True
    return item


def _saved(project):
    with open(project.path / PROJECT_FILENAME, "r", encoding="utf-8") as f:
        return json.load(f)


def test_download_project_queues_eligible_items(wiring, project, video_item, image_item):
    rejected = MediaItem(id=303, is_rejected=True, media_files=[{"width": 640, "link": "https://cdn.example/303"}])
    project.media = [video_item, image_item, rejected, _downloaded(project, MediaItem(id=404, duration=5))]

    assert wiring.coordinator.download_project(project) == 2
    assert wiring.downloads.wait_until_idle(timeout=5)

    urls = sorted(c["url"] for c in wiring.session.calls)
    assert urls == ["https://cdn.example/101/hd.mp4", "https://cdn.example/202/large.jpg"]
    for item in (video_item, image_item):
        assert item.is_downloaded
        assert item.local_raw_path == str(project.raw_dir / item.raw_filename())
        assert (project.raw_dir / item.raw_filename()).read_bytes() == b"abcdef"
    assert not rejected.is_downloaded

    saved = _saved(project)
    assert {m["id"]: m["is_downloaded"] for m in saved["media"]} == {101: True, 202: True, 303: False, 404: True}


def test_download_project_skips_items_without_url(wiring, project):
    project.media = [MediaItem(id=1, type=MediaType.VIDEO)]
    assert wiring.coordinator.download_project(project) == 0
    assert wiring.session.calls == []


def test_scale_project_writes_into_scaled_dir(wiring, project, video_item, image_item):
    _downloaded(project, video_item)
    image_item.is_downloaded = True
    image_item.local_raw_path = str(project.raw_dir / "gone.jpg")
    project.media = [video_item, image_item]

    assert wiring.coordinator.scale_project(project) == 1
    assert wiring.processing.wait_until_idle(timeout=5)

    expected = project.scaled_dir / video_item.raw_filename()
    assert video_item.is_scaled
    assert video_item.local_scaled_path == str(expected)
    assert wiring.scale_factory.commands[0][-1] == str(expected)
    assert not image_item.is_scaled
    assert _saved(project)["media"][0]["is_scaled"] is True


def test_upload_project_publishes_manifests(wiring, project, video_item, image_item, app_config, tmp_path):
    project.media = [_scaled(project, video_item), _scaled(project, image_item)]
    wiring.registry.path.write_text(json.dumps([{"id": "forests", "name": "forests"}]))

    assert wiring.coordinator.upload_project(project) == 2
    assert wiring.processing.wait_until_idle(timeout=5)

    keys = wiring.aws_factory.keys()
    assert sorted(keys) == sorted([
        f"s3://test-bucket/media/{video_item.raw_filename()}",
        f"s3://test-bucket/media/{image_item.raw_filename()}",
        "s3://test-bucket/index.json",
        "s3://test-bucket/catalogs/beaches.json",
        "s3://test-bucket/categories.json",
    ])
    assert video_item.is_uploaded and image_item.is_uploaded

    docs = wiring.aws_factory.documents
    index = docs["s3://test-bucket/index.json"]
    assert index["prefixes"][0]["catalog"] == "catalogs/beaches.json"
    assert index["prefixes"][0]["prefix"] == app_config.storage.media_prefix
    catalog = docs["s3://test-bucket/catalogs/beaches.json"]
    assert [e["id"] for e in catalog] == [101, 202]
    assert catalog[0]["duration_s"] == 42
    assert "duration_s" not in catalog[1]
    assert docs["s3://test-bucket/categories.json"] == [
        {"id": "forests", "name": "forests"},
        {"id": "beaches", "name": "beaches"},
    ]
    assert json.loads(wiring.registry.path.read_text())[-1] == {"id": "beaches", "name": "beaches"}

    # Uploaded manifests leave no temp files behind
    assert list((tmp_path / "tmp").iterdir()) == []


def test_upload_project_without_scaled_items_sends_nothing(wiring, project, video_item, recorder):
    project.media = [video_item]
    assert wiring.coordinator.upload_project(project) == 0
    assert wiring.processing.wait_until_idle(timeout=1)
    assert wiring.aws_factory.commands == []
    assert recorder.count(IndexUploadCompleted, CatalogUploadCompleted) == 0


def test_upload_falls_back_to_configured_bucket(wiring, project, video_item, app_config):
    project.s3_bucket = ""
    project.media = [_scaled(project, video_item)]
    wiring.coordinator.upload_project(project)
    assert wiring.processing.wait_until_idle(timeout=5)
    assert all(key.startswith(f"s3://{app_config.storage.bucket}/") for key in wiring.aws_factory.keys())


def test_publish_catalog_lists_only_valid_items(wiring, project, video_item, image_item, recorder):
    rejected = _scaled(project, MediaItem(id=303, duration=9, author="X"))
    rejected.is_rejected = True
    image_item.local_scaled_path = str(project.scaled_dir / "missing.jpg")
    image_item.is_scaled = True
    project.media = [rejected, image_item, _scaled(project, video_item)]

    assert wiring.coordinator.publish_catalog(project) == 1
    assert wiring.processing.wait_until_idle(timeout=5)

    assert wiring.aws_factory.keys() == ["s3://test-bucket/catalogs/beaches.json"]
    catalog = wiring.aws_factory.documents["s3://test-bucket/catalogs/beaches.json"]
    assert len(catalog) == 1
    assert catalog[0] == {
        "id": 101,
        "type": "video",
        "path": video_item.raw_filename(),
        "author": "Jane Doe",
        "bytes": len(b"scaled"),
        "duration_s": 42,
    }
    assert recorder.of_type(CatalogUploadCompleted)[0].key == "catalogs/beaches.json"


def test_publish_catalog_skips_empty_catalog(wiring, project, video_item):
    project.media = [video_item]
    assert wiring.coordinator.publish_catalog(project) == 0
    assert wiring.aws_factory.commands == []


def test_delete_category_removes_catalog_and_registry_entry(wiring, project, recorder):
    wiring.registry.path.write_text(json.dumps([
        {"id": "beaches", "name": "beaches"},
        {"id": "forests", "name": "forests"},
    ]))

    wiring.coordinator.delete_category(project)
    assert wiring.processing.wait_until_idle(timeout=5)

    removals = [c for c in wiring.aws_factory.commands if c[2] == "rm"]
    assert len(removals) == 1
    assert removals[0][:4] == ["aws", "s3", "rm", "s3://test-bucket/catalogs/beaches.json"]
    assert "--recursive" not in removals[0]
    remaining = [{"id": "forests", "name": "forests"}]
    assert json.loads(wiring.registry.path.read_text()) == remaining
    assert wiring.aws_factory.documents["s3://test-bucket/categories.json"] == remaining
    deleted = recorder.of_type(RemoteDeleteCompleted)[0]
    assert (deleted.bucket, deleted.key) == ("test-bucket", "catalogs/beaches.json")
    assert recorder.count(CategoriesUploadCompleted) == 1


def test_run_project_chains_stages_and_publishes_last(wiring, project, video_item, image_item, recorder):
    project.media = [video_item, image_item]

    assert wiring.coordinator.run_project(project) == 2
    assert wiring.coordinator.wait_until_finished(timeout=10)

    for item in (video_item, image_item):
        assert item.is_downloaded and item.is_scaled and item.is_uploaded
        # Each stage starts only after the previous one succeeded for that item
        events = [e for e in recorder.events if getattr(e, "item_id", None) == item.id]
        kinds = [type(e) for e in events]
        assert kinds.index(DownloadCompleted) < kinds.index(ScaleStarted) < kinds.index(UploadCompleted)

    keys = wiring.aws_factory.keys()
    assert len(keys) == 5
    assert all("/media/" in k for k in keys[:2])
    assert sorted(keys[2:]) == sorted([
        "s3://test-bucket/index.json",
        "s3://test-bucket/catalogs/beaches.json",
        "s3://test-bucket/categories.json",
    ])
    assert len(wiring.aws_factory.documents["s3://test-bucket/catalogs/beaches.json"]) == 2
    assert recorder.count(AllTasksCompleted) >= 1

    saved = _saved(project)
    assert all(m["is_uploaded"] for m in saved["media"])


def test_run_project_resumes_from_recorded_state(wiring, project, video_item, image_item):
    project.media = [_scaled(project, video_item), image_item]
    image_item.is_rejected = True

    assert wiring.coordinator.run_project(project) == 1
    assert wiring.coordinator.wait_until_finished(timeout=10)

    assert wiring.session.calls == []
    assert wiring.scale_factory.commands == []
    assert video_item.is_uploaded
    assert not image_item.is_uploaded


def test_run_project_isolates_failed_download(wiring, project, video_item, image_item, recorder):
    wiring.session.errors["https://cdn.example/101/hd.mp4"] = requests.ConnectionError("reset by peer")
    project.media = [video_item, image_item]

    wiring.coordinator.run_project(project)
    assert wiring.coordinator.wait_until_finished(timeout=10)

    assert recorder.of_type(DownloadFailed)[0].item_id == 101
    assert not video_item.is_downloaded
    assert image_item.is_uploaded
    catalog = wiring.aws_factory.documents["s3://test-bucket/catalogs/beaches.json"]
    assert [e["id"] for e in catalog] == [202]


def test_run_project_with_nothing_to_do_finishes_immediately(wiring, project, recorder):
    assert wiring.coordinator.run_project(project) == 0
    assert wiring.coordinator.wait_until_finished(timeout=0)
    assert recorder.events == []


def test_cancel_all_stops_run(wiring, project, video_item, image_item, recorder):
    gate = threading.Event()
    for item in (video_item, image_item):
        url = item.download_url(1920)
        wiring.session.responses[url] = FakeResponse(chunks=(b"a", b"b"), gate=gate)
    project.media = [video_item, image_item]

    wiring.coordinator.run_project(project)
    assert not wiring.coordinator.wait_until_finished(timeout=0.05)

    wiring.coordinator.cancel_all()
    gate.set()

    assert wiring.coordinator.wait_until_finished(timeout=0)
    assert wiring.downloads.wait_until_idle(timeout=5)
    assert not video_item.is_downloaded and not image_item.is_downloaded
    assert list(project.raw_dir.iterdir()) == []
    assert recorder.count(DownloadCompleted, DownloadFailed) == 0


def test_run_project_finishes_when_project_save_fails(wiring, project, image_item, recorder, monkeypatch):
    def failing_save(saved_project):
        raise ProjectError("Cannot save project.json: disk full")

    monkeypatch.setattr(wiring.coordinator.store, "save", failing_save)
    project.media = [image_item]

    wiring.coordinator.run_project(project)
    assert wiring.coordinator.wait_until_finished(timeout=10)

    assert image_item.is_uploaded
    assert "s3://test-bucket/catalogs/beaches.json" in wiring.aws_factory.documents
    failures = recorder.of_type(ProjectSaveFailed)
    assert failures
    assert failures[0].project == "beaches"
    assert failures[0].error_type == "ProjectError"
    assert "disk full" in failures[0].error_message
