import threading

import pytest
import yaml

from mediacur.config.models import AppConfig
from mediacur.domain.models import MediaItem, MediaType, Project
from mediacur.infrastructure.event_bus import EventBus
from tests.helpers import EventRecorder, FakeRunnerFactory, FakeSession

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """AppConfig rooted in tmp_path with the shipped defaults elsewhere."""
    return AppConfig(
        general={
            "projects_dir": str(tmp_path / "projects"),
            "temp_dir": str(tmp_path / "tmp"),
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "mediacur.yaml"
    content = {
        "general": {"projects_dir": str(tmp_path / "projects"), "debug": True},
        "downloads": {"max_concurrent": 3, "timeout_s": 30},
        "transcode": {"crf": 28, "preset": "medium"},
        "storage": {"bucket": "test-bucket", "profile": "media"},
    }
    with open(conf_file, "w") as f:
        yaml.dump(content, f)
    return conf_file

# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    return EventBus()

@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)

@pytest.fixture
def gate():
    """Released at teardown so no fake worker outlives its test."""
    event = threading.Event()
    yield event
    event.set()

@pytest.fixture
def fake_session():
    return FakeSession()

@pytest.fixture
def runner_factory():
    return FakeRunnerFactory()

# ============================================================================
# Domain Fixtures
# ============================================================================

@pytest.fixture
def video_item():
    return MediaItem(
        type=MediaType.VIDEO,
        id=101,
        duration=42,
        width=3840,
        height=2160,
        author="Jane Doe",
        media_files=[
            {"width": 3840, "height": 2160, "quality": "uhd", "link": "https://cdn.example/101/uhd.mp4"},
            {"width": 1920, "height": 1080, "quality": "hd", "link": "https://cdn.example/101/hd.mp4"},
            {"width": 640, "height": 360, "quality": "sd", "link": "https://cdn.example/101/sd.mp4"},
        ],
    )

@pytest.fixture
def image_item():
    return MediaItem(
        type=MediaType.IMAGE,
        id=202,
        author="John Smith",
        original_image_url="https://cdn.example/202/original.jpg",
        large_image_url="https://cdn.example/202/large.jpg",
    )

@pytest.fixture
def project(tmp_path):
    path = tmp_path / "projects" / "beaches"
    (path / "raw").mkdir(parents=True)
    (path / "scaled").mkdir(parents=True)
    return Project(name="beaches", path=path, s3_bucket="test-bucket", category_id="beaches")
