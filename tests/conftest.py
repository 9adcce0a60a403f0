import pytest

from config.settings import CaptureConfig, IngestionConfig
from tests.fakes import FakeCaptureStore, FakeCatalog, FakeJobStore, FakeQueue


@pytest.fixture
def capture_store():
    return FakeCaptureStore()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def capture_config():
    return CaptureConfig(
        auto_match_threshold=0.90,
        candidate_threshold=0.65,
        max_candidate_options=3,
        max_frames=6,
        max_finalize_attempts=5,
        upload_base_url="",
    )


@pytest.fixture
def ingestion_config():
    return IngestionConfig(base_urls={})


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def queue():
    return FakeQueue()
