import pytest

from visibility_core.core.config import Settings, settings

# Override settings for tests
settings.app_env = "test"
settings.sandbox_mode = False

from tests.fakes import FakeAnalyzer, FakeExtractor, FakeNotability, FakePublisher, FakeStore  # noqa: E402


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero backoff and short timeouts so retry tests run instantly."""
    return Settings(
        app_env="test",
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        collaborator_max_retries=2,
        extraction_timeout_seconds=0.5,
        analysis_timeout_seconds=0.5,
        automation_interval_days=30,
        sandbox_mode=False,
    )


@pytest.fixture
def collaborators():
    return {
        "extractor": FakeExtractor(),
        "analyzer": FakeAnalyzer(),
        "notability": FakeNotability(),
        "publisher": FakePublisher(),
    }
