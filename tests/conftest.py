import pytest

import enrollflow.persistence as persistence
from enrollflow.config import EnrollflowConfig, RetryConfig, SchedulerConfig
from enrollflow.engine import WorkflowEngine
from enrollflow.persistence import InMemoryWorkflowRepository
from fixtures.services import build_services


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep a local config.yaml or database URL from leaking into tests."""
    monkeypatch.setenv("ENROLLFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("ENROLLFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ENROLLFLOW_SERVICES", raising=False)
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def services():
    return build_services()


@pytest.fixture
def config():
    return EnrollflowConfig(
        retry=RetryConfig(max_attempts=3, base_delay_seconds=0),
        scheduler=SchedulerConfig(worker_count=4),
    )


@pytest.fixture
def engine(repo, services, config):
    return WorkflowEngine(repository=repo, services=services, config=config)
