import os
import sys
import logging
from pathlib import Path
import pytest
from loguru import logger

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from utils.log import init_logger
from utils.file import log_dir
from utils.config import FactoryConfig
from utils.sqlite_continuity import ContinuityStore
from utils.sqlite_milestone import MilestoneDB
from utils.sqlite_project import ProjectDB
from novel.orchestrator import RunOrchestrator
from novel.registry import RunRegistry
from tests.fakes import FakeClient


def pytest_configure(config):
    config.addinivalue_line(
        "filterwarnings", "ignore:open_text is deprecated:DeprecationWarning:litellm.*"
    )
    config.addinivalue_line(
        "filterwarnings", "ignore:Pydantic serializer warnings:UserWarning"
    )


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    logging.getLogger("litellm").setLevel(logging.WARNING)


@pytest.fixture(scope="module", autouse=True)
def setup_module_logging(request):
    log_filename_stem = Path(request.module.__file__).stem
    log_file = log_dir / f"{log_filename_stem}.log"
    if log_file.exists():
        log_file.unlink()
    sink_id = init_logger(log_filename_stem)
    yield
    logger.remove(sink_id)
    init_logger.cache_clear()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def config(tmp_path) -> FactoryConfig:
    """Small chapters, no delays, quick provider retries."""
    return FactoryConfig(
        target_word_count=60,
        min_quality_score=5.0,
        max_retries=2,
        provider_retries=2,
        provider_timeout=0.5,
        retry_backoff_seconds=0,
        delay_between_chapters=0,
        delay_between_arcs=0,
        auto_save_interval=2,
        milestones=[],
        event_queue_size=16,
        db_path=str(tmp_path / "novel.db"),
    )


@pytest.fixture
def store(config):
    instance = ContinuityStore(config.db_path)
    yield instance
    instance.close()


@pytest.fixture
def project_db(config):
    instance = ProjectDB(config.db_path)
    yield instance
    instance.close()


@pytest.fixture
def milestone_db(config):
    instance = MilestoneDB(config.db_path)
    yield instance
    instance.close()


@pytest.fixture
def registry():
    return RunRegistry()


@pytest.fixture
def make_orchestrator(config, registry, project_db, store, milestone_db, tmp_path, monkeypatch):
    """Builds orchestrators sharing one database and registry; chapter text goes under tmp_path."""
    output_dir = tmp_path / "output"
    monkeypatch.setattr(
        "novel.orchestrator.get_text_file_path",
        lambda project_id: str(output_dir / f"{project_id}.txt"),
    )

    def factory(client, owner=None, **overrides) -> RunOrchestrator:
        run_config = config.model_copy(update=overrides) if overrides else config
        return RunOrchestrator(
            client,
            run_config,
            registry=registry,
            project_db=project_db,
            store=store,
            milestone_db=milestone_db,
            owner=owner,
        )

    return factory
