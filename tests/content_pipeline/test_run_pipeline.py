"""Tests for the operator entrypoint's startup and job wiring."""

from unittest.mock import MagicMock

import pytest

from content_pipeline import db_engine
from content_pipeline.classifier import ClassifierGateway, KeywordClassifier
from content_pipeline.config import ClassifierConfig, PipelineConfig
from content_pipeline.database import get_all_topics
from run_pipeline import build_jobs, startup


@pytest.fixture
def config(tmp_path):
    yield PipelineConfig(database_url=f"sqlite:///{tmp_path / 'pipeline.db'}")
    db_engine.reset_engine()


def test_startup_marks_ready(config):
    """Test startup creates the schema and seeds topics before reporting ready."""
    gateway = ClassifierGateway(None, KeywordClassifier(ClassifierConfig(embedding_dimensions=8)))
    try:
        readiness = startup(config, gateway)
    finally:
        gateway.close()

    assert readiness.is_ready
    topics = get_all_topics()
    assert len(topics) == 12
    # Hash embeddings are never stored for topics
    assert all(topic.embedding is None for topic in topics)


def test_build_jobs(config):
    """Test every recurring job is wired to its component."""
    retention = MagicMock()
    jobs = build_jobs(config, [], MagicMock(), MagicMock(), retention)

    assert [job.name for job in jobs] == ["stats", "cleanup", "ingest", "daily_drops"]
    cleanup = jobs[1]
    cleanup.run(1_800_000_000)
    retention.run_cleanup.assert_called_once_with(1_800_000_000)
