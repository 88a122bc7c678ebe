"""
Configuration for the content pipeline.

Settings live in a YAML file (``data/pipeline.yaml`` by default, overridable
with the CONTENT_PIPELINE_CONFIG environment variable). Every section is a
dataclass with working defaults, so a missing file or section is valid.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import yaml

from content_pipeline.constants import DATA_DIR, DB_NAME, EMBEDDING_DIMENSIONS
from content_pipeline.errors import ConfigurationError
from llm.llm_util import DEFAULT_CHAT_MODEL, DEFAULT_EMBEDDING_MODEL
from util.constants import PIPELINE_CONFIG_ENV_VAR
from util.logging_util import setup_logger

logger = setup_logger(__name__)

PIPELINE_CONFIG_PATH = DATA_DIR / "pipeline.yaml"
FEEDS_CONFIG_PATH = DATA_DIR / "feeds.yaml"


@dataclass
class ClassifierConfig:
    chat_model: str = DEFAULT_CHAT_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = EMBEDDING_DIMENSIONS
    timeout_seconds: float = 20.0
    max_in_flight: int = 4
    max_topics: int = 3
    min_topic_confidence: float = 0.6
    fallback_confidence_cap: float = 0.5


@dataclass
class IngestionConfig:
    fetch_timeout_seconds: float = 10.0
    max_concurrent_sources: int = 3
    excerpt_max_length: int = 150
    min_body_length: int = 0
    max_item_age_days: int = 7


@dataclass
class RecommendationConfig:
    similarity_weight: float = 0.5
    topic_match_weight: float = 0.3
    freshness_weight: float = 0.2
    freshness_half_life_hours: float = 48.0
    lookback_days: int = 7
    cooldown_days: int = 30
    default_drop_size: int = 3
    history_days: int = 90


@dataclass
class RetentionConfig:
    low_water_mark: int = 20000
    high_water_mark: int = 50000
    base_retention_days: float = 90.0
    min_retention_days: float = 7.0
    batch_size: int = 1000
    archive: bool = False
    growth_window_days: int = 7


@dataclass
class ScheduleConfig:
    cleanup_hour_utc: int = 2
    stats_interval_hours: float = 6.0
    ingestion_interval_hours: float = 24.0
    drop_hour_utc: int = 7
    poll_seconds: float = 60.0


@dataclass
class PipelineConfig:
    database_url: str = f"sqlite:///{DB_NAME}"
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    recommendation: RecommendationConfig = field(default_factory=RecommendationConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)


@dataclass
class FeedConfig:
    """Configuration for a single source feed."""
    name: str
    url: str
    tags: List[str]
    platform: str = "rss"


def _build_section(section_cls, data: Optional[dict], section_name: str):
    """Build a config dataclass from a YAML mapping, rejecting unknown keys."""
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section_name}' must be a mapping")

    known = {f.name: f for f in fields(section_cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section_name}': {sorted(unknown)}")

    values = {}
    for key, value in data.items():
        default = getattr(section_cls(), key)
        # bool is an int subclass, so check it first
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigurationError(f"{section_name}.{key} must be a boolean")
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{section_name}.{key} must be a number")
            if isinstance(default, int) and not isinstance(value, int):
                raise ConfigurationError(f"{section_name}.{key} must be an integer")
        elif isinstance(default, str) and not isinstance(value, str):
            raise ConfigurationError(f"{section_name}.{key} must be a string")
        values[key] = value
    return section_cls(**values)


# Fields used as divisors, sizes or timeouts
_POSITIVE_FIELDS = {
    "classifier": ["embedding_dimensions", "timeout_seconds", "max_in_flight", "max_topics"],
    "ingestion": ["fetch_timeout_seconds", "max_concurrent_sources", "excerpt_max_length"],
    "recommendation": [
        "freshness_half_life_hours", "lookback_days", "cooldown_days", "default_drop_size", "history_days",
    ],
    "retention": ["high_water_mark", "base_retention_days", "batch_size", "growth_window_days"],
    "schedule": ["stats_interval_hours", "ingestion_interval_hours", "poll_seconds"],
}


def _validate(config: PipelineConfig) -> None:
    for section_name, names in _POSITIVE_FIELDS.items():
        section = getattr(config, section_name)
        for name in names:
            if getattr(section, name) <= 0:
                raise ConfigurationError(f"{section_name}.{name} must be positive")
    for name in ("cleanup_hour_utc", "drop_hour_utc"):
        if not 0 <= getattr(config.schedule, name) <= 23:
            raise ConfigurationError(f"schedule.{name} must be an hour between 0 and 23")

    retention = config.retention
    if retention.low_water_mark >= retention.high_water_mark:
        raise ConfigurationError("retention.low_water_mark must be below high_water_mark")
    if retention.min_retention_days > retention.base_retention_days:
        raise ConfigurationError("retention.min_retention_days must not exceed base_retention_days")
    weights = config.recommendation
    if min(weights.similarity_weight, weights.topic_match_weight, weights.freshness_weight) < 0:
        raise ConfigurationError("recommendation weights must not be negative")


def load_config(config_path: Optional[Path] = None) -> PipelineConfig:
    """Load the pipeline configuration from YAML.

    Falls back to defaults when the file does not exist.
    """
    if config_path is None:
        config_path = Path(os.environ.get(PIPELINE_CONFIG_ENV_VAR, PIPELINE_CONFIG_PATH))

    if not config_path.exists():
        logger.warning(f"Pipeline config not found at {config_path}, using defaults")
        return PipelineConfig()

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    sections = {
        "classifier": ClassifierConfig,
        "ingestion": IngestionConfig,
        "recommendation": RecommendationConfig,
        "retention": RetentionConfig,
        "schedule": ScheduleConfig,
    }
    unknown = set(data) - set(sections) - {"database_url"}
    if unknown:
        raise ConfigurationError(f"Unknown config sections: {sorted(unknown)}")

    config = PipelineConfig(
        database_url=data.get("database_url", PipelineConfig.database_url),
        **{name: _build_section(cls, data.get(name), name) for name, cls in sections.items()},
    )
    _validate(config)
    return config


def load_feed_configs(config_path: Path = FEEDS_CONFIG_PATH) -> List[FeedConfig]:
    """Load feed configurations from YAML file."""
    if not config_path.exists():
        logger.warning(f"Feed config not found at {config_path}")
        return []

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping with a 'feeds' list")
    feed_list = data.get("feeds") or []
    if not isinstance(feed_list, list):
        raise ConfigurationError(f"'feeds' in {config_path} must be a list")

    feeds = []
    for index, feed_data in enumerate(feed_list):
        if not isinstance(feed_data, dict):
            raise ConfigurationError(f"Feed #{index} must be a mapping, got {feed_data!r}")
        name = feed_data.get("name")
        url = feed_data.get("url")
        tags = feed_data.get("tags") or []
        if not name or not url:
            raise ConfigurationError(f"Feed #{index} needs both a name and a url")
        if not isinstance(tags, list) or not tags:
            raise ConfigurationError(f"Feed '{name}' needs at least one tag")
        feeds.append(FeedConfig(
            name=name,
            url=url,
            tags=[str(tag) for tag in tags],
            platform=feed_data.get("platform", "rss"),
        ))
    return feeds
