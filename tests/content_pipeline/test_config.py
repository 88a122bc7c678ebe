"""Tests for pipeline and feed configuration loading."""

import pytest

from content_pipeline.config import (
    PipelineConfig,
    RetentionConfig,
    load_config,
    load_feed_configs,
)
from content_pipeline.errors import ConfigurationError
from util.constants import PIPELINE_CONFIG_ENV_VAR


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return path


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing file yields the default configuration."""
        config = load_config(tmp_path / "missing.yaml")
        assert config == PipelineConfig()
        assert config.recommendation.default_drop_size == 3

    def test_partial_file(self, tmp_path):
        """Test sections and keys not in the file keep their defaults."""
        path = write(tmp_path, "pipeline.yaml", "retention:\n  archive: true\n  high_water_mark: 80000\n")

        config = load_config(path)

        assert config.retention.archive is True
        assert config.retention.high_water_mark == 80000
        assert config.retention.low_water_mark == RetentionConfig().low_water_mark
        assert config.classifier == PipelineConfig().classifier

    def test_empty_file(self, tmp_path):
        """Test an empty file is the default configuration."""
        assert load_config(write(tmp_path, "pipeline.yaml", "")) == PipelineConfig()

    def test_float_accepted_for_float_setting(self, tmp_path):
        """Test integers are accepted where floats are expected."""
        path = write(tmp_path, "pipeline.yaml", "recommendation:\n  freshness_half_life_hours: 24\n")
        assert load_config(path).recommendation.freshness_half_life_hours == 24

    @pytest.mark.parametrize("text", [
        "unknown_section:\n  a: 1\n",
        "retention:\n  not_a_setting: 1\n",
        "retention:\n  batch_size: lots\n",
        "retention:\n  batch_size: 10.5\n",
        "retention:\n  archive: 1\n",
        "classifier:\n  chat_model: 3\n",
        "retention: [1, 2]\n",
        "- just\n- a list\n",
    ])
    def test_invalid_values(self, tmp_path, text):
        """Test unknown keys and wrongly typed values are rejected."""
        with pytest.raises(ConfigurationError):
            load_config(write(tmp_path, "pipeline.yaml", text))

    @pytest.mark.parametrize("text", [
        "retention:\n  low_water_mark: 50000\n  high_water_mark: 50000\n",
        "retention:\n  min_retention_days: 100\n  base_retention_days: 90\n",
        "retention:\n  batch_size: 0\n",
        "classifier:\n  max_in_flight: 0\n",
        "recommendation:\n  freshness_weight: -0.1\n",
    ])
    def test_inconsistent_values(self, tmp_path, text):
        """Test values that contradict each other are rejected."""
        with pytest.raises(ConfigurationError):
            load_config(write(tmp_path, "pipeline.yaml", text))

    @pytest.mark.parametrize("section,key,value", [
        ("retention", "growth_window_days", 0),
        ("retention", "base_retention_days", 0),
        ("recommendation", "freshness_half_life_hours", 0),
        ("recommendation", "lookback_days", 0),
        ("recommendation", "cooldown_days", -1),
        ("classifier", "timeout_seconds", 0),
        ("ingestion", "fetch_timeout_seconds", 0),
        ("schedule", "poll_seconds", 0),
    ])
    def test_non_positive_values(self, tmp_path, section, key, value):
        """Test divisors, windows and timeouts must be positive."""
        path = write(tmp_path, "pipeline.yaml", f"{section}:\n  {key}: {value}\n")
        with pytest.raises(ConfigurationError, match=f"{section}.{key} must be positive"):
            load_config(path)

    def test_hour_out_of_range(self, tmp_path):
        """Test scheduled hours must fall within a day."""
        path = write(tmp_path, "pipeline.yaml", "schedule:\n  drop_hour_utc: 24\n")
        with pytest.raises(ConfigurationError, match="drop_hour_utc"):
            load_config(path)

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        """Test the environment variable points at the config file."""
        path = write(tmp_path, "custom.yaml", "database_url: sqlite:///custom.db\n")
        monkeypatch.setenv(PIPELINE_CONFIG_ENV_VAR, str(path))

        assert load_config().database_url == "sqlite:///custom.db"

    def test_shipped_config_is_valid(self, monkeypatch):
        """Test the bundled pipeline.yaml loads."""
        monkeypatch.delenv(PIPELINE_CONFIG_ENV_VAR, raising=False)
        config = load_config()
        assert config.retention.low_water_mark < config.retention.high_water_mark


class TestLoadFeedConfigs:
    """Tests for load_feed_configs."""

    def test_loads_feeds(self, tmp_path):
        """Test feeds are loaded with their tags and platform."""
        path = write(tmp_path, "feeds.yaml", """
feeds:
  - name: Hacker News
    url: https://news.ycombinator.com/rss
    tags: [technology, programming]
  - name: Dribbble
    url: https://dribbble.com/shots/popular.rss
    tags: [design]
    platform: dribbble
""")
        feeds = load_feed_configs(path)

        assert [feed.name for feed in feeds] == ["Hacker News", "Dribbble"]
        assert feeds[0].tags == ["technology", "programming"]
        assert feeds[0].platform == "rss"
        assert feeds[1].platform == "dribbble"

    def test_missing_file(self, tmp_path):
        """Test a missing feed file means no feeds."""
        assert load_feed_configs(tmp_path / "missing.yaml") == []

    @pytest.mark.parametrize("text", [
        "feeds:\n  - name: No url\n    tags: [a]\n",
        "feeds:\n  - name: No tags\n    url: https://example.com/rss\n",
        "feeds:\n  - name: Empty tags\n    url: https://example.com/rss\n    tags: []\n",
    ])
    def test_invalid_feeds(self, tmp_path, text):
        """Test feeds need a name, a url and at least one tag."""
        with pytest.raises(ConfigurationError):
            load_feed_configs(write(tmp_path, "feeds.yaml", text))

    @pytest.mark.parametrize("text,message", [
        ("- name: a\n- name: b\n", "must contain a mapping"),
        ("feeds: notalist\n", "must be a list"),
        ("feeds:\n  - just a string\n", "Feed #0 must be a mapping"),
        (
            "feeds:\n  - name: Ok\n    url: https://example.com/rss\n    tags: [news]\n  - 42\n",
            "Feed #1 must be a mapping",
        ),
    ])
    def test_malformed_feed_file(self, tmp_path, text, message):
        """Test a badly shaped feed file names the offending entry."""
        with pytest.raises(ConfigurationError, match=message):
            load_feed_configs(write(tmp_path, "feeds.yaml", text))

    def test_shipped_feeds_are_valid(self):
        """Test the bundled feeds.yaml loads."""
        assert load_feed_configs()
