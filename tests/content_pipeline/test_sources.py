"""Tests for feed fetching and the raw item contract."""

import calendar
from unittest.mock import MagicMock, patch

import pytest
import requests

from content_pipeline.config import FeedConfig
from content_pipeline.errors import FeedFetchError, MalformedItemError
from content_pipeline.models import RawItem
from content_pipeline.sources import (
    _extract_author,
    entry_to_raw_item,
    fetch_feed_items,
    raw_item_from_dict,
    validate_raw_item,
)

# 2026-10-15 12:00:00 UTC
NOW = calendar.timegm((2026, 10, 15, 12, 0, 0))

RSS_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Feed</title>
    <item>
      <title>Fresh post about LLMs</title>
      <link>https://example.com/fresh</link>
      <guid>fresh-1</guid>
      <description>&lt;p&gt;Large language models are &lt;b&gt;everywhere&lt;/b&gt;.&lt;/p&gt;</description>
      <pubDate>Wed, 14 Oct 2026 09:00:00 GMT</pubDate>
      <author>jane@example.com (Jane Doe)</author>
    </item>
    <item>
      <title>Stale post</title>
      <link>https://example.com/stale</link>
      <pubDate>Mon, 01 Jun 2026 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Undated post</title>
      <link>https://example.com/undated</link>
    </item>
  </channel>
</rss>
"""


@pytest.fixture
def feed():
    return FeedConfig(name="Example", url="https://example.com/rss", tags=["ai-ml"])


def _response(status_code=200, content=RSS_XML):
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    return response


class TestValidateRawItem:
    """Tests for validate_raw_item."""

    def test_valid_with_url(self):
        """Test an item with a title and URL is valid."""
        item = RawItem(title="Title", url="https://example.com/a")
        assert validate_raw_item(item) is item

    def test_valid_with_external_id_only(self):
        """Test an external id alone is enough to deduplicate on."""
        validate_raw_item(RawItem(title="Title", external_id="abc"))

    def test_missing_url_and_id(self):
        """Test an item with neither URL nor id is rejected."""
        with pytest.raises(MalformedItemError):
            validate_raw_item(RawItem(title="Title"))

    def test_missing_title(self):
        """Test an item without a title is rejected."""
        with pytest.raises(MalformedItemError):
            validate_raw_item(RawItem(title="  ", url="https://example.com/a"))


class TestRawItemFromDict:
    """Tests for building raw items from platform payloads."""

    def test_accepts_aliases(self):
        """Test link/id/description aliases are accepted."""
        item = raw_item_from_dict({
            "title": " A post ",
            "link": "https://social.example/p/1",
            "id": 123,
            "description": "Body",
            "published_at": "2026-10-14T09:00:00Z",
        })

        assert item.title == "A post"
        assert item.url == "https://social.example/p/1"
        assert item.external_id == "123"
        assert item.body == "Body"
        assert item.published_at == calendar.timegm((2026, 10, 14, 9, 0, 0))

    def test_epoch_timestamp(self):
        """Test epoch seconds are accepted as-is."""
        item = raw_item_from_dict({"title": "T", "url": "https://x.example", "published_at": 1700000000})
        assert item.published_at == 1700000000

    @pytest.mark.parametrize("data", [
        {"title": "No key"},
        {"url": "https://x.example"},
        {"title": 42, "url": "https://x.example"},
        {"title": "Bad date", "url": "https://x.example", "published_at": "yesterday"},
        ["not", "a", "mapping"],
    ])
    def test_malformed(self, data):
        """Test malformed payloads raise MalformedItemError."""
        with pytest.raises(MalformedItemError):
            raw_item_from_dict(data)


class TestEntryConversion:
    """Tests for converting feedparser entries."""

    def test_extract_author_from_list(self):
        """Test authors given as a list of dicts are joined."""
        entry = {"authors": [{"name": "Alice"}, {"name": "Bob\nSmith"}]}
        assert _extract_author(entry) == "Alice, Bob, Smith"

    def test_extract_author_missing(self):
        """Test None is returned when no author is present."""
        assert _extract_author({}) is None

    def test_prefers_content_over_summary(self, feed):
        """Test full content is used when the entry has it."""
        entry = {
            "title": "T",
            "link": "https://example.com/t",
            "summary": "short",
            "content": [{"value": "<p>full body</p>"}],
        }
        item = entry_to_raw_item(entry, feed)
        assert item.body == "<p>full body</p>"
        assert item.metadata["feed_name"] == "Example"
        assert item.metadata["tags"] == ["ai-ml"]

    def test_entry_without_link_or_id_is_unvalidated(self, feed):
        """Test conversion is lenient and validation rejects the item later."""
        item = entry_to_raw_item({"title": "Orphan"}, feed)
        with pytest.raises(MalformedItemError):
            validate_raw_item(item)


class TestFetchFeedItems:
    """Tests for fetch_feed_items with HTTP mocked."""

    @patch("content_pipeline.sources.requests.get")
    def test_fetches_and_filters_stale(self, mock_get, feed):
        """Test entries are parsed and stale ones skipped."""
        mock_get.return_value = _response()

        items = fetch_feed_items(feed, timeout=5.0, max_age_days=7, now=NOW)

        assert [item.title for item in items] == ["Fresh post about LLMs", "Undated post"]
        fresh = items[0]
        assert fresh.url == "https://example.com/fresh"
        assert fresh.external_id == "fresh-1"
        assert fresh.published_at == calendar.timegm((2026, 10, 14, 9, 0, 0))
        assert "everywhere" in fresh.body
        assert mock_get.call_args.kwargs["timeout"] == 5.0

    @patch("content_pipeline.sources.requests.get")
    def test_no_age_limit(self, mock_get, feed):
        """Test all entries are kept without an age limit."""
        mock_get.return_value = _response()
        assert len(fetch_feed_items(feed, now=NOW)) == 3

    @patch("content_pipeline.sources.requests.get")
    def test_http_error(self, mock_get, feed):
        """Test HTTP errors raise FeedFetchError."""
        mock_get.return_value = _response(status_code=503)
        with pytest.raises(FeedFetchError, match="503"):
            fetch_feed_items(feed)

    @patch("content_pipeline.sources.requests.get")
    def test_timeout(self, mock_get, feed):
        """Test timeouts raise FeedFetchError."""
        mock_get.side_effect = requests.Timeout("too slow")
        with pytest.raises(FeedFetchError, match="Timed out"):
            fetch_feed_items(feed, timeout=0.5)

    @patch("content_pipeline.sources.requests.get")
    def test_transport_error(self, mock_get, feed):
        """Test connection errors raise FeedFetchError."""
        mock_get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(FeedFetchError):
            fetch_feed_items(feed)

    @patch("content_pipeline.sources.requests.get")
    def test_unparseable_feed(self, mock_get, feed):
        """Test a body that is not a feed raises FeedFetchError."""
        mock_get.return_value = _response(content=b"<html><body>not a feed")
        with pytest.raises(FeedFetchError):
            fetch_feed_items(feed)
