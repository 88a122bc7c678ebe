"""
Content sources: RSS/Atom feed fetching and the raw item contract.

Every source produces RawItems. Feed entries are read leniently here and
validated by validate_raw_item before they reach ingestion, so malformed
entries are counted rather than silently dropped.
"""

import calendar
import time
from datetime import datetime, timezone
from typing import List, Mapping, Optional

import feedparser  # type: ignore
import requests

from content_pipeline.config import FeedConfig
from content_pipeline.constants import SECONDS_PER_DAY
from content_pipeline.errors import FeedFetchError, MalformedItemError
from content_pipeline.models import RawItem
from util.logging_util import setup_logger

logger = setup_logger(__name__)

USER_AGENT = "content-pipeline/0.1 (+feed reader)"


def validate_raw_item(item: RawItem) -> RawItem:
    """Check a raw item satisfies the ingestion contract.

    Raises MalformedItemError when the title is missing or when the item
    has neither a URL nor an external id to deduplicate on.
    """
    if not item.title or not item.title.strip():
        raise MalformedItemError("Raw item has no title")
    if not item.url and not item.external_id:
        raise MalformedItemError(f"Raw item '{item.title[:50]}' has neither a URL nor an external id")
    return item


def _parse_timestamp(value) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedItemError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedItemError(f"Invalid timestamp: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    raise MalformedItemError(f"Invalid timestamp: {value!r}")


def raw_item_from_dict(data: Mapping) -> RawItem:
    """Build a RawItem from a source payload (e.g. a social platform post).

    Accepts `url` or `link`, `external_id` or `id`, and `body`, `description`
    or `content` for the text. `published_at` may be epoch seconds or an
    ISO 8601 string.
    """
    if not isinstance(data, Mapping):
        raise MalformedItemError(f"Raw item must be a mapping, got {type(data).__name__}")

    title = data.get("title")
    if title is not None and not isinstance(title, str):
        raise MalformedItemError(f"Raw item title must be a string, got {type(title).__name__}")

    external_id = data.get("external_id", data.get("id"))
    item = RawItem(
        title=(title or "").strip(),
        body=data.get("body") or data.get("description") or data.get("content") or "",
        url=data.get("url") or data.get("link") or None,
        external_id=str(external_id) if external_id not in (None, "") else None,
        published_at=_parse_timestamp(data.get("published_at")),
        author=data.get("author"),
        metadata=dict(data.get("metadata") or {}),
    )
    return validate_raw_item(item)


def _extract_author(entry: dict) -> Optional[str]:
    """Extract author names from a feed entry as a single string.

    Handles a list of dicts with a 'name' key as well as a plain 'author' string.
    """
    authors = entry.get("authors")
    if isinstance(authors, list):
        names = []
        for author in authors:
            if isinstance(author, dict):
                names.append(author.get("name", "").replace("\n", ", ").strip())
            elif isinstance(author, str):
                names.append(author.strip())
        names = [name for name in names if name]
        if names:
            return ", ".join(names)

    author = entry.get("author")
    if isinstance(author, str) and author.strip():
        return author.strip()
    return None


def _extract_body(entry: dict) -> str:
    """Prefer full content over the summary/description."""
    for content in entry.get("content") or []:
        value = content.get("value") if isinstance(content, dict) else None
        if value:
            return value
    return entry.get("summary", "") or entry.get("description", "") or ""


def _published_at(entry: dict) -> Optional[int]:
    """Publish time from feedparser's UTC struct_time, falling back to the updated time."""
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed is None:
        return None
    return calendar.timegm(parsed)


def entry_to_raw_item(entry: dict, feed: FeedConfig) -> RawItem:
    """Convert a feedparser entry to an unvalidated RawItem."""
    return RawItem(
        title=(entry.get("title") or "").strip(),
        body=_extract_body(entry),
        url=entry.get("link") or None,
        external_id=entry.get("id") or None,
        published_at=_published_at(entry),
        author=_extract_author(entry),
        metadata={
            "feed_name": feed.name,
            "feed_url": feed.url,
            "platform": feed.platform,
            "tags": list(feed.tags),
        },
    )


def fetch_feed_items(
    feed: FeedConfig,
    timeout: float = 10.0,
    max_age_days: Optional[int] = None,
    now: Optional[int] = None,
) -> List[RawItem]:
    """
    Fetch the entries of one feed as raw items.

    Args:
        feed: The feed to fetch.
        timeout: Request timeout in seconds.
        max_age_days: Skip entries published longer ago than this. Entries
            without a publish date are kept.
        now: Reference time for the age check, defaults to the current time.

    Returns:
        Raw items in feed order. Items are not validated yet.

    Raises:
        FeedFetchError: On timeouts, transport errors, HTTP status >= 400 or
            an unparseable feed.
    """
    try:
        response = requests.get(feed.url, timeout=timeout, headers={"User-Agent": USER_AGENT})
    except requests.Timeout as e:
        raise FeedFetchError(f"Timed out after {timeout}s fetching feed {feed.name}") from e
    except requests.RequestException as e:
        raise FeedFetchError(f"Error fetching feed {feed.name}: {e}") from e

    if response.status_code >= 400:
        raise FeedFetchError(f"HTTP {response.status_code} for feed {feed.name}")

    parsed = feedparser.parse(response.content)
    entries = parsed.get("entries", [])
    if parsed.get("bozo") and not entries:
        raise FeedFetchError(f"Unparseable feed {feed.name}: {parsed.get('bozo_exception')}")

    now = int(time.time()) if now is None else now
    cutoff = now - max_age_days * SECONDS_PER_DAY if max_age_days else None

    items = []
    stale = 0
    for entry in entries:
        item = entry_to_raw_item(entry, feed)
        if cutoff is not None and item.published_at is not None and item.published_at < cutoff:
            stale += 1
            continue
        items.append(item)

    logger.info(f"Fetched {len(items)} items from {feed.name} ({stale} older than {max_age_days} days skipped)")
    return items
