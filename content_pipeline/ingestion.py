"""
Ingestion of raw source items into classified, persisted content items.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError

from content_pipeline.classifier import ClassifierGateway
from content_pipeline.config import FeedConfig, IngestionConfig
from content_pipeline.constants import TRACKING_QUERY_PARAMS, TRACKING_QUERY_PREFIXES
from content_pipeline.database import (
    content_exists,
    get_all_topics,
    insert_content_item,
    seed_topics,
    update_topic_embedding,
)
from content_pipeline.errors import (
    ClassifierError,
    DuplicateContentError,
    FeedFetchError,
    MalformedItemError,
    StorageError,
)
from content_pipeline.models import ClassificationMethod, ContentItem, IngestionResult, RawItem
from content_pipeline.normalizer import excerpt, normalize
from content_pipeline.sources import fetch_feed_items, raw_item_from_dict, validate_raw_item
from util.logging_util import log_pipeline_run, setup_logger

logger = setup_logger(__name__)

# Share of fallback classifications in one batch above which operators are warned
FALLBACK_WARNING_RATIO = 0.5

_DEFAULT_PORTS = {"http": "80", "https": "443"}


def canonicalize_url(url: str) -> str:
    """Canonical form of a URL used for deduplication.

    Lower-cases scheme and host, drops default ports, the fragment and
    tracking query parameters, and trims a trailing slash from the path.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()

    default_port = _DEFAULT_PORTS.get(scheme)
    if default_port and netloc.endswith(f":{default_port}"):
        netloc = netloc[: -len(default_port) - 1]

    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_QUERY_PARAMS
        and not key.lower().startswith(TRACKING_QUERY_PREFIXES)
    ]
    return urlunsplit((scheme, netloc, parts.path.rstrip("/"), urlencode(query), ""))


def dedup_key_for(item: RawItem) -> str:
    """Canonical URL when present, otherwise the source's external id."""
    if item.url:
        return canonicalize_url(item.url)
    if item.external_id:
        return f"id:{item.external_id}"
    raise MalformedItemError(f"Raw item '{item.title[:50]}' has no dedup key")


class IngestionStats:
    """Running totals across ingestion batches. Safe to update from several threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._totals = IngestionResult()
        self.batches = 0

    def record(self, result: IngestionResult):
        with self._lock:
            self._totals = self._totals.merge(result)
            self.batches += 1

    @property
    def totals(self) -> IngestionResult:
        with self._lock:
            return IngestionResult(**self._totals.as_dict())

    @property
    def fallback_ratio(self) -> float:
        """Share of accepted items that were classified by the fallback."""
        totals = self.totals
        if totals.accepted == 0:
            return 0.0
        return totals.fallback / totals.accepted


def seed_topics_with_embeddings(gateway: ClassifierGateway) -> int:
    """
    Seed the default topic vocabulary and embed topics that have no embedding yet.

    Only primary embeddings are stored: hash embeddings do not share a space
    with primary item embeddings, so a topic stays unembedded until the
    primary classifier is reachable.

    Returns the number of topics embedded.
    """
    created = seed_topics()
    if created:
        logger.info(f"Seeded {created} topics")

    embedded = 0
    for topic in get_all_topics():
        if topic.embedding is not None:
            continue
        vector, method = gateway.embed(f"{topic.display_name}: {topic.description}")
        if method is not ClassificationMethod.PRIMARY:
            logger.warning(f"Skipping embedding for topic {topic.id}: primary embedder unavailable")
            continue
        update_topic_embedding(topic.id, vector)
        embedded += 1
    return embedded


class IngestionCoordinator:
    """Deduplicates, normalizes, classifies and persists raw items."""

    def __init__(
        self,
        gateway: ClassifierGateway,
        config: Optional[IngestionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.config = config or IngestionConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.stats = IngestionStats()

    def _build_item(self, source_id: str, dedup_key: str, raw: RawItem, now: int) -> ContentItem:
        title = normalize(raw.title)
        body = normalize(raw.body)
        text = title if len(body) < max(self.config.min_body_length, 1) else f"{title}. {body}"

        classification = self.gateway.classify(text)
        return ContentItem(
            source_id=source_id,
            dedup_key=dedup_key,
            url=raw.url or "",
            external_id=raw.external_id,
            title=title,
            body=body,
            excerpt=excerpt(body or title, self.config.excerpt_max_length),
            topics=classification.topics,
            embedding=classification.embedding,
            confidence=classification.confidence,
            classification_method=classification.method,
            ingested_at=now,
            published_at=raw.published_at,
            metadata=dict(raw.metadata, author=raw.author) if raw.author else dict(raw.metadata),
        )

    def ingest(
        self,
        source_id: str,
        raw_items: Iterable[Union[RawItem, Mapping]],
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionResult:
        """
        Ingest one batch of raw items from a source.

        A malformed item or a fatal classifier error only fails that item.
        Storage errors other than a duplicate key propagate; items committed
        before the error, or before cancellation, stay committed.

        Args:
            source_id: Identifier of the feed or platform the items came from.
            raw_items: RawItems, or mappings accepted by raw_item_from_dict.
            cancel_event: When set, processing stops before the next item.

        Returns:
            Counts of accepted, duplicate, failed, fallback and rejected items.
        """
        start_time = time.time()
        result = IngestionResult()
        seen_keys = set()

        for raw in raw_items:
            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning(f"Ingestion of {source_id} cancelled")
                break

            try:
                item = validate_raw_item(raw) if isinstance(raw, RawItem) else raw_item_from_dict(raw)
                dedup_key = dedup_key_for(item)
            except MalformedItemError as e:
                self.logger.warning(f"Rejected item from {source_id}: {e}")
                result.rejected += 1
                result.failed += 1
                continue

            if dedup_key in seen_keys or content_exists(dedup_key):
                self.logger.debug(f"Content already exists: {dedup_key}")
                result.duplicate += 1
                continue
            seen_keys.add(dedup_key)

            try:
                content = self._build_item(source_id, dedup_key, item, int(time.time()))
            except ClassifierError as e:
                self.logger.error(f"Failed to classify '{item.title[:50]}' from {source_id}: {e}")
                result.failed += 1
                continue

            try:
                insert_content_item(content)
            except DuplicateContentError:
                self.logger.debug(f"Lost insert race for {dedup_key}")
                result.duplicate += 1
                continue

            result.accepted += 1
            if content.classification_method is ClassificationMethod.FALLBACK:
                result.fallback += 1

        self.stats.record(result)
        if result.accepted and result.fallback / result.accepted > FALLBACK_WARNING_RATIO:
            self.logger.warning(
                f"{result.fallback} of {result.accepted} items from {source_id} used fallback classification"
            )
        log_pipeline_run(self.logger, f"Ingestion of {source_id}", result.as_dict(),
                         (time.time() - start_time) * 1000)
        return result

    def ingest_feed(self, feed: FeedConfig, cancel_event: Optional[threading.Event] = None) -> IngestionResult:
        """Fetch one feed and ingest its items under the feed's name."""
        items = fetch_feed_items(
            feed,
            timeout=self.config.fetch_timeout_seconds,
            max_age_days=self.config.max_item_age_days,
        )
        return self.ingest(feed.name, items, cancel_event)

    def ingest_sources(
        self,
        feeds: List[FeedConfig],
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, IngestionResult]:
        """
        Fetch and ingest several feeds concurrently.

        A feed that cannot be fetched, or whose batch hits a storage error,
        is logged and skipped without affecting the others.

        Returns:
            Results keyed by feed name, for feeds that completed.
        """
        results: Dict[str, IngestionResult] = {}
        if not feeds:
            self.logger.warning("No feeds configured")
            return results

        with ThreadPoolExecutor(max_workers=self.config.max_concurrent_sources,
                                thread_name_prefix="ingest") as executor:
            futures = {executor.submit(self.ingest_feed, feed, cancel_event): feed for feed in feeds}
            for future in as_completed(futures):
                feed = futures[future]
                try:
                    results[feed.name] = future.result()
                except FeedFetchError as e:
                    self.logger.warning(f"Skipping feed {feed.name}: {e}")
                except (StorageError, SQLAlchemyError) as e:
                    self.logger.error(f"Storage error ingesting {feed.name}: {e}")

        total = IngestionResult()
        for result in results.values():
            total = total.merge(result)
        log_pipeline_run(self.logger, f"Ingestion of {len(results)}/{len(feeds)} feeds", total.as_dict())
        return results
