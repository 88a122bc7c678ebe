"""Tests for content pipeline database operations."""

import numpy as np
import pytest
from sqlalchemy import create_engine, text

from content_pipeline import db_engine
from content_pipeline.constants import SECONDS_PER_DAY
from content_pipeline.database import (
    add_user_topic,
    content_exists,
    count_archived,
    count_referenced_before,
    get_all_topics,
    get_content_item,
    get_content_item_by_key,
    get_content_statistics,
    get_drop,
    get_job_last_run,
    get_latest_drop,
    get_onboarded_user_ids,
    get_user_preference,
    init_db,
    insert_content_item,
    list_content_since,
    list_purge_candidates,
    mark_drop_delivered,
    prune_interactions,
    purge_content_batch,
    record_click,
    record_job_run,
    remove_user_topic,
    save_daily_drop,
    seed_topics,
    set_user_topics,
    update_topic_embedding,
)
from content_pipeline.errors import (
    ConsistencyError,
    DropGenerationConflictError,
    DuplicateContentError,
    StorageError,
)
from content_pipeline.models import (
    ClassificationMethod,
    ContentItem,
    DailyDrop,
    DropEntry,
    InteractionKind,
)
from content_pipeline.orm_models import Base

NOW = 1_800_000_000


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    seed_topics()
    yield test_engine
    db_engine.reset_engine()


def make_item(key="https://example.com/a", source_id="feed", ingested_at=NOW, **kwargs):
    defaults = dict(
        source_id=source_id,
        dedup_key=key,
        url=key,
        title="A title",
        body="A body about machine learning",
        excerpt="A body about machine learning",
        topics=["ai-ml"],
        embedding=np.arange(4, dtype=np.float32),
        confidence=0.9,
        classification_method=ClassificationMethod.PRIMARY,
        ingested_at=ingested_at,
        published_at=ingested_at - 3600,
        metadata={"feed_name": "Example"},
    )
    defaults.update(kwargs)
    return ContentItem(**defaults)


def make_drop(user_id, content_ids, generation=1, generated_at=NOW):
    return DailyDrop(
        user_id=user_id,
        entries=[DropEntry(content_id=cid, score=1.0 - i / 10, position=i) for i, cid in enumerate(content_ids)],
        generated_at=generated_at,
        generation=generation,
    )


class TestInitDb:
    """Tests for database initialization."""

    def test_creates_tables(self, temp_db):
        """Test that init_db creates all required tables."""
        init_db()
        with temp_db.connect() as conn:
            result = conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
            tables = {row[0] for row in result.fetchall()}

        assert {
            "topics", "content_items", "users", "user_topic_preferences", "user_interactions",
            "daily_drops", "daily_drop_entries", "archived_content", "job_history",
        } <= tables

    def test_idempotent(self, temp_db):
        """Test that init_db can be called multiple times safely."""
        init_db()
        init_db()


class TestTopics:
    """Tests for the topic vocabulary."""

    def test_seeded_once(self, temp_db):
        """Test seeding twice creates nothing the second time."""
        assert seed_topics() == 0
        topics = get_all_topics()
        assert len(topics) == 12
        assert {"ai-ml", "design", "leadership"} <= {topic.id for topic in topics}

    def test_update_embedding(self, temp_db):
        """Test storing and reading back a topic embedding."""
        update_topic_embedding("design", np.array([0.5, 0.25], dtype=np.float32))
        design = next(topic for topic in get_all_topics() if topic.id == "design")
        assert np.array_equal(design.embedding, np.array([0.5, 0.25], dtype=np.float32))


class TestContentItems:
    """Tests for content item storage."""

    def test_insert_and_get(self, temp_db):
        """Test an inserted item reads back unchanged."""
        item = make_item()
        content_id = insert_content_item(item)

        retrieved = get_content_item(content_id)
        assert retrieved.id == content_id
        assert retrieved.title == item.title
        assert retrieved.topics == ["ai-ml"]
        assert retrieved.classification_method == ClassificationMethod.PRIMARY
        assert retrieved.metadata == {"feed_name": "Example"}
        assert np.array_equal(retrieved.embedding, item.embedding)

    def test_get_missing(self, temp_db):
        """Test None is returned for an unknown id."""
        assert get_content_item(999) is None

    def test_duplicate_key_rejected(self, temp_db):
        """Test a second insert with the same key raises DuplicateContentError."""
        insert_content_item(make_item())
        with pytest.raises(DuplicateContentError):
            insert_content_item(make_item(title="Another title"))

        assert get_content_item_by_key("https://example.com/a").title == "A title"

    def test_same_key_other_source(self, temp_db):
        """Test a dedup key already stored from one source is rejected from another."""
        first_id = insert_content_item(make_item())
        with pytest.raises(DuplicateContentError):
            insert_content_item(make_item(source_id="other-feed"))

        assert content_exists("https://example.com/a")
        assert get_content_item_by_key("https://example.com/a").id == first_id

    def test_content_exists_wraps_database_errors(self):
        """Test a failed lookup surfaces as StorageError."""
        db_engine.set_engine(create_engine("sqlite:///:memory:"))
        try:
            with pytest.raises(StorageError):
                content_exists("https://example.com/a")
        finally:
            db_engine.reset_engine()

    def test_content_exists(self, temp_db):
        """Test content_exists reflects inserts."""
        assert not content_exists("https://example.com/a")
        insert_content_item(make_item())
        assert content_exists("https://example.com/a")

    def test_list_content_since(self, temp_db):
        """Test listing newer items, newest first, with exclusions."""
        old_id = insert_content_item(make_item("https://example.com/old", ingested_at=NOW - 10 * SECONDS_PER_DAY))
        a_id = insert_content_item(make_item("https://example.com/a", ingested_at=NOW - 100))
        b_id = insert_content_item(make_item("https://example.com/b", ingested_at=NOW))

        items = list_content_since(NOW - SECONDS_PER_DAY)
        assert [item.id for item in items] == [b_id, a_id]

        items = list_content_since(NOW - SECONDS_PER_DAY, exclude_ids={b_id})
        assert [item.id for item in items] == [a_id]
        assert old_id not in [item.id for item in list_content_since(NOW - 2 * SECONDS_PER_DAY)]

    def test_list_content_since_includes_boundary(self, temp_db):
        """Test an item ingested exactly at `since` is listed."""
        item_id = insert_content_item(make_item(ingested_at=NOW))
        assert [item.id for item in list_content_since(NOW)] == [item_id]

    def test_record_click(self, temp_db):
        """Test clicks increment the counter and land in the history."""
        set_user_topics("alice", {"ai-ml": 1.0}, now=NOW)
        content_id = insert_content_item(make_item())

        record_click("alice", content_id, now=NOW)
        record_click("alice", content_id, now=NOW + 1)

        assert get_content_item(content_id).click_count == 2
        history = get_user_preference("alice").history
        assert [i.kind for i in history] == [InteractionKind.CLICK, InteractionKind.CLICK]

    def test_record_click_missing_content(self, temp_db):
        """Test clicking unknown content is a consistency error."""
        with pytest.raises(ConsistencyError):
            record_click("alice", 12345, now=NOW)


class TestUserPreferences:
    """Tests for user topic selections."""

    def test_unknown_user(self, temp_db):
        """Test an unknown user has no preference record."""
        assert get_user_preference("nobody") is None

    def test_set_replaces_selection(self, temp_db):
        """Test set_user_topics replaces the whole selection and onboards the user."""
        set_user_topics("alice", {"ai-ml": 1.0, "design": 0.5}, now=NOW)
        set_user_topics("alice", {"security": 1.0}, now=NOW)

        preference = get_user_preference("alice")
        assert preference.topic_weights == {"security": 1.0}
        assert preference.is_onboarded
        assert get_onboarded_user_ids() == ["alice"]

    def test_unknown_topic_leaves_selection_intact(self, temp_db):
        """Test a failed update does not partially apply."""
        set_user_topics("alice", {"ai-ml": 1.0}, now=NOW)
        with pytest.raises(ValueError):
            set_user_topics("alice", {"design": 1.0, "astrology": 1.0}, now=NOW)

        assert get_user_preference("alice").topic_ids == ["ai-ml"]

    def test_add_and_remove(self, temp_db):
        """Test adding and removing single topics."""
        add_user_topic("bob", "ai-ml", now=NOW)
        add_user_topic("bob", "design", weight=0.5, now=NOW)
        add_user_topic("bob", "design", weight=0.8, now=NOW)

        assert get_user_preference("bob").topic_weights == {"ai-ml": 1.0, "design": 0.8}
        assert remove_user_topic("bob", "ai-ml")
        assert not remove_user_topic("bob", "ai-ml")
        assert get_user_preference("bob").topic_ids == ["design"]

    def test_prune_interactions(self, temp_db):
        """Test interactions older than the cutoff are deleted."""
        set_user_topics("alice", {"ai-ml": 1.0}, now=NOW)
        content_id = insert_content_item(make_item())
        record_click("alice", content_id, now=NOW - 100 * SECONDS_PER_DAY)
        record_click("alice", content_id, now=NOW)

        assert prune_interactions(NOW - 90 * SECONDS_PER_DAY) == 1
        assert len(get_user_preference("alice").history) == 1


class TestDailyDrops:
    """Tests for drop persistence."""

    def test_save_and_load(self, temp_db):
        """Test a drop is stored with its entries and delivered interactions."""
        set_user_topics("alice", {"ai-ml": 1.0}, now=NOW)
        ids = [insert_content_item(make_item(f"https://example.com/{i}")) for i in range(3)]

        saved = save_daily_drop(make_drop("alice", ids))

        assert saved.id is not None
        latest = get_latest_drop("alice")
        assert latest.content_ids == ids
        assert latest.delivered_at is None
        history = get_user_preference("alice").history
        assert {i.content_id for i in history} == set(ids)
        assert all(i.kind == InteractionKind.DELIVERED for i in history)

    def test_generation_conflict(self, temp_db):
        """Test a second drop with the same generation is rejected without side effects."""
        set_user_topics("alice", {"ai-ml": 1.0}, now=NOW)
        first = insert_content_item(make_item("https://example.com/1"))
        second = insert_content_item(make_item("https://example.com/2"))
        save_daily_drop(make_drop("alice", [first]))

        with pytest.raises(DropGenerationConflictError):
            save_daily_drop(make_drop("alice", [second]))

        assert get_drop("alice", 1).content_ids == [first]
        assert [i.content_id for i in get_user_preference("alice").history] == [first]

    def test_latest_drop(self, temp_db):
        """Test the highest generation is the latest drop."""
        content_id = insert_content_item(make_item())
        save_daily_drop(make_drop("alice", [content_id], generation=1))
        save_daily_drop(make_drop("alice", [], generation=2, generated_at=NOW + 1))

        assert get_latest_drop("alice").generation == 2
        assert get_latest_drop("bob") is None

    def test_mark_delivered(self, temp_db):
        """Test marking a drop delivered sets the timestamp once."""
        content_id = insert_content_item(make_item())
        drop = save_daily_drop(make_drop("alice", [content_id]))

        assert mark_drop_delivered(drop.id, now=NOW + 5)
        assert mark_drop_delivered(drop.id, now=NOW + 50)
        assert get_drop("alice", 1).delivered_at == NOW + 5
        assert not mark_drop_delivered(999)


class TestRetentionQueries:
    """Tests for statistics and purge operations."""

    def test_statistics(self, temp_db):
        """Test counts, buckets and growth inputs."""
        insert_content_item(make_item("https://example.com/1", ingested_at=NOW - 1 * SECONDS_PER_DAY))
        insert_content_item(make_item("https://example.com/2", ingested_at=NOW - 20 * SECONDS_PER_DAY))
        insert_content_item(make_item("https://example.com/3", ingested_at=NOW - 60 * SECONDS_PER_DAY))
        insert_content_item(make_item("https://example.com/4", ingested_at=NOW - 200 * SECONDS_PER_DAY))

        stats = get_content_statistics(NOW, growth_window_days=7)

        assert stats["total_items"] == 4
        assert stats["approx_size_bytes"] > 0
        assert stats["oldest_ingested_at"] == NOW - 200 * SECONDS_PER_DAY
        assert stats["newest_ingested_at"] == NOW - 1 * SECONDS_PER_DAY
        assert stats["age_buckets"] == {"last_7_days": 1, "last_30_days": 2, "last_90_days": 3, "older": 1}
        assert stats["recent_items"] == 1

    def test_empty_statistics(self, temp_db):
        """Test statistics on an empty store."""
        stats = get_content_statistics(NOW)
        assert stats["total_items"] == 0
        assert stats["approx_size_bytes"] == 0
        assert stats["oldest_ingested_at"] is None

    def test_undelivered_drop_blocks_purge(self, temp_db):
        """Test content referenced by an undelivered drop is protected."""
        old = NOW - 100 * SECONDS_PER_DAY
        held = insert_content_item(make_item("https://example.com/held", ingested_at=old))
        free = insert_content_item(make_item("https://example.com/free", ingested_at=old))
        save_daily_drop(make_drop("alice", [held]))

        assert list_purge_candidates(NOW, 10) == [free]
        assert count_referenced_before(NOW) == 1
        with pytest.raises(ConsistencyError):
            purge_content_batch([held, free], now=NOW)

        # The whole batch was rolled back
        assert get_content_item(free) is not None

    def test_purge_after_delivery(self, temp_db):
        """Test delivered drops no longer protect content and leave no dangling entries."""
        old = NOW - 100 * SECONDS_PER_DAY
        content_id = insert_content_item(make_item(ingested_at=old))
        drop = save_daily_drop(make_drop("alice", [content_id]))
        mark_drop_delivered(drop.id, now=NOW)

        assert purge_content_batch([content_id], archive=True, now=NOW) == 1

        assert get_content_item(content_id) is None
        assert get_drop("alice", 1).content_ids == []
        assert count_archived() == 1

    def test_purge_candidates_after_id(self, temp_db):
        """Test candidates can be paged by id."""
        old = NOW - 100 * SECONDS_PER_DAY
        ids = [insert_content_item(make_item(f"https://example.com/{i}", ingested_at=old)) for i in range(5)]

        assert list_purge_candidates(NOW, 2) == ids[:2]
        assert list_purge_candidates(NOW, 2, after_id=ids[1]) == ids[2:4]


class TestJobHistory:
    """Tests for job run bookkeeping."""

    def test_record_and_get(self, temp_db):
        """Test last run times are stored and updated."""
        assert get_job_last_run("cleanup") is None
        record_job_run("cleanup", "ok", now=NOW)
        record_job_run("cleanup", "failed", detail="boom", now=NOW + 60)
        assert get_job_last_run("cleanup") == NOW + 60
