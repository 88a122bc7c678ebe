"""
Database operations for the content pipeline.

Uses SQLAlchemy ORM for database access. The public API uses dataclass models
from models.py, with conversion to/from ORM models handled internally.

Dedup-key exclusivity and per-user drop exclusivity rely on the unique
constraints declared in orm_models.py; constraint violations are translated
into DuplicateContentError and DropGenerationConflictError here.
"""

import time
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np
from sqlalchemy import Integer, delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import aliased

from content_pipeline.constants import DEFAULT_TOPICS, SECONDS_PER_DAY, TOPIC_VOCABULARY_VERSION
from content_pipeline.db_engine import get_engine, get_session
from content_pipeline.errors import (
    ConsistencyError,
    DropGenerationConflictError,
    DuplicateContentError,
    StorageError,
)
from content_pipeline.models import (
    ContentItem,
    DailyDrop,
    InteractionKind,
    Topic,
    UserPreference,
)
from content_pipeline.orm_models import (
    ArchivedContentORM,
    Base,
    ContentItemORM,
    DailyDropEntryORM,
    DailyDropORM,
    JobHistoryORM,
    TopicORM,
    UserInteractionORM,
    UserORM,
    UserTopicPreferenceORM,
    content_dataclass_to_orm,
    content_orm_to_dataclass,
    drop_orm_to_dataclass,
    interaction_orm_to_dataclass,
    topic_orm_to_dataclass,
)


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else now


def init_db():
    """Initialize the database schema."""
    engine = get_engine()
    Base.metadata.create_all(engine)


# Topics


def seed_topics(topics: Sequence[tuple] = DEFAULT_TOPICS, version: int = TOPIC_VOCABULARY_VERSION) -> int:
    """Create any missing topics from (id, display name, description) tuples.

    Existing topics are left untouched. Returns the number created.
    """
    created = 0
    with get_session() as session:
        existing = set(session.execute(select(TopicORM.id)).scalars().all())
        for topic_id, display_name, description in topics:
            if topic_id in existing:
                continue
            session.add(TopicORM(
                id=topic_id,
                display_name=display_name,
                description=description,
                vocabulary_version=version,
            ))
            created += 1
    return created


def get_all_topics() -> List[Topic]:
    """Get every topic in the vocabulary."""
    with get_session() as session:
        orms = session.execute(select(TopicORM).order_by(TopicORM.id)).scalars().all()
        return [topic_orm_to_dataclass(orm) for orm in orms]


def get_topic_ids() -> Set[str]:
    with get_session() as session:
        return set(session.execute(select(TopicORM.id)).scalars().all())


def update_topic_embedding(topic_id: str, embedding: np.ndarray):
    """Store the embedding for a topic."""
    with get_session() as session:
        orm = session.get(TopicORM, topic_id)
        if orm is not None:
            orm.embedding = embedding


# Content items


def insert_content_item(item: ContentItem) -> int:
    """Insert a new content item.

    The dedup_key unique constraint makes this an atomic insert-if-absent:
    a concurrent or repeated insert of the same key, from any source, raises
    DuplicateContentError instead of creating a second row.

    Returns the content item id.
    """
    orm = content_dataclass_to_orm(item)
    try:
        with get_session() as session:
            session.add(orm)
            session.flush()
            return orm.id
    except IntegrityError as e:
        raise DuplicateContentError(item.source_id, item.dedup_key) from e
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to insert content {item.dedup_key}: {e}") from e


def content_exists(dedup_key: str) -> bool:
    """Check if a content item with this dedup key already exists, from any source."""
    try:
        with get_session() as session:
            stmt = select(exists().where(ContentItemORM.dedup_key == dedup_key))
            return session.execute(stmt).scalar()
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to look up content {dedup_key}: {e}") from e


def get_content_item(content_id: int) -> Optional[ContentItem]:
    """Get a content item by its database ID."""
    with get_session() as session:
        orm = session.get(ContentItemORM, content_id)
        if orm is None:
            return None
        return content_orm_to_dataclass(orm)


def get_content_item_by_key(dedup_key: str) -> Optional[ContentItem]:
    """Get a content item by its dedup key."""
    with get_session() as session:
        stmt = select(ContentItemORM).where(ContentItemORM.dedup_key == dedup_key)
        orm = session.execute(stmt).scalar_one_or_none()
        if orm is None:
            return None
        return content_orm_to_dataclass(orm)


def list_content_since(since: int, exclude_ids: Optional[Iterable[int]] = None) -> List[ContentItem]:
    """Get content items ingested at or after `since`, newest first."""
    exclude_ids = set(exclude_ids or [])
    with get_session() as session:
        stmt = (
            select(ContentItemORM)
            .where(ContentItemORM.ingested_at >= since)
            .order_by(ContentItemORM.ingested_at.desc(), ContentItemORM.id.asc())
        )
        orms = session.execute(stmt).scalars().all()
        return [content_orm_to_dataclass(orm) for orm in orms if orm.id not in exclude_ids]


def record_click(user_id: str, content_id: int, now: Optional[int] = None):
    """Increment an item's click counter and record the click in the user's history."""
    now = _now(now)
    with get_session() as session:
        result = session.execute(
            update(ContentItemORM)
            .where(ContentItemORM.id == content_id)
            .values(click_count=ContentItemORM.click_count + 1)
        )
        if result.rowcount == 0:
            raise ConsistencyError(f"Content {content_id} does not exist")
        session.add(UserInteractionORM(
            user_id=user_id,
            content_id=content_id,
            kind=InteractionKind.CLICK.value,
            occurred_at=now,
        ))


# Users and preferences


def _get_or_create_user(session, user_id: str, now: int) -> UserORM:
    user = session.get(UserORM, user_id)
    if user is None:
        user = UserORM(user_id=user_id, is_onboarded=False, created_at=now)
        session.add(user)
        session.flush()
    return user


def _check_topics_exist(session, topic_ids: Iterable[str]):
    topic_ids = set(topic_ids)
    known = set(session.execute(select(TopicORM.id).where(TopicORM.id.in_(topic_ids))).scalars().all())
    unknown = topic_ids - known
    if unknown:
        raise ValueError(f"Unknown topics: {sorted(unknown)}")


def set_user_topics(user_id: str, topic_weights: Dict[str, float], now: Optional[int] = None):
    """Replace a user's topic selection in a single transaction.

    A non-empty selection marks the user as onboarded.
    """
    now = _now(now)
    with get_session() as session:
        _check_topics_exist(session, topic_weights)
        user = _get_or_create_user(session, user_id, now)
        session.execute(
            delete(UserTopicPreferenceORM).where(UserTopicPreferenceORM.user_id == user_id)
        )
        for topic_id, weight in topic_weights.items():
            session.add(UserTopicPreferenceORM(
                user_id=user_id, topic_id=topic_id, weight=weight, created_at=now,
            ))
        user.is_onboarded = bool(topic_weights) or user.is_onboarded


def add_user_topic(user_id: str, topic_id: str, weight: float = 1.0, now: Optional[int] = None):
    """Add a topic to a user's selection, or update its weight."""
    now = _now(now)
    with get_session() as session:
        _check_topics_exist(session, [topic_id])
        user = _get_or_create_user(session, user_id, now)
        stmt = select(UserTopicPreferenceORM).where(
            UserTopicPreferenceORM.user_id == user_id,
            UserTopicPreferenceORM.topic_id == topic_id,
        )
        existing = session.execute(stmt).scalar_one_or_none()
        if existing is None:
            session.add(UserTopicPreferenceORM(
                user_id=user_id, topic_id=topic_id, weight=weight, created_at=now,
            ))
        else:
            existing.weight = weight
        user.is_onboarded = True


def remove_user_topic(user_id: str, topic_id: str) -> bool:
    """Remove a topic from a user's selection. Returns True if it was selected."""
    with get_session() as session:
        result = session.execute(
            delete(UserTopicPreferenceORM).where(
                UserTopicPreferenceORM.user_id == user_id,
                UserTopicPreferenceORM.topic_id == topic_id,
            )
        )
        return result.rowcount > 0


def get_user_preference(user_id: str, history_since: int = 0) -> Optional[UserPreference]:
    """Get a user's topic weights and interactions newer than `history_since`."""
    with get_session() as session:
        user = session.get(UserORM, user_id)
        if user is None:
            return None
        prefs = session.execute(
            select(UserTopicPreferenceORM).where(UserTopicPreferenceORM.user_id == user_id)
        ).scalars().all()
        interactions = session.execute(
            select(UserInteractionORM)
            .where(
                UserInteractionORM.user_id == user_id,
                UserInteractionORM.occurred_at >= history_since,
            )
            .order_by(UserInteractionORM.occurred_at.desc())
        ).scalars().all()
        return UserPreference(
            user_id=user_id,
            topic_weights={pref.topic_id: pref.weight for pref in prefs},
            history=[interaction_orm_to_dataclass(orm) for orm in interactions],
            is_onboarded=user.is_onboarded,
        )


def get_onboarded_user_ids() -> List[str]:
    with get_session() as session:
        stmt = select(UserORM.user_id).where(UserORM.is_onboarded.is_(True)).order_by(UserORM.user_id)
        return list(session.execute(stmt).scalars().all())


def prune_interactions(before: int) -> int:
    """Delete interactions older than `before`. Returns the number deleted."""
    with get_session() as session:
        result = session.execute(
            delete(UserInteractionORM).where(UserInteractionORM.occurred_at < before)
        )
        return result.rowcount


# Daily drops


def _load_drop(session, drop_orm: Optional[DailyDropORM]) -> Optional[DailyDrop]:
    if drop_orm is None:
        return None
    entries = session.execute(
        select(DailyDropEntryORM).where(DailyDropEntryORM.drop_id == drop_orm.id)
    ).scalars().all()
    return drop_orm_to_dataclass(drop_orm, entries)


def get_latest_drop(user_id: str) -> Optional[DailyDrop]:
    """Get the most recent drop generated for a user."""
    with get_session() as session:
        stmt = (
            select(DailyDropORM)
            .where(DailyDropORM.user_id == user_id)
            .order_by(DailyDropORM.generation.desc())
            .limit(1)
        )
        return _load_drop(session, session.execute(stmt).scalar_one_or_none())


def get_drop(user_id: str, generation: int) -> Optional[DailyDrop]:
    with get_session() as session:
        stmt = select(DailyDropORM).where(
            DailyDropORM.user_id == user_id,
            DailyDropORM.generation == generation,
        )
        return _load_drop(session, session.execute(stmt).scalar_one_or_none())


def save_daily_drop(drop: DailyDrop) -> DailyDrop:
    """Persist a drop with its entries and record each item as delivered.

    Everything is written in one transaction. If another drop with the same
    (user_id, generation) was committed first, DropGenerationConflictError
    is raised and nothing is written.
    """
    try:
        with get_session() as session:
            drop_orm = DailyDropORM(
                user_id=drop.user_id,
                generation=drop.generation,
                generated_at=drop.generated_at,
                delivered_at=drop.delivered_at,
            )
            session.add(drop_orm)
            session.flush()
            for entry in drop.entries:
                session.add(DailyDropEntryORM(
                    drop_id=drop_orm.id,
                    content_id=entry.content_id,
                    position=entry.position,
                    score=entry.score,
                ))
                session.add(UserInteractionORM(
                    user_id=drop.user_id,
                    content_id=entry.content_id,
                    kind=InteractionKind.DELIVERED.value,
                    occurred_at=drop.generated_at,
                ))
            session.flush()
            drop_id = drop_orm.id
    except IntegrityError as e:
        if get_drop(drop.user_id, drop.generation) is not None:
            raise DropGenerationConflictError(drop.user_id, drop.generation) from e
        raise ConsistencyError(f"Drop for {drop.user_id} references missing content: {e}") from e
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to save drop for {drop.user_id}: {e}") from e

    drop.id = drop_id
    return drop


def mark_drop_delivered(drop_id: int, now: Optional[int] = None) -> bool:
    """Mark a drop as delivered so its items become eligible for retention."""
    now = _now(now)
    with get_session() as session:
        orm = session.get(DailyDropORM, drop_id)
        if orm is None:
            return False
        if orm.delivered_at is None:
            orm.delivered_at = now
        return True


# Storage statistics


def get_content_statistics(now: Optional[int] = None, growth_window_days: int = 7) -> dict:
    """Aggregate counts, approximate size and age distribution of content items."""
    now = _now(now)
    day = SECONDS_PER_DAY
    with get_session() as session:
        total, oldest, newest = session.execute(
            select(
                func.count(ContentItemORM.id),
                func.min(ContentItemORM.ingested_at),
                func.max(ContentItemORM.ingested_at),
            )
        ).one()

        approx_size = session.execute(
            select(func.coalesce(func.sum(
                func.coalesce(func.length(ContentItemORM.title, type_=Integer), 0)
                + func.coalesce(func.length(ContentItemORM.body, type_=Integer), 0)
                + func.coalesce(func.length(ContentItemORM.excerpt, type_=Integer), 0)
                + func.coalesce(func.length(ContentItemORM.url, type_=Integer), 0)
                + func.coalesce(func.length(ContentItemORM.embedding, type_=Integer), 0)
            ), 0))
        ).scalar()

        def count_since(seconds: int) -> int:
            return session.execute(
                select(func.count(ContentItemORM.id)).where(ContentItemORM.ingested_at > now - seconds)
            ).scalar()

        last_7 = count_since(7 * day)
        last_30 = count_since(30 * day)
        last_90 = count_since(90 * day)
        recent = count_since(growth_window_days * day)

    return {
        "total_items": total,
        "approx_size_bytes": int(approx_size or 0),
        "oldest_ingested_at": oldest,
        "newest_ingested_at": newest,
        "age_buckets": {
            "last_7_days": last_7,
            "last_30_days": last_30,
            "last_90_days": last_90,
            "older": total - last_90,
        },
        "recent_items": recent,
    }


# Retention


def _undelivered_reference_clause():
    # Only the user's latest generation can still be delivered; superseded drops pin nothing
    later = aliased(DailyDropORM)
    superseded = exists().where(
        later.user_id == DailyDropORM.user_id,
        later.generation > DailyDropORM.generation,
    )
    return exists().where(
        DailyDropEntryORM.content_id == ContentItemORM.id,
        DailyDropEntryORM.drop_id == DailyDropORM.id,
        DailyDropORM.delivered_at.is_(None),
        ~superseded,
    )


def list_purge_candidates(cutoff: int, limit: int, after_id: int = 0) -> List[int]:
    """Ids (above `after_id`) of items ingested before `cutoff` that no undelivered drop references."""
    with get_session() as session:
        stmt = (
            select(ContentItemORM.id)
            .where(
                ContentItemORM.ingested_at < cutoff,
                ContentItemORM.id > after_id,
                ~_undelivered_reference_clause(),
            )
            .order_by(ContentItemORM.id)
            .limit(limit)
        )
        return list(session.execute(stmt).scalars().all())


def count_referenced_before(cutoff: int) -> int:
    """Count items older than `cutoff` held back by undelivered drops."""
    with get_session() as session:
        stmt = select(func.count(ContentItemORM.id)).where(
            ContentItemORM.ingested_at < cutoff, _undelivered_reference_clause()
        )
        return session.execute(stmt).scalar()


def purge_content_batch(content_ids: Sequence[int], archive: bool = False, now: Optional[int] = None) -> int:
    """Delete (and optionally archive) a batch of content items atomically.

    The batch is re-validated inside the transaction: if any item is
    referenced by an undelivered drop, ConsistencyError is raised and
    nothing is deleted. Drop entries and interactions pointing at the
    purged items are removed in the same transaction so no reference dangles.

    Returns the number of items deleted.
    """
    if not content_ids:
        return 0
    now = _now(now)
    ids = list(content_ids)
    with get_session() as session:
        referenced = session.execute(
            select(ContentItemORM.id).where(ContentItemORM.id.in_(ids), _undelivered_reference_clause())
        ).scalars().all()
        if referenced:
            raise ConsistencyError(f"Content referenced by undelivered drops: {sorted(referenced)}")

        if archive:
            orms = session.execute(select(ContentItemORM).where(ContentItemORM.id.in_(ids))).scalars().all()
            for orm in orms:
                session.merge(ArchivedContentORM(
                    content_id=orm.id,
                    source_id=orm.source_id,
                    url=orm.url,
                    title=orm.title,
                    topics=orm.topics,
                    click_count=orm.click_count,
                    ingested_at=orm.ingested_at,
                    archived_at=now,
                ))

        session.execute(delete(DailyDropEntryORM).where(DailyDropEntryORM.content_id.in_(ids)))
        session.execute(delete(UserInteractionORM).where(UserInteractionORM.content_id.in_(ids)))
        result = session.execute(delete(ContentItemORM).where(ContentItemORM.id.in_(ids)))
        return result.rowcount


def count_archived() -> int:
    with get_session() as session:
        return session.execute(select(func.count(ArchivedContentORM.content_id))).scalar()


# Job history


def get_job_last_run(job_name: str) -> Optional[int]:
    """Get the last run time of a scheduled job."""
    with get_session() as session:
        orm = session.get(JobHistoryORM, job_name)
        if orm is None:
            return None
        return orm.last_run_at


def record_job_run(job_name: str, status: str, detail: Optional[str] = None, now: Optional[int] = None):
    """Record the outcome of a scheduled job run."""
    now = _now(now)
    with get_session() as session:
        orm = session.get(JobHistoryORM, job_name)
        if orm is None:
            orm = JobHistoryORM(job_name=job_name, last_run_at=now, last_status=status, detail=detail)
            session.add(orm)
        else:
            orm.last_run_at = now
            orm.last_status = status
            orm.detail = detail
