"""
SQLAlchemy ORM models for the content pipeline.

These models are internal to the database layer. The public interface
uses the dataclass models from models.py.
"""

import json
from typing import List, Optional

import numpy as np
from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from content_pipeline.models import (
    ClassificationMethod,
    ContentItem,
    DailyDrop,
    DropEntry,
    Interaction,
    InteractionKind,
    Topic,
)


class JSONEncodedList(TypeDecorator):
    """Represents a list as a JSON-encoded string."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[List], dialect) -> Optional[str]:
        if value is None or value == []:
            return None
        return json.dumps(value)

    def process_result_value(self, value: Optional[str], dialect) -> List:
        if value is None:
            return []
        return json.loads(value)


class JSONEncodedDict(TypeDecorator):
    """Represents a dict as a JSON-encoded string."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[dict], dialect) -> Optional[str]:
        if value is None or value == {}:
            return None
        return json.dumps(value)

    def process_result_value(self, value: Optional[str], dialect) -> dict:
        if value is None:
            return {}
        return json.loads(value)


class EmbeddingVector(TypeDecorator):
    """Stores a numpy vector as raw float32 bytes."""

    impl = LargeBinary
    cache_ok = True

    def process_bind_param(self, value, dialect) -> Optional[bytes]:
        if value is None:
            return None
        return np.asarray(value, dtype=np.float32).tobytes()

    def process_result_value(self, value: Optional[bytes], dialect) -> Optional[np.ndarray]:
        if value is None:
            return None
        # frombuffer returns a read-only view, copy so callers can modify it
        return np.frombuffer(value, dtype=np.float32).copy()


class Base(DeclarativeBase):
    pass


class TopicORM(Base):
    """SQLAlchemy model for topics table."""

    __tablename__ = "topics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[Optional[np.ndarray]] = mapped_column(EmbeddingVector, nullable=True)
    icon: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    color: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vocabulary_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class ContentItemORM(Base):
    """SQLAlchemy model for content_items table."""

    __tablename__ = "content_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    dedup_key: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    excerpt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    topics: Mapped[List[str]] = mapped_column(JSONEncodedList, nullable=True)
    embedding: Mapped[Optional[np.ndarray]] = mapped_column(EmbeddingVector, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    classification_method: Mapped[str] = mapped_column(Text, nullable=False)
    ingested_at: Mapped[int] = mapped_column(Integer, nullable=False)
    published_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # 'metadata' is reserved in SQLAlchemy, so we use 'metadata_' as the Python attribute
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSONEncodedDict, nullable=True
    )

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_content_dedup_key"),
        Index("idx_content_items_ingested_at", "ingested_at"),
        Index("idx_content_items_published_at", "published_at"),
    )


class UserORM(Base):
    """SQLAlchemy model for users table."""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    is_onboarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)


class UserTopicPreferenceORM(Base):
    """SQLAlchemy model for user_topic_preferences table."""

    __tablename__ = "user_topic_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    topic_id: Mapped[str] = mapped_column(ForeignKey("topics.id"), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "topic_id", name="uq_user_topic"),
    )


class UserInteractionORM(Base):
    """SQLAlchemy model for user_interactions table."""

    __tablename__ = "user_interactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    content_id: Mapped[int] = mapped_column(ForeignKey("content_items.id"), nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_user_interactions_user_time", "user_id", "occurred_at"),
        Index("idx_user_interactions_content", "content_id"),
    )


class DailyDropORM(Base):
    """SQLAlchemy model for daily_drops table."""

    __tablename__ = "daily_drops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    generated_at: Mapped[int] = mapped_column(Integer, nullable=False)
    delivered_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "generation", name="uq_user_generation"),
    )


class DailyDropEntryORM(Base):
    """SQLAlchemy model for daily_drop_entries table."""

    __tablename__ = "daily_drop_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    drop_id: Mapped[int] = mapped_column(ForeignKey("daily_drops.id"), nullable=False)
    content_id: Mapped[int] = mapped_column(ForeignKey("content_items.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("drop_id", "content_id", name="uq_drop_content"),
        Index("idx_daily_drop_entries_content", "content_id"),
    )


class ArchivedContentORM(Base):
    """SQLAlchemy model for archived_content table."""

    __tablename__ = "archived_content"

    content_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    topics: Mapped[List[str]] = mapped_column(JSONEncodedList, nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingested_at: Mapped[int] = mapped_column(Integer, nullable=False)
    archived_at: Mapped[int] = mapped_column(Integer, nullable=False)


class JobHistoryORM(Base):
    """SQLAlchemy model for job_history table."""

    __tablename__ = "job_history"

    job_name: Mapped[str] = mapped_column(Text, primary_key=True)
    last_run_at: Mapped[int] = mapped_column(Integer, nullable=False)
    last_status: Mapped[str] = mapped_column(Text, nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# Conversion functions between ORM models and dataclasses


def topic_orm_to_dataclass(orm: TopicORM) -> Topic:
    """Convert a TopicORM instance to a Topic dataclass."""
    return Topic(
        id=orm.id,
        display_name=orm.display_name,
        description=orm.description,
        embedding=orm.embedding,
        icon=orm.icon,
        color=orm.color,
        vocabulary_version=orm.vocabulary_version,
    )


def content_orm_to_dataclass(orm: ContentItemORM) -> ContentItem:
    """Convert a ContentItemORM instance to a ContentItem dataclass."""
    return ContentItem(
        id=orm.id,
        source_id=orm.source_id,
        dedup_key=orm.dedup_key,
        url=orm.url,
        external_id=orm.external_id,
        title=orm.title,
        body=orm.body,
        excerpt=orm.excerpt,
        topics=orm.topics or [],
        embedding=orm.embedding,
        confidence=orm.confidence,
        classification_method=ClassificationMethod(orm.classification_method),
        ingested_at=orm.ingested_at,
        published_at=orm.published_at,
        click_count=orm.click_count,
        metadata=orm.metadata_ or {},
    )


def content_dataclass_to_orm(item: ContentItem) -> ContentItemORM:
    """Convert a ContentItem dataclass to a ContentItemORM instance."""
    return ContentItemORM(
        source_id=item.source_id,
        dedup_key=item.dedup_key,
        url=item.url,
        external_id=item.external_id,
        title=item.title,
        body=item.body,
        excerpt=item.excerpt,
        topics=item.topics if item.topics else None,
        embedding=item.embedding,
        confidence=item.confidence,
        classification_method=item.classification_method.value,
        ingested_at=item.ingested_at,
        published_at=item.published_at,
        click_count=item.click_count,
        metadata_=item.metadata if item.metadata else None,
    )


def interaction_orm_to_dataclass(orm: UserInteractionORM) -> Interaction:
    """Convert a UserInteractionORM instance to an Interaction dataclass."""
    return Interaction(
        user_id=orm.user_id,
        content_id=orm.content_id,
        kind=InteractionKind(orm.kind),
        occurred_at=orm.occurred_at,
    )


def drop_orm_to_dataclass(orm: DailyDropORM, entries: List[DailyDropEntryORM]) -> DailyDrop:
    """Convert a DailyDropORM and its entries to a DailyDrop dataclass."""
    return DailyDrop(
        id=orm.id,
        user_id=orm.user_id,
        generation=orm.generation,
        generated_at=orm.generated_at,
        delivered_at=orm.delivered_at,
        entries=[
            DropEntry(content_id=entry.content_id, score=entry.score, position=entry.position)
            for entry in sorted(entries, key=lambda e: e.position)
        ],
    )
