"""
Data models for the content pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np


class ClassificationMethod(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class RecommendedAction(Enum):
    NONE = "none"
    ADVISORY = "advisory"
    URGENT = "urgent"


class InteractionKind(Enum):
    DELIVERED = "delivered"
    CLICK = "click"


@dataclass
class Topic:
    """A category in the closed topic vocabulary."""
    id: str
    display_name: str
    description: str = ""
    embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    icon: Optional[str] = None
    color: Optional[str] = None
    vocabulary_version: int = 1


@dataclass
class RawItem:
    """One item as supplied by a source, before normalization."""
    title: str
    body: str = ""
    url: Optional[str] = None
    external_id: Optional[str] = None
    published_at: Optional[int] = None
    author: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ClassificationResult:
    """Topic assignment and embedding for one piece of canonical text."""
    topics: List[str]
    embedding: np.ndarray = field(compare=False, repr=False)
    confidence: float
    method: ClassificationMethod


@dataclass
class ContentItem:
    """One normalized, classified, embedded unit of ingested content."""
    source_id: str
    dedup_key: str
    url: str
    title: str
    body: str
    excerpt: str
    topics: List[str]
    embedding: Optional[np.ndarray] = field(compare=False, repr=False)
    confidence: float
    classification_method: ClassificationMethod
    ingested_at: int
    published_at: Optional[int] = None
    id: Optional[int] = None
    external_id: Optional[str] = None
    click_count: int = 0
    metadata: dict = field(default_factory=dict)

    @property
    def effective_timestamp(self) -> int:
        """Publish time when known, otherwise ingestion time."""
        return self.published_at if self.published_at is not None else self.ingested_at


@dataclass
class Interaction:
    """A content item delivered to or clicked by a user."""
    user_id: str
    content_id: int
    kind: InteractionKind
    occurred_at: int


@dataclass
class UserPreference:
    """A user's selected topics (with weights) and recent interactions."""
    user_id: str
    topic_weights: Dict[str, float] = field(default_factory=dict)
    history: List[Interaction] = field(default_factory=list)
    is_onboarded: bool = False

    @property
    def topic_ids(self) -> List[str]:
        return sorted(self.topic_weights)


@dataclass
class DropEntry:
    content_id: int
    score: float
    position: int


@dataclass
class DailyDrop:
    """The ranked recommendation batch produced for a user in one cycle."""
    user_id: str
    entries: List[DropEntry]
    generated_at: int
    generation: int = 0
    id: Optional[int] = None
    delivered_at: Optional[int] = None

    @property
    def content_ids(self) -> List[int]:
        return [entry.content_id for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class StorageStats:
    """Snapshot of the content store used to drive retention."""
    total_items: int
    approx_size_bytes: int
    oldest_ingested_at: Optional[int]
    newest_ingested_at: Optional[int]
    age_buckets: Dict[str, int]
    growth_rate_per_day: float
    recommended_action: RecommendedAction
    computed_at: int = 0

    def as_dict(self) -> dict:
        """Shape surfaced to operational dashboards."""
        return {
            "totalItems": self.total_items,
            "approxSize": self.approx_size_bytes,
            "recommendedAction": self.recommended_action.value,
        }


@dataclass
class IngestionResult:
    """Per-batch ingestion outcome counts."""
    accepted: int = 0
    duplicate: int = 0
    failed: int = 0
    fallback: int = 0
    rejected: int = 0

    def merge(self, other: "IngestionResult") -> "IngestionResult":
        return IngestionResult(
            accepted=self.accepted + other.accepted,
            duplicate=self.duplicate + other.duplicate,
            failed=self.failed + other.failed,
            fallback=self.fallback + other.fallback,
            rejected=self.rejected + other.rejected,
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "failed": self.failed,
            "fallback": self.fallback,
            "rejected": self.rejected,
        }


@dataclass
class CleanupResult:
    purged: int = 0
    archived: int = 0
    retained_referenced: int = 0
    failed_batches: int = 0
    horizon_days: float = 0.0
    interactions_pruned: int = 0
