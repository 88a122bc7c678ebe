"""
Personalised daily drop selection.

Candidates are scored on three signals, each increasing the score:
similarity to the user's topic centroid, a direct topic match, and freshness.
The scoring and ranking functions are pure; RecommendationEngine wires them
to storage.
"""

import logging
import time
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from content_pipeline.config import RecommendationConfig
from content_pipeline.constants import EMBEDDING_DIMENSIONS, SECONDS_PER_DAY
from content_pipeline.database import (
    get_all_topics,
    get_drop,
    get_latest_drop,
    get_onboarded_user_ids,
    get_user_preference,
    list_content_since,
    mark_drop_delivered,
    record_click,
    save_daily_drop,
)
from content_pipeline.errors import DropGenerationConflictError, PipelineError, UserNotFoundError
from content_pipeline.models import ClassificationMethod, ContentItem, DailyDrop, DropEntry, Topic
from util.logging_util import setup_logger

logger = setup_logger(__name__)

# Similarity used for every candidate when no centroid can be built
NEUTRAL_SIMILARITY = 0.5


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def build_user_centroid(
    topic_weights: Mapping[str, float],
    topics: Mapping[str, Topic],
    dimensions: int = EMBEDDING_DIMENSIONS,
) -> Optional[np.ndarray]:
    """Preference-weighted mean of the selected topics' embeddings.

    Topics without an embedding of the expected dimensionality are skipped.
    Returns None when no selected topic has a usable embedding.
    """
    vectors = []
    weights = []
    for topic_id, weight in topic_weights.items():
        topic = topics.get(topic_id)
        if topic is None or topic.embedding is None or topic.embedding.shape != (dimensions,):
            continue
        if weight <= 0:
            continue
        vectors.append(topic.embedding)
        weights.append(weight)

    if not vectors:
        return None
    return np.average(np.stack(vectors), axis=0, weights=weights).astype(np.float32)


def freshness_score(timestamp: int, now: int, half_life_hours: float) -> float:
    """Exponential decay: 1.0 at `now`, 0.5 after one half-life."""
    age_hours = max(0, now - timestamp) / 3600.0
    return 0.5 ** (age_hours / half_life_hours)


def topic_match_score(item_topics: Sequence[str], topic_weights: Mapping[str, float]) -> float:
    """Highest preference weight among the item's topics, 0.0 with no match."""
    matched = [topic_weights[topic_id] for topic_id in item_topics if topic_id in topic_weights]
    if not matched:
        return 0.0
    return min(1.0, max(0.0, max(matched)))


def score_candidate(
    item: ContentItem,
    centroid: Optional[np.ndarray],
    topic_weights: Mapping[str, float],
    now: int,
    config: RecommendationConfig,
) -> float:
    """Composite score of one candidate for one user."""
    if centroid is None or item.embedding is None or item.embedding.shape != centroid.shape:
        similarity = NEUTRAL_SIMILARITY
    else:
        similarity = (cosine_similarity(item.embedding, centroid) + 1.0) / 2.0

    # Heuristic classifications only count as far as their confidence goes
    if item.classification_method is ClassificationMethod.FALLBACK:
        similarity *= item.confidence

    return (
        config.similarity_weight * similarity
        + config.topic_match_weight * topic_match_score(item.topics, topic_weights)
        + config.freshness_weight * freshness_score(item.effective_timestamp, now, config.freshness_half_life_hours)
    )


def rank_candidates(
    candidates: Sequence[ContentItem],
    centroid: Optional[np.ndarray],
    topic_weights: Mapping[str, float],
    now: int,
    config: RecommendationConfig,
    count: int,
) -> List[Tuple[ContentItem, float]]:
    """
    Top `count` candidates by descending score.

    Ties are broken by the more recent timestamp, then by lower content id.
    Candidates sharing an id are only considered once.
    """
    if count <= 0:
        return []

    unique: Dict[int, ContentItem] = {}
    for item in candidates:
        unique.setdefault(item.id, item)

    scored = [
        (item, score_candidate(item, centroid, topic_weights, now, config))
        for item in unique.values()
    ]
    scored.sort(key=lambda pair: (-pair[1], -pair[0].effective_timestamp, pair[0].id))
    return scored[:count]


class RecommendationEngine:
    """Generates and persists daily drops."""

    def __init__(
        self,
        config: Optional[RecommendationConfig] = None,
        embedding_dimensions: int = EMBEDDING_DIMENSIONS,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RecommendationConfig()
        self.embedding_dimensions = embedding_dimensions
        self.logger = logger or logging.getLogger(__name__)

    def recommend(self, user_id: str, count: Optional[int] = None, now: Optional[int] = None) -> DailyDrop:
        """
        Build, persist and return the next daily drop for a user.

        Candidates are items ingested since the user's last drop, bounded by
        the lookback window. Items the user interacted with during the
        cool-down window are excluded. An empty drop is returned, and not
        persisted, when the user has no topics or nothing is eligible.

        If a concurrent request committed the same generation first, the
        committed drop is returned instead.

        Raises:
            UserNotFoundError: The user has no preference record.
        """
        count = self.config.default_drop_size if count is None else count
        now = int(time.time()) if now is None else now
        day = SECONDS_PER_DAY

        history_days = max(self.config.history_days, self.config.cooldown_days)
        preference = get_user_preference(user_id, history_since=now - history_days * day)
        if preference is None:
            raise UserNotFoundError(f"No preferences for user {user_id}")

        latest = get_latest_drop(user_id)
        generation = latest.generation + 1 if latest else 1
        empty_drop = DailyDrop(user_id=user_id, entries=[], generated_at=now, generation=generation)

        if not preference.topic_weights:
            self.logger.info(f"User {user_id} has no topics selected")
            return empty_drop

        lookback_start = now - self.config.lookback_days * day
        since = max(latest.generated_at, lookback_start) if latest else lookback_start
        cooldown_start = now - self.config.cooldown_days * day
        excluded = {
            interaction.content_id
            for interaction in preference.history
            if interaction.occurred_at >= cooldown_start
        }

        candidates = list_content_since(since, exclude_ids=excluded)
        topics = {topic.id: topic for topic in get_all_topics()}
        centroid = build_user_centroid(preference.topic_weights, topics, self.embedding_dimensions)
        ranked = rank_candidates(candidates, centroid, preference.topic_weights, now, self.config, count)

        if not ranked:
            self.logger.info(f"No eligible content for user {user_id}")
            return empty_drop

        drop = DailyDrop(
            user_id=user_id,
            entries=[
                DropEntry(content_id=item.id, score=round(score, 6), position=position)
                for position, (item, score) in enumerate(ranked)
            ],
            generated_at=now,
            generation=generation,
        )

        try:
            drop = save_daily_drop(drop)
        except DropGenerationConflictError:
            self.logger.info(f"Drop generation {generation} for {user_id} already committed, returning it")
            return get_drop(user_id, generation)

        self.logger.info(f"Generated drop {generation} for {user_id} with {len(drop)} items")
        return drop

    def generate_all_drops(self, count: Optional[int] = None, now: Optional[int] = None) -> Dict[str, DailyDrop]:
        """Generate drops for every onboarded user. One user's failure does not stop the rest."""
        drops = {}
        for user_id in get_onboarded_user_ids():
            try:
                drops[user_id] = self.recommend(user_id, count, now)
            except (PipelineError, SQLAlchemyError) as e:
                self.logger.error(f"Failed to generate drop for {user_id}: {e}")
        return drops

    def mark_delivered(self, drop: DailyDrop, now: Optional[int] = None) -> bool:
        """Mark a persisted drop as delivered to its user."""
        if drop.id is None:
            return False
        return mark_drop_delivered(drop.id, now)

    def record_click(self, user_id: str, content_id: int, now: Optional[int] = None):
        """Count a click on an item and add it to the user's interaction history."""
        record_click(user_id, content_id, now)
