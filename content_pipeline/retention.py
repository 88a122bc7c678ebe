"""
Storage statistics and adaptive retention cleanup.

The retention horizon shrinks as storage pressure grows, where pressure is
the larger of the current item count and the projected growth over the base
horizon, relative to the high-water mark.
"""

import logging
import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from content_pipeline.config import RetentionConfig
from content_pipeline.constants import SECONDS_PER_DAY
from content_pipeline.database import (
    count_referenced_before,
    get_content_statistics,
    list_purge_candidates,
    prune_interactions,
    purge_content_batch,
)
from content_pipeline.errors import ConsistencyError, PipelineError, StorageError
from content_pipeline.models import CleanupResult, RecommendedAction, StorageStats
from util.logging_util import log_pipeline_run, setup_logger

logger = setup_logger(__name__)


def recommended_action_for(total_items: int, config: RetentionConfig) -> RecommendedAction:
    if total_items > config.high_water_mark:
        return RecommendedAction.URGENT
    if total_items >= config.low_water_mark:
        return RecommendedAction.ADVISORY
    return RecommendedAction.NONE


def compute_retention_horizon(stats: StorageStats, config: RetentionConfig) -> float:
    """
    Retention horizon in days for the given storage stats.

    Equal to the base horizon while storage is under the high-water mark and
    shrinks in proportion to the pressure above it, never below the minimum.
    """
    projected = stats.growth_rate_per_day * config.base_retention_days
    pressure = max(stats.total_items, projected) / config.high_water_mark
    horizon = config.base_retention_days / max(1.0, pressure)
    return min(config.base_retention_days, max(config.min_retention_days, horizon))


class RetentionManager:
    """Computes storage stats and purges (or archives) content past the retention horizon."""

    def __init__(
        self,
        config: Optional[RetentionConfig] = None,
        interaction_history_days: int = 90,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RetentionConfig()
        self.interaction_history_days = interaction_history_days
        self.logger = logger or logging.getLogger(__name__)

    def compute_stats(self, now: Optional[int] = None) -> StorageStats:
        """Sample the content store: counts, size, age distribution and growth rate."""
        now = int(time.time()) if now is None else now
        raw = get_content_statistics(now, self.config.growth_window_days)

        stats = StorageStats(
            total_items=raw["total_items"],
            approx_size_bytes=raw["approx_size_bytes"],
            oldest_ingested_at=raw["oldest_ingested_at"],
            newest_ingested_at=raw["newest_ingested_at"],
            age_buckets=raw["age_buckets"],
            growth_rate_per_day=raw["recent_items"] / self.config.growth_window_days,
            recommended_action=recommended_action_for(raw["total_items"], self.config),
            computed_at=now,
        )

        if stats.recommended_action is RecommendedAction.URGENT:
            self.logger.warning(
                f"Content store above high-water mark: {stats.total_items} items "
                f"(high-water {self.config.high_water_mark})"
            )
        else:
            self.logger.info(
                f"Content store: {stats.total_items} items, ~{stats.approx_size_bytes} bytes, "
                f"{stats.growth_rate_per_day:.1f} items/day, action={stats.recommended_action.value}"
            )
        return stats

    def run_cleanup(self, now: Optional[int] = None) -> CleanupResult:
        """
        Purge or archive content older than the adaptive retention horizon.

        Each batch is validated and committed on its own, so a failed batch
        never leaves dangling references and earlier batches stay purged.
        Content referenced by undelivered drops is never purged. If stats
        cannot be computed, the base horizon is used.

        Raises:
            StorageError: A batch failed for a reason other than a consistency
                violation. Batches committed before it remain purged.
        """
        start_time = time.time()
        now = int(time.time()) if now is None else now

        try:
            horizon_days = compute_retention_horizon(self.compute_stats(now), self.config)
        except (PipelineError, SQLAlchemyError) as e:
            self.logger.warning(f"Could not compute storage stats, using base horizon: {e}")
            horizon_days = self.config.base_retention_days

        cutoff = now - int(horizon_days * SECONDS_PER_DAY)
        result = CleanupResult(horizon_days=horizon_days)
        result.retained_referenced = count_referenced_before(cutoff)

        after_id = 0
        while True:
            batch = list_purge_candidates(cutoff, self.config.batch_size, after_id)
            if not batch:
                break
            after_id = batch[-1]
            try:
                purged = purge_content_batch(batch, archive=self.config.archive, now=now)
            except ConsistencyError as e:
                self.logger.warning(f"Skipping batch ending at id {after_id}: {e}")
                result.failed_batches += 1
                continue
            except SQLAlchemyError as e:
                raise StorageError(f"Cleanup batch ending at id {after_id} failed: {e}") from e

            result.purged += purged
            if self.config.archive:
                result.archived += purged

        result.interactions_pruned = prune_interactions(now - self.interaction_history_days * SECONDS_PER_DAY)

        log_pipeline_run(
            self.logger,
            "Cleanup",
            {
                "purged": result.purged,
                "archived": result.archived,
                "retained_referenced": result.retained_referenced,
                "failed_batches": result.failed_batches,
                "interactions_pruned": result.interactions_pruned,
            },
            (time.time() - start_time) * 1000,
        )
        return result
