#!/usr/bin/env python3
"""
Operator entrypoint for the content pipeline.

Usage:
    python run_pipeline.py init-db
    python run_pipeline.py seed-topics
    python run_pipeline.py ingest [--feed "Hacker News"]
    python run_pipeline.py select-topics --user alice ai-ml design
    python run_pipeline.py recommend --user alice --count 3
    python run_pipeline.py click --user alice --content 42
    python run_pipeline.py stats
    python run_pipeline.py cleanup
    python run_pipeline.py run-scheduler

Settings are read from content_pipeline/data/pipeline.yaml, or the file named
by CONTENT_PIPELINE_CONFIG, or --config.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List

from content_pipeline import database, db_engine
from content_pipeline.classifier import build_gateway
from content_pipeline.config import FeedConfig, PipelineConfig, load_config, load_feed_configs
from content_pipeline.errors import PipelineError
from content_pipeline.ingestion import IngestionCoordinator, seed_topics_with_embeddings
from content_pipeline.recommender import RecommendationEngine
from content_pipeline.retention import RetentionManager
from content_pipeline.scheduler import Job, JobRunner, ReadinessState, Schedule
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def startup(config: PipelineConfig, gateway) -> ReadinessState:
    """Initialise the database and topic vocabulary, reporting what is ready."""
    readiness = ReadinessState()
    db_engine.configure(config.database_url)
    database.init_db()
    readiness.mark_database_ready()

    embedded = seed_topics_with_embeddings(gateway)
    logger.info(f"Topic vocabulary ready ({embedded} topics embedded)")
    readiness.mark_topics_ready()
    return readiness


def build_jobs(
    config: PipelineConfig,
    feeds: List[FeedConfig],
    coordinator: IngestionCoordinator,
    engine: RecommendationEngine,
    retention: RetentionManager,
) -> List[Job]:
    schedule = config.schedule
    return [
        Job("stats", Schedule.every(schedule.stats_interval_hours),
            lambda now: retention.compute_stats(now).as_dict()),
        Job("cleanup", Schedule.daily_at(schedule.cleanup_hour_utc),
            lambda now: retention.run_cleanup(now)),
        Job("ingest", Schedule.every(schedule.ingestion_interval_hours),
            lambda now: {name: result.as_dict() for name, result in coordinator.ingest_sources(feeds).items()}),
        Job("daily_drops", Schedule.daily_at(schedule.drop_hour_utc),
            lambda now: {user: len(drop) for user, drop in engine.generate_all_drops(now=now).items()}),
    ]


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def main():
    parser = argparse.ArgumentParser(description="Content ingestion, recommendation and retention pipeline")
    parser.add_argument("--config", type=Path, help="Path to pipeline.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema")
    subparsers.add_parser("seed-topics", help="Seed and embed the topic vocabulary")

    ingest_parser = subparsers.add_parser("ingest", help="Fetch and ingest configured feeds")
    ingest_parser.add_argument("--feed", help="Only ingest the feed with this name")

    select_parser = subparsers.add_parser("select-topics", help="Replace a user's topic selection")
    select_parser.add_argument("--user", required=True)
    select_parser.add_argument("topics", nargs="+", help="Topic ids, e.g. ai-ml design")

    recommend_parser = subparsers.add_parser("recommend", help="Generate a user's next daily drop")
    recommend_parser.add_argument("--user", required=True)
    recommend_parser.add_argument("--count", type=int)

    click_parser = subparsers.add_parser("click", help="Record a click on a content item")
    click_parser.add_argument("--user", required=True)
    click_parser.add_argument("--content", type=int, required=True)

    subparsers.add_parser("stats", help="Show storage statistics")
    subparsers.add_parser("cleanup", help="Run a retention cleanup pass now")
    subparsers.add_parser("run-scheduler", help="Run due jobs until interrupted")

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    db_engine.configure(config.database_url)
    engine = RecommendationEngine(config.recommendation, config.classifier.embedding_dimensions)
    retention = RetentionManager(config.retention, config.recommendation.history_days)

    try:
        if args.command == "init-db":
            database.init_db()
            print("Database initialised")

        elif args.command == "seed-topics":
            gateway = build_gateway(config.classifier)
            try:
                embedded = seed_topics_with_embeddings(gateway)
            finally:
                gateway.close()
            print(f"Topics seeded, {embedded} embedded")

        elif args.command == "ingest":
            feeds = load_feed_configs()
            if args.feed:
                feeds = [feed for feed in feeds if feed.name == args.feed]
                if not feeds:
                    print(f"Error: no feed named {args.feed}", file=sys.stderr)
                    sys.exit(1)
            gateway = build_gateway(config.classifier)
            try:
                coordinator = IngestionCoordinator(gateway, config.ingestion)
                results = coordinator.ingest_sources(feeds)
            finally:
                gateway.close()
            _print_json({name: result.as_dict() for name, result in results.items()})

        elif args.command == "select-topics":
            database.set_user_topics(args.user, {topic_id: 1.0 for topic_id in args.topics})
            print(f"Topics for {args.user}: {', '.join(sorted(args.topics))}")

        elif args.command == "recommend":
            drop = engine.recommend(args.user, args.count)
            items = [database.get_content_item(content_id) for content_id in drop.content_ids]
            _print_json({
                "user": drop.user_id,
                "generation": drop.generation,
                "items": [
                    {"id": item.id, "title": item.title, "url": item.url, "score": entry.score}
                    for item, entry in zip(items, drop.entries) if item is not None
                ],
            })
            engine.mark_delivered(drop)

        elif args.command == "click":
            engine.record_click(args.user, args.content)
            print(f"Recorded click on {args.content} by {args.user}")

        elif args.command == "stats":
            stats = retention.compute_stats()
            _print_json(dict(stats.as_dict(), ageBuckets=stats.age_buckets,
                             growthRatePerDay=stats.growth_rate_per_day))

        elif args.command == "cleanup":
            _print_json(vars(retention.run_cleanup()))

        elif args.command == "run-scheduler":
            gateway = build_gateway(config.classifier)
            try:
                readiness = startup(config, gateway)
                coordinator = IngestionCoordinator(gateway, config.ingestion)
                jobs = build_jobs(config, load_feed_configs(), coordinator, engine, retention)
                JobRunner(jobs, readiness).run_forever(config.schedule.poll_seconds)
            except KeyboardInterrupt:
                logger.info("Scheduler stopped")
            finally:
                gateway.close()

    except (PipelineError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
