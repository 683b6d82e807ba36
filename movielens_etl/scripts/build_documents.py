"""Build the movies, ratings, users and similarities NDJSON collections."""

import logging
import sys
import time
from pathlib import Path

from movielens_etl import config as cfg
from movielens_etl.config import EtlConfig, IdentityMode
from movielens_etl.data.assemble import MovieAssembler
from movielens_etl.data.loaders import load_side_inputs
from movielens_etl.data.records import check_readable
from movielens_etl.data.ratings import process_ratings
from movielens_etl.data.similarities import process_similarities
from movielens_etl.data.tmdb import TMDBClient
from movielens_etl.errors import ConfigError, SourceError
from movielens_etl.mappers.identity import load_or_empty, persist_if_changed
from movielens_etl.models import RunStats

RECOMMENDED_INDEXES = [
    "db.movies.createIndex({ movieId: 1 })",
    "db.movies.createIndex({ iIdx: 1 })",
    'db.movies.createIndex({ title: "text" })',
    "db.ratings.createIndex({ userId: 1, movieId: 1 })",
    "db.users.createIndex({ userId: 1 }, { unique: true })",
    "db.users.createIndex({ email: 1 }, { unique: true })",
    "db.similarities.createIndex({ iIdx: 1 })",
]


def _discard(config: EtlConfig, *names: str) -> None:
    """Remove outputs left by an earlier run for a collection this run skips."""
    for name in names:
        config.output_path(name).unlink(missing_ok=True)


def run(config: EtlConfig) -> RunStats:
    """Run every stage. Only an unreadable movies.csv raises (SourceError).

    movies.csv is checked before anything is read or written, so a missing
    primary source leaves the output directory untouched.
    """
    check_readable(config.input_path(cfg.MOVIES_FILE))

    stats = RunStats()
    Path(config.out_dir).mkdir(parents=True, exist_ok=True)

    item_map_path = config.input_path(cfg.ITEM_MAP_FILE)
    user_map_path = config.input_path(cfg.USER_MAP_FILE)
    item_mapper = load_or_empty(item_map_path, "movieId", "iIdx", stats=stats)
    user_mapper = load_or_empty(user_map_path, "userId", "uIdx", stats=stats)
    print(f"  Item map: {item_mapper.count()} movies, user map: {user_mapper.count()} users")

    print("\nProcessing ratings and users...")
    try:
        ratings_pass = process_ratings(
            config.input_path(cfg.RATINGS_FILE),
            config.output_path(cfg.RATINGS_OUT),
            config.output_path(cfg.USERS_OUT),
            user_mapper=user_mapper,
            identity_mode=config.identity_mode,
            stats=stats,
            chunksize=config.chunk_size,
            passwords_out=config.output_path(cfg.PASSWORDS_LOG_OUT),
            hash_passwords=config.hash_passwords,
            bcrypt_rounds=config.bcrypt_rounds,
        )
        rating_stats = ratings_pass.rating_stats
        print(f"  Ratings: {stats.ratings:,}  Users: {stats.users:,}")
    except SourceError as e:
        logging.getLogger(__name__).warning("Ratings unavailable, skipping ratings/users: %s", e)
        stats.degraded_sources.append(cfg.RATINGS_FILE)
        _discard(config, cfg.RATINGS_OUT, cfg.USERS_OUT, cfg.PASSWORDS_LOG_OUT)
        rating_stats = {}

    print("\nLoading side inputs...")
    side = load_side_inputs(config, stats, rating_stats=rating_stats)

    enricher = TMDBClient.from_config(config) if config.fetch_external else None
    if enricher is not None:
        print(f"\nProcessing movies with TMDB enrichment ({config.tmdb_rate_limit:g} req/s)...")
    else:
        print("\nProcessing movies...")
    try:
        assembler = MovieAssembler(
            side=side,
            item_mapper=item_mapper,
            identity_mode=config.identity_mode,
            enricher=enricher,
            stats=stats,
            workers=config.enrichment_workers,
        )
        assembler.run(config.input_path(cfg.MOVIES_FILE), config.output_path(cfg.MOVIES_OUT), config.chunk_size)
    finally:
        if enricher is not None:
            enricher.close()
    print(f"  Movies: {stats.movies:,}")

    print("\nRemapping similarities...")
    similarity_mode = config.identity_mode if config.identity_mode is IdentityMode.CREATE else IdentityMode.LOOKUP
    try:
        process_similarities(
            config.input_path(cfg.SIMILARITIES_FILE),
            config.output_path(cfg.SIMILARITIES_OUT),
            item_mapper,
            identity_mode=similarity_mode,
            metric=config.similarity_metric,
            k=config.similarity_k,
            stats=stats,
        )
        print(f"  Similarities: {stats.similarities:,}")
    except SourceError as e:
        logging.getLogger(__name__).warning("Similarities unavailable, skipping: %s", e)
        stats.degraded_sources.append(cfg.SIMILARITIES_FILE)
        _discard(config, cfg.SIMILARITIES_OUT)

    if persist_if_changed(item_mapper, item_map_path, config.update_mappings):
        stats.mappings_saved.append(cfg.ITEM_MAP_FILE)
    if persist_if_changed(user_mapper, user_map_path, config.update_mappings):
        stats.mappings_saved.append(cfg.USER_MAP_FILE)

    return stats


def print_summary(stats: RunStats, elapsed: float) -> None:
    print("\n=== Summary ===")
    print(f"  Movies:        {stats.movies:>10,}")
    print(f"  Ratings:       {stats.ratings:>10,}")
    print(f"  Users:         {stats.users:>10,}")
    print(f"  Similarities:  {stats.similarities:>10,}")
    print(f"  Total:         {stats.total_documents:>10,}")
    for source, n in sorted(stats.skipped_rows.items()):
        print(f"  Skipped rows in {source}: {n:,}")
    if stats.dropped_neighbors:
        print(f"  Dropped unmapped neighbors: {stats.dropped_neighbors:,}")
    if stats.degraded_sources:
        print(f"  Missing/unreadable sources: {', '.join(stats.degraded_sources)}")
    if stats.new_mappings:
        print(f"  New mappings started: {', '.join(stats.new_mappings)}")
    if stats.users:
        if stats.passwords_hashed:
            print("  Passwords: hashed with bcrypt")
        else:
            print("  Passwords: NOT hashed (development mode, do not use in production)")
    if stats.enrichment_fetched or stats.enrichment_not_found or stats.enrichment_failed:
        print(f"  TMDB: {stats.enrichment_fetched} fetched, "
              f"{stats.enrichment_not_found} not found, {stats.enrichment_failed} failed")
    for name in stats.mappings_saved:
        print(f"  Updated {name}")
    print("\nRecommended indexes:")
    for line in RECOMMENDED_INDEXES:
        print(f"  {line}")
    print(f"\nDone in {elapsed:.1f}s")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    start = time.monotonic()

    try:
        config = EtlConfig.from_env()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"=== MovieLens document ETL ({config.data_dir}) ===")
    try:
        stats = run(config)
    except SourceError as e:
        print(f"Error: could not read movies: {e}", file=sys.stderr)
        sys.exit(1)

    print_summary(stats, time.monotonic() - start)


if __name__ == "__main__":
    main()
