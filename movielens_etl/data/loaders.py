"""Keyed side inputs joined onto movie documents (links, genome, tags, rating stats)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from movielens_etl import config as cfg
from movielens_etl.data.records import coerce_numeric, read_table
from movielens_etl.errors import SourceError
from movielens_etl.models import GenomeTag, Links, RatingAccumulator, RatingStats, RunStats

log = logging.getLogger(__name__)

RATING_COLUMNS = ["userId", "movieId", "rating", "timestamp"]

_WHITESPACE = re.compile(r"\s+")


def load_links(path: Path, stats: RunStats | None = None) -> dict[int, Links]:
    """Load links.csv (movieId, imdbId, tmdbId).

    Missing imdb/tmdb ids are kept as None; duplicate movieIds keep the last row.
    """
    links: dict[int, Links] = {}
    for df in read_table(path, ["movieId", "imdbId", "tmdbId"], source="links", stats=stats):
        df = coerce_numeric(df, int_cols=["movieId"], source="links", stats=stats)
        imdb = pd.to_numeric(df["imdbId"], errors="coerce")
        tmdb = pd.to_numeric(df["tmdbId"], errors="coerce")
        for movie_id, imdb_id, tmdb_id in zip(df["movieId"], imdb, tmdb):
            links[int(movie_id)] = Links(
                movie_id=int(movie_id),
                imdb_id=int(imdb_id) if pd.notna(imdb_id) else None,
                tmdb_id=int(tmdb_id) if pd.notna(tmdb_id) else None,
            )
    return links


def load_genome_tags(path: Path, stats: RunStats | None = None) -> dict[int, str]:
    """Load genome-tags.csv into {tagId: tag}."""
    names: dict[int, str] = {}
    for df in read_table(path, ["tagId", "tag"], source="genome-tags", stats=stats):
        df = coerce_numeric(df, int_cols=["tagId"], source="genome-tags", stats=stats)
        names.update(zip(df["tagId"].tolist(), df["tag"].fillna("").str.strip()))
    return names


def top_genome_tags(scores: pd.DataFrame, min_relevance: float, top_k: int) -> pd.DataFrame:
    """Keep relevance >= min_relevance, then the top_k per movie.

    Ordering is relevance descending with tagId ascending as the tie-break.
    """
    kept = scores[scores["relevance"] >= min_relevance]
    kept = kept.sort_values(
        ["movieId", "relevance", "tagId"],
        ascending=[True, False, True],
        kind="mergesort",
    )
    return kept.groupby("movieId", sort=False).head(top_k)


def load_genome_scores(
    path: Path,
    tag_names: dict[int, str],
    min_relevance: float = cfg.MIN_RELEVANCE,
    top_k: int = cfg.TOP_GENOME_TAGS,
    stats: RunStats | None = None,
    chunksize: int | None = cfg.CHUNK_SIZE,
) -> dict[int, list[GenomeTag]]:
    """Load genome-scores.csv (movieId, tagId, relevance) filtered and truncated per movie.

    Scores whose tagId has no name in `tag_names` are dropped.
    """
    kept = []
    for chunk in read_table(
        path, ["movieId", "tagId", "relevance"], source="genome-scores", stats=stats, chunksize=chunksize
    ):
        chunk = coerce_numeric(
            chunk, int_cols=["movieId", "tagId"], float_cols=["relevance"], source="genome-scores", stats=stats
        )
        chunk = chunk[chunk["relevance"] >= min_relevance]
        chunk = chunk[chunk["tagId"].isin(tag_names.keys())]
        if not chunk.empty:
            kept.append(chunk)

    if not kept or top_k == 0:
        return {}

    top = top_genome_tags(pd.concat(kept, ignore_index=True), min_relevance, top_k)
    result: dict[int, list[GenomeTag]] = {}
    for movie_id, tag_id, relevance in zip(top["movieId"], top["tagId"], top["relevance"]):
        result.setdefault(int(movie_id), []).append(
            GenomeTag(tag_id=int(tag_id), tag=tag_names[int(tag_id)], relevance=float(relevance))
        )
    return result


def normalize_tag(tag: str) -> str:
    return _WHITESPACE.sub(" ", tag.strip()).casefold()


def load_user_tags(
    path: Path,
    top_k: int = cfg.TOP_USER_TAGS,
    stats: RunStats | None = None,
) -> dict[int, list[str]]:
    """Load tags.csv and keep each movie's top_k most frequent tags.

    Tags are counted by their normalized form; frequency ties go to the tag
    seen first, and the first-seen spelling is what gets emitted.
    """
    frames = []
    for df in read_table(path, ["userId", "movieId", "tag", "timestamp"], source="tags", stats=stats):
        df = coerce_numeric(df, int_cols=["movieId"], source="tags", stats=stats)
        frames.append(df[["movieId", "tag"]])

    if not frames or top_k == 0:
        return {}

    tags = pd.concat(frames, ignore_index=True)
    tags["tag"] = tags["tag"].fillna("").astype(str).str.strip()
    tags = tags[tags["tag"] != ""].copy()
    if tags.empty:
        return {}

    tags["norm"] = tags["tag"].map(normalize_tag)
    tags["order"] = range(len(tags))

    counts = (
        tags.groupby(["movieId", "norm"], sort=False)
        .agg(freq=("order", "size"), first_seen=("order", "min"), display=("tag", "first"))
        .reset_index()
        .sort_values(["movieId", "freq", "first_seen"], ascending=[True, False, True], kind="mergesort")
    )
    top = counts.groupby("movieId", sort=False).head(top_k)

    result: dict[int, list[str]] = {}
    for movie_id, display in zip(top["movieId"], top["display"]):
        result.setdefault(int(movie_id), []).append(display)
    return result


def parse_ratings(chunk: pd.DataFrame, stats: RunStats | None = None) -> pd.DataFrame:
    """Validate a raw ratings chunk.

    Every consumer of ratings.csv goes through here so that stats and the
    ratings collection agree on which rows count.
    """
    return coerce_numeric(
        chunk,
        int_cols=["userId", "movieId", "timestamp"],
        float_cols=["rating"],
        source="ratings",
        stats=stats,
    )


def accumulate_ratings(accumulators: dict[int, RatingAccumulator], ratings: pd.DataFrame) -> None:
    """Fold a validated ratings chunk into per-movie accumulators."""
    if ratings.empty:
        return
    grouped = ratings.groupby("movieId").agg(
        count=("rating", "size"),
        total=("rating", "sum"),
        max_ts=("timestamp", "max"),
    )
    for movie_id, count, total, max_ts in zip(grouped.index, grouped["count"], grouped["total"], grouped["max_ts"]):
        acc = accumulators.get(int(movie_id))
        if acc is None:
            acc = accumulators[int(movie_id)] = RatingAccumulator()
        acc.merge(int(count), float(total), int(max_ts))


def load_rating_stats(
    path: Path,
    stats: RunStats | None = None,
    chunksize: int | None = cfg.CHUNK_SIZE,
) -> dict[int, RatingStats]:
    """Single streaming pass over ratings.csv producing count/mean/last-rated per movie."""
    accumulators: dict[int, RatingAccumulator] = {}
    for chunk in read_table(path, RATING_COLUMNS, source="ratings", stats=stats, chunksize=chunksize):
        accumulate_ratings(accumulators, parse_ratings(chunk, stats))
    return {movie_id: acc.stats() for movie_id, acc in accumulators.items()}


@dataclass
class SideInputs:
    """Everything joined onto a movie by movieId. Each field may be empty."""

    links: dict[int, Links] = field(default_factory=dict)
    genome_tags: dict[int, list[GenomeTag]] = field(default_factory=dict)
    user_tags: dict[int, list[str]] = field(default_factory=dict)
    rating_stats: dict[int, RatingStats] = field(default_factory=dict)


def _optional(name: str, loader, *args, stats: RunStats | None = None, **kwargs) -> dict:
    try:
        return loader(*args, stats=stats, **kwargs)
    except SourceError as e:
        log.warning("Could not load %s, field will be absent: %s", name, e)
        if stats is not None:
            stats.degraded_sources.append(name)
        return {}


def load_side_inputs(
    config: cfg.EtlConfig,
    stats: RunStats | None = None,
    rating_stats: dict[int, RatingStats] | None = None,
) -> SideInputs:
    """Load every side input, degrading each missing or broken one to empty.

    Pass `rating_stats` when the ratings pass already produced them; otherwise
    ratings.csv is streamed here.
    """
    links = _optional(cfg.LINKS_FILE, load_links, config.input_path(cfg.LINKS_FILE), stats=stats)
    log.info("Loaded links for %d movies", len(links))

    tag_names = _optional(cfg.GENOME_TAGS_FILE, load_genome_tags, config.input_path(cfg.GENOME_TAGS_FILE), stats=stats)
    log.info("Loaded %d genome tag names", len(tag_names))

    genome = {}
    if tag_names:
        genome = _optional(
            cfg.GENOME_SCORES_FILE,
            load_genome_scores,
            config.input_path(cfg.GENOME_SCORES_FILE),
            tag_names,
            config.min_relevance,
            config.top_genome_tags,
            stats=stats,
            chunksize=config.chunk_size,
        )
    log.info("Loaded genome tags for %d movies (relevance >= %.2f)", len(genome), config.min_relevance)

    user_tags = _optional(
        cfg.TAGS_FILE, load_user_tags, config.input_path(cfg.TAGS_FILE), config.top_user_tags, stats=stats
    )
    log.info("Loaded user tags for %d movies", len(user_tags))

    if rating_stats is None:
        rating_stats = _optional(
            cfg.RATINGS_FILE,
            load_rating_stats,
            config.input_path(cfg.RATINGS_FILE),
            stats=stats,
            chunksize=config.chunk_size,
        )
    log.info("Computed rating stats for %d movies", len(rating_stats))

    return SideInputs(links=links, genome_tags=genome, user_tags=user_tags, rating_stats=rating_stats)
