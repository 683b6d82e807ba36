"""Rewrite precomputed item-item neighbor lists in terms of mapped item indices."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import pandas as pd

from movielens_etl.config import SIMILARITY_K, SIMILARITY_METRIC, IdentityMode
from movielens_etl.data.records import NdjsonWriter, coerce_numeric, read_table
from movielens_etl.mappers.identity import IdentityMapper
from movielens_etl.models import Neighbor, RunStats, SimilarityDoc, iso_now

log = logging.getLogger(__name__)

SIMILARITY_COLUMNS = ["movieId", "neighborId", "sim", "rank"]


def load_similarities(path: Path, stats: RunStats | None = None) -> dict[int, list[tuple[int, float]]]:
    """Load neighbor lists as {movieId: [(neighborId, sim), ...]}.

    Subjects keep first-appearance order. Neighbors keep file order unless a
    numeric `rank` column is present for every row, in which case they are
    ordered by rank.
    """
    frames = []
    for df in read_table(path, SIMILARITY_COLUMNS, source="similarities", stats=stats):
        frames.append(
            coerce_numeric(df, int_cols=["movieId", "neighborId"], float_cols=["sim"], source="similarities", stats=stats)
        )
    if not frames:
        return {}

    sims = pd.concat(frames, ignore_index=True)
    rank = pd.to_numeric(sims["rank"], errors="coerce")
    if len(sims) and rank.notna().all():
        first_seen = {m: i for i, m in enumerate(pd.unique(sims["movieId"]))}
        sims = sims.assign(rank=rank, subject=sims["movieId"].map(first_seen))
        sims = sims.sort_values(["subject", "rank"], kind="mergesort")

    neighbors: dict[int, list[tuple[int, float]]] = {}
    for movie_id, neighbor_id, sim in zip(sims["movieId"], sims["neighborId"], sims["sim"]):
        neighbors.setdefault(int(movie_id), []).append((int(neighbor_id), float(sim)))
    return neighbors


def remap_similarities(
    neighbors_by_movie: dict[int, list[tuple[int, float]]],
    item_mapper: IdentityMapper,
    identity_mode: IdentityMode = IdentityMode.LOOKUP,
    metric: str = SIMILARITY_METRIC,
    k: int = SIMILARITY_K,
    stats: RunStats | None = None,
    clock: Callable[[], str] = iso_now,
) -> Iterator[SimilarityDoc]:
    """Yield one SimilarityDoc per subject movie.

    Each list is cut to its first k entries, then neighbors without an index
    are dropped; the survivors keep their relative order. Outside create mode
    a subject without an index produces no document.
    """
    create = identity_mode is IdentityMode.CREATE

    def _index(natural_id: int) -> int | None:
        return item_mapper.get_or_create(natural_id) if create else item_mapper.get(natural_id)

    for movie_id, pairs in neighbors_by_movie.items():
        i_idx = _index(movie_id)
        if i_idx is None:
            if stats is not None:
                stats.skip("similarities")
            continue

        kept = []
        for neighbor_id, sim in pairs[:k]:
            n_idx = _index(neighbor_id)
            if n_idx is None:
                if stats is not None:
                    stats.dropped_neighbors += 1
                continue
            kept.append(Neighbor(movie_id=neighbor_id, i_idx=n_idx, sim=sim))

        yield SimilarityDoc(
            movie_id=movie_id,
            i_idx=i_idx,
            metric=metric,
            k=k,
            neighbors=kept,
            updated_at=clock(),
        )


def process_similarities(
    similarities_path: Path,
    out_path: Path,
    item_mapper: IdentityMapper,
    identity_mode: IdentityMode = IdentityMode.LOOKUP,
    metric: str = SIMILARITY_METRIC,
    k: int = SIMILARITY_K,
    stats: RunStats | None = None,
) -> int:
    """Write similarities.ndjson; raises SourceError if the source is unreadable."""
    stats = stats if stats is not None else RunStats()
    neighbors = load_similarities(similarities_path, stats=stats)
    log.info("Loaded neighbor lists for %d movies", len(neighbors))

    with NdjsonWriter(out_path) as writer:
        for doc in remap_similarities(neighbors, item_mapper, identity_mode, metric, k, stats=stats):
            writer.write(doc.to_doc())

    stats.similarities = writer.count
    log.info("Wrote %d similarity documents to %s", writer.count, out_path)
    return writer.count
