"""Assemble movie documents from movies.csv and the keyed side inputs."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from movielens_etl.config import CHUNK_SIZE, NO_GENRES, IdentityMode
from movielens_etl.data.loaders import SideInputs
from movielens_etl.data.records import NdjsonWriter, read_table
from movielens_etl.data.tmdb import EnrichmentResult, FetchOutcome, TMDBClient
from movielens_etl.mappers.identity import IdentityMapper
from movielens_etl.models import ExternalData, MovieDoc, RunStats, iso_now

log = logging.getLogger(__name__)

YEAR_RE = re.compile(r"\((\d{4})\)\s*$")
GENRE_SEPARATOR = "|"
MOVIE_COLUMNS = ["movieId", "title", "genres"]


def parse_title_and_year(raw: str) -> tuple[str, int | None]:
    """Split a trailing "(YYYY)" off a MovieLens title.

    "Toy Story (1995)" -> ("Toy Story", 1995). Titles without a trailing
    year come back unchanged with year None.
    """
    raw = raw.strip()
    m = YEAR_RE.search(raw)
    if not m:
        return raw, None
    title = raw[: m.start()].strip()
    return (title or raw), int(m.group(1))


def parse_genres(raw: str) -> list[str]:
    raw = raw.strip()
    if not raw or raw == NO_GENRES:
        return []
    return [g.strip() for g in raw.split(GENRE_SEPARATOR) if g.strip()]


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def _parse_id(value) -> int | None:
    try:
        return int(_text(value).strip())
    except ValueError:
        return None


def resolve_index(mapper: IdentityMapper | None, natural_id: int, mode: IdentityMode) -> int | None:
    """Index for `natural_id` under the given identity mode (None when absent)."""
    if mapper is None or mode is IdentityMode.OFF:
        return None
    if mode is IdentityMode.CREATE:
        return mapper.get_or_create(natural_id)
    return mapper.get(natural_id)


class MovieAssembler:
    """Streams movies.csv once and writes one document per valid row, in row order."""

    def __init__(
        self,
        side: SideInputs | None = None,
        item_mapper: IdentityMapper | None = None,
        identity_mode: IdentityMode = IdentityMode.OFF,
        enricher: TMDBClient | None = None,
        stats: RunStats | None = None,
        clock: Callable[[], str] = iso_now,
        workers: int = 1,
    ):
        self.side = side or SideInputs()
        self.item_mapper = item_mapper
        self.identity_mode = identity_mode
        self.enricher = enricher
        self.stats = stats or RunStats()
        self.clock = clock
        self.workers = max(1, workers)

    def build(self, movie_id: int, raw_title: str, raw_genres: str) -> MovieDoc:
        """Build a document without enrichment."""
        title, year = parse_title_and_year(raw_title)
        now = self.clock()
        return MovieDoc(
            movie_id=movie_id,
            i_idx=resolve_index(self.item_mapper, movie_id, self.identity_mode),
            title=title,
            year=year,
            genres=parse_genres(raw_genres),
            links=self.side.links.get(movie_id),
            genome_tags=self.side.genome_tags.get(movie_id, []),
            user_tags=self.side.user_tags.get(movie_id, []),
            rating_stats=self.side.rating_stats.get(movie_id),
            created_at=now,
            updated_at=now,
        )

    def _fetch(self, doc: MovieDoc) -> EnrichmentResult:
        tmdb_id = doc.links.tmdb_id if doc.links is not None else None
        return self.enricher.fetch(doc.movie_id, tmdb_id)

    def _attach(self, doc: MovieDoc, result: EnrichmentResult) -> None:
        if result.fetched:
            doc.external_data = result.data
            self.stats.enrichment_fetched += 1
            return
        doc.external_data = ExternalData(tmdb_fetched=False)
        if result.outcome is FetchOutcome.NOT_FOUND:
            self.stats.enrichment_not_found += 1
        else:
            self.stats.enrichment_failed += 1

    def _rows(self, movies_path: Path, chunksize: int | None) -> Iterable[MovieDoc]:
        for chunk in read_table(movies_path, MOVIE_COLUMNS, source="movies", stats=self.stats, chunksize=chunksize):
            for raw_id, raw_title, raw_genres in zip(chunk["movieId"], chunk["title"], chunk["genres"]):
                movie_id = _parse_id(raw_id)
                title = _text(raw_title)
                if movie_id is None or not title.strip():
                    self.stats.skip("movies")
                    log.debug("Skipping malformed movies row: %r", (raw_id, raw_title, raw_genres))
                    continue
                yield self.build(movie_id, title, _text(raw_genres))

    def _enriched(self, docs: Iterable[MovieDoc]) -> Iterable[MovieDoc]:
        if self.enricher is None:
            yield from docs
            return

        if self.workers == 1:
            for i, doc in enumerate(docs, start=1):
                self._attach(doc, self._fetch(doc))
                if i % 500 == 0:
                    log.info("Enriched %d movies...", i)
                yield doc
            return

        # fetch a bounded batch concurrently, hand back in input order
        batch_size = self.workers * 4
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            batch: list[MovieDoc] = []
            for doc in docs:
                batch.append(doc)
                if len(batch) >= batch_size:
                    yield from self._enrich_batch(pool, batch)
                    batch = []
            if batch:
                yield from self._enrich_batch(pool, batch)

    def _enrich_batch(self, pool: ThreadPoolExecutor, batch: list[MovieDoc]) -> list[MovieDoc]:
        for doc, result in zip(batch, pool.map(self._fetch, batch)):
            self._attach(doc, result)
        return batch

    def run(self, movies_path: Path, out_path: Path, chunksize: int | None = CHUNK_SIZE) -> int:
        """Write movies.ndjson; returns the number of documents written.

        Raises SourceError when movies.csv can't be read at all.
        """
        with NdjsonWriter(out_path) as writer:
            for doc in self._enriched(self._rows(movies_path, chunksize)):
                writer.write(doc.to_doc())
        self.stats.movies = writer.count
        log.info("Wrote %d movies to %s", writer.count, out_path)
        return writer.count
