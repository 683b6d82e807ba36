"""Document shapes emitted for the movies, ratings, users and similarities collections."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone


def iso_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def iso_from_timestamp(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Links:
    movie_id: int
    imdb_id: int | None = None
    tmdb_id: int | None = None

    def to_doc(self) -> dict:
        doc = {"movielens": f"https://movielens.org/movies/{self.movie_id}"}
        if self.imdb_id is not None:
            doc["imdb"] = f"https://www.imdb.com/title/tt{self.imdb_id:07d}/"
        if self.tmdb_id is not None:
            doc["tmdb"] = f"https://www.themoviedb.org/movie/{self.tmdb_id}"
        return doc


@dataclass
class GenomeTag:
    tag_id: int
    tag: str
    relevance: float

    def to_doc(self) -> dict:
        return {"tag": self.tag, "relevance": self.relevance}


@dataclass
class RatingStats:
    count: int
    average: float
    last_rated_at: int | None = None

    def to_doc(self) -> dict:
        doc = {"average": round(self.average, 4), "count": self.count}
        if self.last_rated_at is not None:
            doc["lastRatedAt"] = iso_from_timestamp(self.last_rated_at)
        return doc


@dataclass
class RatingAccumulator:
    """Running per-movie rating state for a single streaming pass.

    Only the sum is kept; the mean is derived on read so that drift does not
    compound across millions of updates.
    """

    count: int = 0
    total: float = 0.0
    max_timestamp: int | None = None

    def add(self, rating: float, timestamp: int | None = None) -> None:
        self.count += 1
        self.total += rating
        if timestamp is not None and (self.max_timestamp is None or timestamp > self.max_timestamp):
            self.max_timestamp = timestamp

    def merge(self, count: int, total: float, max_timestamp: int | None) -> None:
        """Fold in a pre-aggregated chunk."""
        self.count += count
        self.total += total
        if max_timestamp is not None and (self.max_timestamp is None or max_timestamp > self.max_timestamp):
            self.max_timestamp = max_timestamp

    def stats(self) -> RatingStats:
        return RatingStats(
            count=self.count,
            average=self.total / self.count if self.count else 0.0,
            last_rated_at=self.max_timestamp,
        )


@dataclass
class CastMember:
    name: str
    profile_url: str = ""

    def to_doc(self) -> dict:
        doc = {"name": self.name}
        if self.profile_url:
            doc["profileUrl"] = self.profile_url
        return doc


@dataclass
class ExternalData:
    poster_url: str = ""
    overview: str = ""
    cast: list[CastMember] = field(default_factory=list)
    director: str = ""
    runtime: int = 0
    budget: int = 0
    revenue: int = 0
    tmdb_fetched: bool = False

    def to_doc(self) -> dict:
        doc: dict = {}
        if self.poster_url:
            doc["posterUrl"] = self.poster_url
        if self.overview:
            doc["overview"] = self.overview
        if self.cast:
            doc["cast"] = [c.to_doc() for c in self.cast]
        if self.director:
            doc["director"] = self.director
        if self.runtime:
            doc["runtime"] = self.runtime
        if self.budget:
            doc["budget"] = self.budget
        if self.revenue:
            doc["revenue"] = self.revenue
        doc["tmdbFetched"] = self.tmdb_fetched
        return doc


@dataclass
class MovieDoc:
    movie_id: int
    title: str
    genres: list[str]
    created_at: str
    updated_at: str
    i_idx: int | None = None
    year: int | None = None
    links: Links | None = None
    genome_tags: list[GenomeTag] = field(default_factory=list)
    user_tags: list[str] = field(default_factory=list)
    rating_stats: RatingStats | None = None
    external_data: ExternalData | None = None

    def to_doc(self) -> dict:
        doc: dict = {"movieId": self.movie_id}
        if self.i_idx is not None:
            doc["iIdx"] = self.i_idx
        doc["title"] = self.title
        if self.year is not None:
            doc["year"] = self.year
        doc["genres"] = list(self.genres)
        if self.links is not None:
            doc["links"] = self.links.to_doc()
        if self.genome_tags:
            doc["genomeTags"] = [t.to_doc() for t in self.genome_tags]
        if self.user_tags:
            doc["userTags"] = list(self.user_tags)
        if self.rating_stats is not None:
            doc["ratingStats"] = self.rating_stats.to_doc()
        if self.external_data is not None:
            doc["externalData"] = self.external_data.to_doc()
        doc["createdAt"] = self.created_at
        doc["updatedAt"] = self.updated_at
        return doc


@dataclass
class Neighbor:
    movie_id: int
    i_idx: int
    sim: float

    def to_doc(self) -> dict:
        return {"movieId": self.movie_id, "iIdx": self.i_idx, "sim": self.sim}


@dataclass
class SimilarityDoc:
    movie_id: int
    i_idx: int
    metric: str
    k: int
    neighbors: list[Neighbor]
    updated_at: str

    def to_doc(self) -> dict:
        return {
            "_id": f"{self.movie_id}_{self.metric}",
            "movieId": self.movie_id,
            "iIdx": self.i_idx,
            "metric": self.metric,
            "k": self.k,
            "neighbors": [n.to_doc() for n in self.neighbors],
            "updatedAt": self.updated_at,
        }


@dataclass
class RunStats:
    """Counts surfaced to the caller at the end of a run."""

    movies: int = 0
    ratings: int = 0
    users: int = 0
    similarities: int = 0
    skipped_rows: Counter = field(default_factory=Counter)
    degraded_sources: list[str] = field(default_factory=list)
    enrichment_fetched: int = 0
    enrichment_not_found: int = 0
    enrichment_failed: int = 0
    dropped_neighbors: int = 0
    mappings_saved: list[str] = field(default_factory=list)
    new_mappings: list[str] = field(default_factory=list)
    passwords_hashed: bool = False

    def skip(self, source: str, n: int = 1) -> None:
        if n:
            self.skipped_rows[source] += n

    @property
    def total_documents(self) -> int:
        return self.movies + self.ratings + self.users + self.similarities
