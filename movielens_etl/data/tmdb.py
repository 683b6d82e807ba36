"""TMDB API client for movie metadata enrichment."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from movielens_etl.config import TMDB_BASE_URL, TMDB_CACHE_PATH, TMDB_IMAGE_BASE, TMDB_PROFILE_BASE, EtlConfig
from movielens_etl.models import CastMember, ExternalData

log = logging.getLogger(__name__)

TOP_CAST = 10


class RateLimiter:
    """Fixed-interval gate shared by every caller of a client.

    Each acquire() reserves the next free slot, so N threads together still
    make at most `rate` calls per second.
    """

    def __init__(self, rate: float, clock=time.monotonic, sleep=time.sleep):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.interval = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Block until a slot is free; returns the seconds waited."""
        with self._lock:
            now = self._clock()
            wait = self._next_slot - now
            if wait > 0:
                self._sleep(wait)
            else:
                wait = 0.0
            self._next_slot = max(now, self._next_slot) + self.interval
            return wait


class TransientTMDBError(Exception):
    """429 or 5xx from TMDB; worth retrying."""


class FetchOutcome(str, Enum):
    FETCHED = "fetched"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class EnrichmentResult:
    outcome: FetchOutcome
    data: ExternalData | None = None
    error: str = ""

    @property
    def fetched(self) -> bool:
        return self.outcome is FetchOutcome.FETCHED


def _external_from_cache(entry: dict) -> ExternalData:
    cast = [CastMember(**c) for c in entry.get("cast", [])]
    return ExternalData(**{**entry, "cast": cast})


def build_external_data(details: dict) -> ExternalData:
    """Map a /movie/{id}?append_to_response=credits payload onto ExternalData."""
    credits = details.get("credits") or {}

    directors = [c["name"] for c in credits.get("crew", []) if c.get("job") == "Director" and c.get("name")]

    cast_list = sorted(credits.get("cast", []), key=lambda c: c.get("order", 0))[:TOP_CAST]
    cast = [
        CastMember(
            name=c["name"],
            profile_url=f"{TMDB_PROFILE_BASE}{c['profile_path']}" if c.get("profile_path") else "",
        )
        for c in cast_list
        if c.get("name")
    ]

    poster_path = details.get("poster_path") or ""
    return ExternalData(
        poster_url=f"{TMDB_IMAGE_BASE}{poster_path}" if poster_path else "",
        overview=details.get("overview") or "",
        cast=cast,
        director=directors[0] if directors else "",
        runtime=int(details.get("runtime") or 0),
        budget=int(details.get("budget") or 0),
        revenue=int(details.get("revenue") or 0),
        tmdb_fetched=True,
    )


class TMDBClient:
    """Rate-limited TMDB lookups with bounded retry and an optional disk cache."""

    def __init__(
        self,
        api_key: str,
        rate_limit: float = 4.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        timeout: int = 30,
        base_url: str = TMDB_BASE_URL,
        cache_path: Path | None = None,
        limiter: RateLimiter | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.limiter = limiter or RateLimiter(rate_limit)
        self.session = requests.Session()
        self.cache_path = Path(cache_path) if cache_path else None
        self._cache: dict[str, dict | None] = self._load_cache()
        self._cache_lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._unsaved = 0

    @classmethod
    def from_config(cls, config: EtlConfig, cache_path: Path | None = TMDB_CACHE_PATH) -> "TMDBClient":
        return cls(
            api_key=config.tmdb_api_key,
            rate_limit=config.tmdb_rate_limit,
            max_retries=config.tmdb_max_retries,
            cache_path=cache_path,
        )

    def _load_cache(self) -> dict:
        """Load TMDB response cache from disk; an unreadable cache starts empty."""
        if not self.cache_path or not self.cache_path.exists():
            return {}
        try:
            with open(self.cache_path) as f:
                cache = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            log.warning("Ignoring unreadable TMDB cache %s: %s", self.cache_path, e)
            return {}
        if not isinstance(cache, dict):
            log.warning("Ignoring TMDB cache %s: expected a JSON object", self.cache_path)
            return {}
        return cache

    def save_cache(self) -> None:
        """Save TMDB response cache to disk."""
        if not self.cache_path:
            return
        with self._cache_lock:
            snapshot = dict(self._cache)
            self._unsaved = 0
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.cache_path.with_name(self.cache_path.name + ".tmp")
        with self._save_lock:
            with open(tmp_path, "w") as f:
                json.dump(snapshot, f, indent=2)
            os.replace(tmp_path, self.cache_path)

    def _remember(self, tmdb_id: int, data: ExternalData | None) -> None:
        if not self.cache_path:
            return
        with self._cache_lock:
            self._cache[str(tmdb_id)] = asdict(data) if data is not None else None
            self._unsaved += 1
            flush = self._unsaved >= 50
        if flush:
            self.save_cache()

    def _request(self, endpoint: str, params: dict | None) -> dict | None:
        self.limiter.acquire()
        query = {"api_key": self.api_key}
        if params:
            query.update(params)
        resp = self.session.get(f"{self.base_url}{endpoint}", params=query, timeout=self.timeout)
        if resp.status_code == 404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientTMDBError(f"{resp.status_code} from {endpoint}")
        resp.raise_for_status()
        return resp.json()

    def _get(self, endpoint: str, params: dict | None = None) -> dict | None:
        """GET an endpoint, retrying transient failures; None means 404."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff, max=30),
            retry=retry_if_exception_type((TransientTMDBError, requests.ConnectionError, requests.Timeout)),
            reraise=True,
        )
        return retrying(self._request, endpoint, params)

    def fetch(self, movie_id: int, tmdb_id: int | None) -> EnrichmentResult:
        """Fetch details and credits for one movie.

        Never raises for HTTP or network trouble: not-found and exhausted
        retries come back as outcomes.
        """
        if tmdb_id is None:
            return EnrichmentResult(FetchOutcome.NOT_FOUND, error="no tmdbId link")

        key = str(tmdb_id)
        if key in self._cache:
            entry = self._cache[key]
            if entry is None:
                return EnrichmentResult(FetchOutcome.NOT_FOUND, error="cached miss")
            try:
                return EnrichmentResult(FetchOutcome.FETCHED, _external_from_cache(entry))
            except (TypeError, AttributeError):
                log.warning("Discarding malformed cache entry for tmdbId=%s", tmdb_id)

        try:
            details = self._get(f"/movie/{tmdb_id}", {"append_to_response": "credits"})
        except (TransientTMDBError, requests.RequestException, ValueError) as e:
            log.warning("TMDB fetch failed for movieId=%s tmdbId=%s: %s", movie_id, tmdb_id, e)
            return EnrichmentResult(FetchOutcome.FAILED, error=str(e))

        if details is None:
            self._remember(tmdb_id, None)
            return EnrichmentResult(FetchOutcome.NOT_FOUND, error="404")

        data = build_external_data(details)
        self._remember(tmdb_id, data)
        return EnrichmentResult(FetchOutcome.FETCHED, data)

    def close(self) -> None:
        self.save_cache()
        self.session.close()
