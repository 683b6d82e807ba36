"""Constants, paths and run options for the MovieLens document ETL."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

from movielens_etl.errors import ConfigError

load_dotenv()

# ── Paths ────────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
MOVIELENS_DIR = Path(os.getenv("MOVIELENS_DATA_DIR", str(RAW_DIR / "ml-25m")))
OUT_DIR = Path(os.getenv("ETL_OUT_DIR", str(DATA_DIR / "out")))

# ── Input / output file names ────────────────────────────────────────────────
MOVIES_FILE = "movies.csv"
RATINGS_FILE = "ratings.csv"
LINKS_FILE = "links.csv"
TAGS_FILE = "tags.csv"
GENOME_TAGS_FILE = "genome-tags.csv"
GENOME_SCORES_FILE = "genome-scores.csv"
SIMILARITIES_FILE = "item_topk_cosine_conc.csv"
ITEM_MAP_FILE = "item_map.csv"
USER_MAP_FILE = "user_map.csv"

MOVIES_OUT = "movies.ndjson"
RATINGS_OUT = "ratings.ndjson"
USERS_OUT = "users.ndjson"
SIMILARITIES_OUT = "similarities.ndjson"
PASSWORDS_LOG_OUT = "passwords_log.csv"

# ── TMDB ─────────────────────────────────────────────────────────────────────
TMDB_API_KEY = os.getenv("TMDB_API_KEY", "")
TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"
TMDB_PROFILE_BASE = "https://image.tmdb.org/t/p/w185"
TMDB_CACHE_PATH = RAW_DIR / "tmdb_cache.json"

# ── AWS / DynamoDB ───────────────────────────────────────────────────────────
AWS_REGION = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
DOCS_TABLE_PREFIX = os.getenv("DOCS_TABLE_PREFIX", "movielens_")

# ── Assembly ─────────────────────────────────────────────────────────────────
MIN_RELEVANCE = 0.5
TOP_GENOME_TAGS = 10
TOP_USER_TAGS = 10
SIMILARITY_METRIC = "cosine"
SIMILARITY_K = 20
NO_GENRES = "(no genres listed)"
CHUNK_SIZE = 500_000

# ── Users ────────────────────────────────────────────────────────────────────
BCRYPT_ROUNDS = 10
PASSWORD_BYTES = 9  # 12 url-safe characters


class IdentityMode(str, Enum):
    """How records resolve their sequential index."""

    OFF = "off"        # no index on output documents
    LOOKUP = "lookup"  # known ids only, unknown ids stay absent
    CREATE = "create"  # allocate indices for unseen ids


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"{name}={raw!r} is not a valid {cast.__name__}") from e


@dataclass
class EtlConfig:
    data_dir: Path = MOVIELENS_DIR
    out_dir: Path = OUT_DIR
    min_relevance: float = MIN_RELEVANCE
    top_genome_tags: int = TOP_GENOME_TAGS
    top_user_tags: int = TOP_USER_TAGS
    identity_mode: IdentityMode = IdentityMode.CREATE
    update_mappings: bool = False
    fetch_external: bool = False
    tmdb_api_key: str = ""
    tmdb_rate_limit: float = 4.0
    tmdb_max_retries: int = 3
    enrichment_workers: int = 1
    similarity_metric: str = SIMILARITY_METRIC
    similarity_k: int = SIMILARITY_K
    chunk_size: int = CHUNK_SIZE
    hash_passwords: bool = True
    bcrypt_rounds: int = BCRYPT_ROUNDS

    @classmethod
    def from_env(cls) -> "EtlConfig":
        """Build a config from environment variables (and .env)."""
        mode = os.getenv("IDENTITY_MODE", IdentityMode.CREATE.value).strip().lower()
        try:
            identity_mode = IdentityMode(mode)
        except ValueError as e:
            raise ConfigError(f"IDENTITY_MODE must be one of off/lookup/create, got {mode!r}") from e

        config = cls(
            data_dir=MOVIELENS_DIR,
            out_dir=OUT_DIR,
            min_relevance=_env_number("MIN_RELEVANCE", MIN_RELEVANCE, float),
            top_genome_tags=_env_number("TOP_GENOME_TAGS", TOP_GENOME_TAGS, int),
            top_user_tags=_env_number("TOP_USER_TAGS", TOP_USER_TAGS, int),
            identity_mode=identity_mode,
            update_mappings=_env_bool("UPDATE_MAPPINGS", False),
            fetch_external=_env_bool("FETCH_EXTERNAL", False),
            tmdb_api_key=TMDB_API_KEY,
            tmdb_rate_limit=_env_number("TMDB_RATE_LIMIT", 4.0, float),
            tmdb_max_retries=_env_number("TMDB_MAX_RETRIES", 3, int),
            enrichment_workers=_env_number("ENRICHMENT_WORKERS", 1, int),
            similarity_metric=os.getenv("SIMILARITY_METRIC", SIMILARITY_METRIC),
            similarity_k=_env_number("SIMILARITY_K", SIMILARITY_K, int),
            hash_passwords=_env_bool("HASH_PASSWORDS", True),
            bcrypt_rounds=_env_number("BCRYPT_ROUNDS", BCRYPT_ROUNDS, int),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.fetch_external and not self.tmdb_api_key:
            raise ConfigError(
                "FETCH_EXTERNAL requires TMDB_API_KEY "
                "(get one at https://www.themoviedb.org/settings/api)"
            )
        if self.tmdb_rate_limit <= 0:
            raise ConfigError("TMDB_RATE_LIMIT must be positive")
        if self.enrichment_workers < 1:
            raise ConfigError("ENRICHMENT_WORKERS must be at least 1")
        if min(self.top_genome_tags, self.top_user_tags, self.similarity_k) < 0:
            raise ConfigError("top-K cutoffs must not be negative")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ConfigError("BCRYPT_ROUNDS must be between 4 and 31")

    def input_path(self, name: str) -> Path:
        return Path(self.data_dir) / name

    def output_path(self, name: str) -> Path:
        return Path(self.out_dir) / name
