"""Ratings and users collections, written in the same pass that builds rating stats."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import bcrypt
import pandas as pd

from movielens_etl.config import BCRYPT_ROUNDS, CHUNK_SIZE, PASSWORD_BYTES, IdentityMode
from movielens_etl.data.assemble import resolve_index
from movielens_etl.data.loaders import RATING_COLUMNS, accumulate_ratings, parse_ratings
from movielens_etl.data.records import NdjsonWriter, read_table
from movielens_etl.mappers.identity import IdentityMapper
from movielens_etl.models import RatingAccumulator, RatingStats, RunStats, iso_now

log = logging.getLogger(__name__)

USER_ROLE = "user"
USER_EMAIL_DOMAIN = "movielens.local"


@dataclass
class RatingsPass:
    ratings_written: int = 0
    users_written: int = 0
    rating_stats: dict[int, RatingStats] = field(default_factory=dict)


def generate_password() -> str:
    return secrets.token_urlsafe(PASSWORD_BYTES)


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def user_email(user_id: int) -> str:
    return f"user{user_id}@{USER_EMAIL_DOMAIN}"


def user_doc(user_id: int, u_idx: int | None, password_hash: str, created_at: str) -> dict:
    doc: dict = {"userId": user_id}
    if u_idx is not None:
        doc["uIdx"] = u_idx
    doc["email"] = user_email(user_id)
    doc["passwordHash"] = password_hash
    doc["role"] = USER_ROLE
    doc["createdAt"] = created_at
    return doc


def process_ratings(
    ratings_path: Path,
    ratings_out: Path,
    users_out: Path,
    user_mapper: IdentityMapper | None = None,
    identity_mode: IdentityMode = IdentityMode.OFF,
    stats: RunStats | None = None,
    chunksize: int | None = CHUNK_SIZE,
    passwords_out: Path | None = None,
    hash_passwords: bool = True,
    bcrypt_rounds: int = BCRYPT_ROUNDS,
    password_factory: Callable[[], str] = generate_password,
) -> RatingsPass:
    """Stream ratings.csv once.

    Writes one rating document per valid row, one user document per distinct
    userId (sorted by userId), and returns per-movie rating stats built from
    exactly the rows that were written.

    Each user gets a generated password. `passwordHash` holds its bcrypt hash,
    or the plain password when `hash_passwords` is off (development seeding).
    The plain passwords are written to `passwords_out` when given.
    """
    stats = stats if stats is not None else RunStats()
    accumulators: dict[int, RatingAccumulator] = {}
    user_ids: set[int] = set()

    with NdjsonWriter(ratings_out) as writer:
        for chunk in read_table(ratings_path, RATING_COLUMNS, source="ratings", stats=stats, chunksize=chunksize):
            ratings = parse_ratings(chunk, stats)
            for user_id, movie_id, rating, ts in zip(
                ratings["userId"], ratings["movieId"], ratings["rating"], ratings["timestamp"]
            ):
                writer.write({
                    "userId": int(user_id),
                    "movieId": int(movie_id),
                    "rating": float(rating),
                    "timestamp": int(ts),
                })
            user_ids.update(ratings["userId"].tolist())
            accumulate_ratings(accumulators, ratings)
    log.info("Wrote %d ratings to %s", writer.count, ratings_out)

    now = iso_now()
    credentials: list[tuple[int, str, str]] = []
    with NdjsonWriter(users_out) as users_writer:
        for user_id in sorted(user_ids):
            u_idx = resolve_index(user_mapper, user_id, identity_mode)
            password = password_factory()
            stored = hash_password(password, bcrypt_rounds) if hash_passwords else password
            users_writer.write(user_doc(user_id, u_idx, stored, now))
            credentials.append((user_id, user_email(user_id), password))
            if hash_passwords and users_writer.count % 10_000 == 0:
                log.info("Hashed %d passwords...", users_writer.count)
    log.info("Wrote %d users to %s", users_writer.count, users_out)
    if not hash_passwords:
        log.warning("User passwords stored unhashed; do not load %s into production", users_out)

    if passwords_out is not None:
        write_password_log(passwords_out, credentials)

    stats.ratings = writer.count
    stats.users = users_writer.count
    stats.passwords_hashed = hash_passwords
    return RatingsPass(
        ratings_written=writer.count,
        users_written=users_writer.count,
        rating_stats={movie_id: acc.stats() for movie_id, acc in accumulators.items()},
    )


def write_password_log(path: Path, credentials: list[tuple[int, str, str]]) -> None:
    """Write userId,email,password rows for the generated accounts."""
    pd.DataFrame(credentials, columns=["userId", "email", "password"]).to_csv(path, index=False)
    log.info("Wrote %d generated passwords to %s", len(credentials), path)
