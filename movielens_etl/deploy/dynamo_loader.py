"""Bulk-load the NDJSON collections into DynamoDB tables."""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path

import boto3

from movielens_etl.config import (
    AWS_REGION,
    DOCS_TABLE_PREFIX,
    MOVIES_OUT,
    RATINGS_OUT,
    SIMILARITIES_OUT,
    USERS_OUT,
)
from movielens_etl.data.records import read_ndjson

log = logging.getLogger(__name__)

# collection -> NDJSON file produced by the build step
COLLECTIONS = {
    "movies": MOVIES_OUT,
    "ratings": RATINGS_OUT,
    "users": USERS_OUT,
    "similarities": SIMILARITIES_OUT,
}

# Table keys the documents are written against (create tables to match):
#   movies:       PK movieId (N)
#   ratings:      PK userId (N), SK movieId (N)
#   users:        PK userId (N)
#   similarities: PK _id (S)
TABLE_KEYS = {
    "movies": ("movieId",),
    "ratings": ("userId", "movieId"),
    "users": ("userId",),
    "similarities": ("_id",),
}


def get_dynamodb_resource():
    """Get a DynamoDB resource."""
    return boto3.resource("dynamodb", region_name=AWS_REGION)


def _convert_floats(obj):
    """Convert float values to Decimal for DynamoDB compatibility."""
    if isinstance(obj, float):
        return Decimal(str(round(obj, 6)))
    if isinstance(obj, dict):
        return {k: _convert_floats(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_convert_floats(i) for i in obj]
    return obj


def table_name(collection: str, prefix: str = DOCS_TABLE_PREFIX) -> str:
    return f"{prefix}{collection}"


def load_collection(collection: str, path: Path, dynamodb=None, prefix: str = DOCS_TABLE_PREFIX) -> int:
    """Write every document in `path` to the collection's table.

    Documents missing a key attribute are skipped. Returns the number written.
    """
    if collection not in TABLE_KEYS:
        raise ValueError(f"Unknown collection {collection!r}")
    dynamodb = dynamodb or get_dynamodb_resource()
    table = dynamodb.Table(table_name(collection, prefix))
    keys = TABLE_KEYS[collection]

    count = 0
    skipped = 0
    with table.batch_writer(overwrite_by_pkeys=list(keys)) as batch:
        for doc in read_ndjson(path):
            if any(k not in doc for k in keys):
                skipped += 1
                continue
            batch.put_item(Item=_convert_floats(doc))
            count += 1

    if skipped:
        log.warning("Skipped %d %s documents without key attributes %s", skipped, collection, keys)
    log.info("Wrote %d %s documents to %s", count, collection, table.name)
    return count


def load_all(out_dir: Path, collections: list[str] | None = None, dynamodb=None, prefix: str = DOCS_TABLE_PREFIX) -> dict[str, int]:
    """Load each produced collection found in `out_dir`; missing files are skipped."""
    dynamodb = dynamodb or get_dynamodb_resource()
    written: dict[str, int] = {}
    for collection in collections or list(COLLECTIONS):
        path = Path(out_dir) / COLLECTIONS[collection]
        if not path.exists():
            log.warning("No %s at %s, skipping", collection, path)
            continue
        written[collection] = load_collection(collection, path, dynamodb=dynamodb, prefix=prefix)
    return written
