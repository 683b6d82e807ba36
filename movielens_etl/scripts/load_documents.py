"""Load previously built NDJSON collections into DynamoDB."""

import logging
import sys

from movielens_etl.config import OUT_DIR
from movielens_etl.deploy.dynamo_loader import COLLECTIONS, load_all


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    collections = sys.argv[1:] or list(COLLECTIONS)
    unknown = [c for c in collections if c not in COLLECTIONS]
    if unknown:
        print(f"Unknown collections: {', '.join(unknown)} (choose from {', '.join(COLLECTIONS)})", file=sys.stderr)
        sys.exit(1)

    print(f"Loading {', '.join(collections)} from {OUT_DIR}...")
    written = load_all(OUT_DIR, collections)
    for collection, count in written.items():
        print(f"  {collection}: {count:,} documents")
    print("\nLoad complete!")


if __name__ == "__main__":
    main()
