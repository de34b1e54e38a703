"""
Seed script for the mock DB or Firestore.

Usage:
  - Dry run (default): python -m scripts.seed_db
  - Apply to configured DB: python -m scripts.seed_db --apply
  - Force mock DB even if FIREBASE configured: python -m scripts.seed_db --apply --force-mock
  - Different seed file: python -m scripts.seed_db --seed ./other_seed.json

Behavior:
  - Loads `db_seed.json` from the repo root: {collection: {doc_id: data}}.
  - Neighborhood geometries given as GeoJSON objects are validated and stored
    as JSON strings (Firestore cannot hold the nested coordinate arrays).
  - Writes each top-level collection/document to the DB.
"""

import argparse
import json
import os
from typing import Any

from pydantic import ValidationError

from app.config.firebase import get_db
from app.core.exceptions import MalformedGeometry
from app.core.settings import settings
from app.models.neighborhood import Neighborhood
from app.services.neighborhood_resolver import NEIGHBORHOODS_COLLECTION, parse_geometry


def load_seed(path: str = "./db_seed.json") -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def prepare_document(collection: str, doc_id: str, data: dict) -> dict:
    if collection != NEIGHBORHOODS_COLLECTION:
        return data

    prepared = dict(data)
    parse_geometry(Neighborhood(id=doc_id, **prepared))
    if not isinstance(prepared.get("geometry"), str):
        prepared["geometry"] = json.dumps(prepared["geometry"])
    return prepared


def write_to_db(db: Any, seed: dict, apply: bool = False) -> int:
    written = 0
    for collection, docs in seed.items():
        for doc_id, data in docs.items():
            print(f"Preparing: {collection}/{doc_id}")
            try:
                document = prepare_document(collection, doc_id, data)
            except MalformedGeometry as e:
                print(f"Skipping {collection}/{doc_id}: {e.message}")
                continue
            except ValidationError as e:
                print(f"Skipping {collection}/{doc_id}: {e}")
                continue
            if not apply:
                continue
            db.collection(collection).document(doc_id).set(document)
            written += 1
            print(f"Wrote: {collection}/{doc_id}")
    return written


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--apply", action="store_true", help="Write seed to the DB instead of dry-run")
    parser.add_argument("--force-mock", action="store_true", help="Force use of mock DB even if FIREBASE configured")
    parser.add_argument("--seed", default=os.path.join(os.getcwd(), "db_seed.json"), help="Seed file path")
    args = parser.parse_args()

    if not os.path.exists(args.seed):
        print(f"Seed file not found: {args.seed}")
        return

    seed = load_seed(args.seed)

    if args.force_mock:
        print("Forcing mock DB usage for this run.")
        settings.USE_MOCK_DB = True

    db = get_db()
    written = write_to_db(db, seed, apply=args.apply)

    if args.apply:
        print(f"Seeding completed ({written} documents).")
    else:
        print("Dry run complete. Re-run with --apply to write to DB.")


if __name__ == "__main__":
    main()
