"""Rewrite stored phone numbers into canonical E.164 form.

Runs as a dry run unless --apply is passed. Two documents that normalize to
the same number are reported and left untouched; they need a manual merge.
"""
from __future__ import annotations

import argparse
import os
import sys
from collections import defaultdict
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from pymongo import MongoClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
load_dotenv(BACKEND_DIR / ".env")

from phone_utils import InvalidPhoneNumber, normalize_phone  # noqa: E402

COLLECTIONS = ("students", "teachers", "agents")


def plan_collection(docs: List[Dict[str, str]]) -> Dict[str, list]:
    """Split documents into rewrites, collisions and unparseable numbers."""
    by_canonical: Dict[str, List[Dict[str, str]]] = defaultdict(list)
    invalid = []
    for doc in docs:
        try:
            by_canonical[normalize_phone(doc.get("phone"))].append(doc)
        except InvalidPhoneNumber:
            invalid.append(doc)

    rewrites, collisions = [], []
    for canonical, owners in by_canonical.items():
        if len(owners) > 1:
            collisions.append((canonical, [o["id"] for o in owners]))
        elif owners[0].get("phone") != canonical:
            rewrites.append((owners[0]["id"], owners[0].get("phone"), canonical))
    return {"rewrites": rewrites, "collisions": collisions, "invalid": invalid}


def main() -> None:
    parser = argparse.ArgumentParser(description="Normalize stored phone numbers to E.164.")
    parser.add_argument("--apply", action="store_true", help="Write changes. Without this flag, runs as a dry run.")
    args = parser.parse_args()

    mongo_url = os.getenv("MONGO_URL")
    db_name = os.getenv("DB_NAME")
    if not mongo_url or not db_name:
        raise RuntimeError("MONGO_URL and DB_NAME are required")

    client = MongoClient(mongo_url)
    db = client[db_name]
    exit_code = 0
    for name in COLLECTIONS:
        docs = list(db[name].find({"phone": {"$exists": True}}, {"_id": 0, "id": 1, "phone": 1}))
        plan = plan_collection(docs)
        print(f"[{name}] documents={len(docs)} rewrites={len(plan['rewrites'])} "
              f"collisions={len(plan['collisions'])} invalid={len(plan['invalid'])}")
        for canonical, ids in plan["collisions"]:
            exit_code = 1
            print(f"  collision {canonical}: {', '.join(ids)}")
        for doc in plan["invalid"]:
            print(f"  invalid id={doc.get('id')} phone={doc.get('phone')!r}")
        for doc_id, old, new in plan["rewrites"]:
            print(f"  {doc_id}: {old} -> {new}")
            if args.apply:
                db[name].update_one({"id": doc_id, "phone": old}, {"$set": {"phone": new}})

    if not args.apply:
        print("Dry run only. Re-run with --apply to write changes.")
    client.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
