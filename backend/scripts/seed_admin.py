import argparse
import getpass
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

import bcrypt
from dotenv import load_dotenv
from pymongo import MongoClient


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def main() -> None:
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(env_path)

    parser = argparse.ArgumentParser(description="Create or reset an admin account for the admin panel.")
    parser.add_argument("--name", required=True, help="Admin display name")
    parser.add_argument("--email", required=True, help="Admin login email")
    parser.add_argument("--password", help="Admin password (prompted when omitted)")
    parser.add_argument("--role", default="admin", choices=["admin", "super_admin"], help="Admin role")
    args = parser.parse_args()

    mongo_url = os.getenv("MONGO_URL")
    db_name = os.getenv("DB_NAME")
    if not mongo_url or not db_name:
        raise RuntimeError("MONGO_URL and DB_NAME are required")

    password = args.password or getpass.getpass("Admin password: ")
    if len(password) < 6:
        raise ValueError("Password must be at least 6 characters")
    email = args.email.strip().lower()
    name = args.name.strip()

    client = MongoClient(mongo_url)
    admins = client[db_name]["admins"]
    now_iso = datetime.now(timezone.utc).isoformat()

    result = admins.update_one(
        {"email": email},
        {
            "$set": {
                "name": name,
                "role": args.role,
                "is_active": True,
                "password_hash": hash_password(password),
                "updated_at": now_iso,
            },
            "$setOnInsert": {"id": str(uuid.uuid4()), "email": email, "created_at": now_iso},
        },
        upsert=True,
    )
    action = "Created" if result.upserted_id is not None else "Updated"
    print(f"{action} admin account: {email} ({args.role})")
    client.close()


if __name__ == "__main__":
    main()
