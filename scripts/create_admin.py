#!/usr/bin/env python3
"""Create or promote an admin account. Admins cannot self-register over HTTP."""
import argparse
import asyncio
import sys
from datetime import datetime

from shared.security_config import PASSWORD_RULES, validate_password_strength
from shared.utils import get_db_client, get_password_hash, settings


async def create_admin(email: str, password: str, full_name: str) -> str:
    client = get_db_client()
    try:
        db = client[settings.MONGO_DB_NAME]
        result = await db.users.update_one(
            {"email": email.lower()},
            {
                "$set": {"role": "admin", "password_hash": get_password_hash(password), "is_active": True},
                "$setOnInsert": {"full_name": full_name, "created_at": datetime.utcnow()},
            },
            upsert=True,
        )
        return "created" if result.upserted_id else "promoted"
    finally:
        client.close()


def main():
    parser = argparse.ArgumentParser(description="Create a storefront admin user")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("full_name", nargs="?", default="Administrator")
    args = parser.parse_args()

    if not validate_password_strength(args.password):
        print(PASSWORD_RULES)
        sys.exit(1)

    outcome = asyncio.run(create_admin(args.email, args.password, args.full_name))
    print(f"Admin {args.email} {outcome}")


if __name__ == "__main__":
    main()
