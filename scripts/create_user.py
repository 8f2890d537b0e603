#!/usr/bin/env python3
"""
Create a user account from the command line (registration is closed in
production once the first account exists).
Run from the repo root: python -m scripts.create_user someone@agency.com 'password' --admin
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main(email: str, password: str, name: str | None, admin: bool):
    from insighthub.database import async_session, init_db
    from insighthub.models import User
    from insighthub.services.auth_service import hash_password
    from sqlalchemy import select

    await init_db()
    async with async_session() as db:
        existing = await db.execute(select(User).where(User.email == email.lower()))
        if existing.scalar_one_or_none():
            print(f"User {email} already exists.")
            sys.exit(0)

        user = User(
            email=email.lower(),
            password_hash=hash_password(password),
            name=name or email.split("@")[0],
            role="admin" if admin else "user",
            is_active=True,
        )
        db.add(user)
        await db.commit()
        print(f"Created {user.role} user: {user.email}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create an Insight Hub user")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--name")
    parser.add_argument("--admin", action="store_true")
    args = parser.parse_args()
    asyncio.run(main(args.email, args.password, args.name, args.admin))
