"""Create the dashboard admin user, or reset its password if it already exists.

Usage:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=... python scripts/init_admin.py
"""

import argparse
import asyncio
import getpass
import os
import sys

# Add parent dir to path to find the api modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, async_session_maker, engine
import models  # noqa: F401
from services.admin import upsert_admin

MIN_PASSWORD_LENGTH = 12


async def init_admin(username: str, password: str) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_maker() as session:
        admin = await upsert_admin(username, password, session)
    await engine.dispose()
    print(f"✅ Admin user '{admin.username}' is ready (id={admin.id}).")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    args = parser.parse_args()

    password = os.environ.get("ADMIN_PASSWORD") or getpass.getpass("Admin password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"❌ Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return 1

    asyncio.run(init_admin(args.username.strip(), password))
    return 0


if __name__ == "__main__":
    sys.exit(main())
