"""
Create the initial administrator account.

Usage:
    python -m fleetwatch.bootstrap --email admin@example.com --password '...'

Environment Variables:
    ADMIN_EMAIL     - Used when --email is not given
    ADMIN_PASSWORD  - Used when --password is not given
    DATABASE_URL    - Database to write to
"""
import argparse
import asyncio
import logging
import os
import sys

from fleetwatch.database import get_session_context, init_db
from fleetwatch.services.users import ensure_admin

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger("bootstrap")


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create the FleetWatch administrator")
    parser.add_argument(
        "--email", "-e",
        default=os.environ.get("ADMIN_EMAIL", ""),
        help="Administrator email (default: $ADMIN_EMAIL)",
    )
    parser.add_argument(
        "--password", "-p",
        default=os.environ.get("ADMIN_PASSWORD", ""),
        help="Administrator password (default: $ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--name", "-n",
        default="System Administrator",
        help="Display name",
    )
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        parser.error("--email and --password are required (or set ADMIN_EMAIL / ADMIN_PASSWORD)")

    await init_db()
    async with get_session_context() as db:
        user = await ensure_admin(db, args.email, args.password, args.name)

    if user is None:
        logger.info("Admin user already exists: %s", args.email)
    else:
        logger.info("Admin user created: %s (%s)", args.email, user.user_id)
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
