#!/usr/bin/env python3
"""Create an Ultra BMS user account.

Usage:
    python scripts/create_user.py --email admin@example.com --role SUPER_ADMIN
    python scripts/create_user.py --email tenant@example.com --password '<password>'

The password is prompted for when not given. Reads DATABASE_URL and the JWT
settings from the environment (or .env), like the server.
"""

import argparse
import asyncio
import getpass
import sys

from bms_auth.core import async_session_maker
from bms_auth.models.enums import UserRole
from bms_auth.services.auth import AuthService
from bms_auth.services.errors import AuthError
from bms_auth.services.session_guard import get_session_guard

MIN_PASSWORD_LENGTH = 12


async def _create(args: argparse.Namespace, password: str) -> int:
    async with async_session_maker() as db:
        service = AuthService(db, get_session_guard())
        try:
            user = await service.create_user(
                email=args.email,
                password=password,
                role=UserRole(args.role),
                first_name=args.first_name,
                last_name=args.last_name,
            )
        except AuthError as e:
            print(f"ERROR: {e}")
            return 1
    print(f"Created {user.role.value} user {user.email} ({user.id})")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create an Ultra BMS user")
    parser.add_argument("--email", required=True, help="Login email address")
    parser.add_argument(
        "--role",
        default=UserRole.TENANT.value,
        choices=[role.value for role in UserRole],
        help="Role to assign (default: TENANT)",
    )
    parser.add_argument("--password", help="Password (prompted for if omitted)")
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"ERROR: password must be at least {MIN_PASSWORD_LENGTH} characters.")
        sys.exit(1)

    sys.exit(asyncio.run(_create(args, password)))


if __name__ == "__main__":
    main()
