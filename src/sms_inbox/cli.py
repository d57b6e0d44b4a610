"""
Operator commands for an inbox deployment.

  sms-inbox-admin add-volunteer EMAIL NAME [--approved] [--admin]
  sms-inbox-admin token VOLUNTEER_ID

``add-volunteer --approved --admin`` bootstraps the first admin, who can then
approve everyone else through the API.
"""

from __future__ import annotations

import argparse
import sys

from .auth import issue_session_token
from .config import get_settings
from .db import SessionLocal, init_db
from .errors import StorageFailed
from .store import VolunteerStore


def add_volunteer(email: str, name: str, *, approved: bool, is_admin: bool) -> str:
    init_db()
    db = SessionLocal()
    try:
        volunteer = VolunteerStore(db).add(email, name, approved=approved, is_admin=is_admin)
        return volunteer.id
    finally:
        db.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="sms-inbox-admin")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-volunteer", help="Create a volunteer record.")
    add.add_argument("email")
    add.add_argument("name")
    add.add_argument("--approved", action="store_true")
    add.add_argument("--admin", action="store_true")

    token = sub.add_parser("token", help="Issue a session token for a volunteer id.")
    token.add_argument("volunteer_id")

    args = parser.parse_args(argv)

    if args.command == "add-volunteer":
        if args.admin and not args.approved:
            parser.error("--admin requires --approved")
        try:
            volunteer_id = add_volunteer(
                args.email, args.name, approved=args.approved, is_admin=args.admin
            )
        except StorageFailed:
            print("Could not create volunteer (duplicate email?)", file=sys.stderr)
            return 1
        print(volunteer_id)
        return 0

    secret = get_settings().session_secret
    if not secret:
        print("SESSION_SECRET is not configured", file=sys.stderr)
        return 1
    print(issue_session_token(args.volunteer_id, secret))
    return 0


if __name__ == "__main__":
    sys.exit(main())
