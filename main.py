#!/usr/bin/env python3
"""
Gatehouse -- administration CLI.

Usage:
  python main.py create-staff --email admin@example.com --role ADMIN
  python main.py create-staff --email m@example.com --name "Shop Manager" --password "..."
  python main.py list-staff
  python main.py update-staff --email m@example.com --role ADMIN
  python main.py update-staff --email m@example.com --deactivate
  python main.py delete-staff --email m@example.com
  python main.py purge-codes

Reads the same environment / .env as the API (DATABASE_URL, SECRET_KEY, DEBUG).
The first ADMIN account must be created here; after that, admins can create
staff through POST /api/v1/auth/users.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import Role, StaffAccount
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import get_settings


def _read_password(provided: str | None) -> str | None:
    if provided:
        return provided
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        return None
    return first


def cmd_create_staff(store: CredentialStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if not password:
        return 1
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    staff = StaffAccount(
        email=args.email.strip().lower(),
        name=args.name,
        role=Role(args.role),
        password_hash=hash_password(password),
    )
    try:
        staff_id = store.create_staff(staff)
    except IntegrityError:
        print(f"  [!] A staff account for '{staff.email}' already exists.")
        return 1
    print(f"  Created {staff.role.value} {staff.email} (id {staff_id})")
    return 0


def cmd_list_staff(store: CredentialStore, args: argparse.Namespace) -> int:
    accounts = store.list_staff()
    if not accounts:
        print("  No staff accounts.")
        return 0
    for s in accounts:
        flags = []
        if s.totp.enabled:
            flags.append("2fa")
        if not s.is_active:
            flags.append("inactive")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {s.id}  {s.role.value:<8} {s.email}{suffix}")
    return 0


def cmd_update_staff(store: CredentialStore, args: argparse.Namespace) -> int:
    staff = store.find_staff_by_identity(args.email.strip())
    if staff is None:
        print(f"  [!] No staff account for '{args.email}'.")
        return 1
    role = Role(args.role) if args.role else None
    if role is None and args.active is None and args.name is None:
        print("  [!] Nothing to change. Pass --role, --name, --activate or --deactivate.")
        return 1
    store.update_staff(staff.id, role=role, is_active=args.active, name=args.name)
    updated = store.get_staff(staff.id)
    state = "active" if updated.is_active else "inactive"
    print(f"  Updated {updated.email}: {updated.role.value}, {state}")
    return 0


def cmd_delete_staff(store: CredentialStore, args: argparse.Namespace) -> int:
    staff = store.find_staff_by_identity(args.email.strip())
    if staff is None:
        print(f"  [!] No staff account for '{args.email}'.")
        return 1
    store.delete_staff(staff.id)
    print(f"  Deleted {staff.email}")
    return 0


def cmd_purge_codes(store: CredentialStore, args: argparse.Namespace) -> int:
    removed = store.purge_expired_codes()
    print(f"  Removed {removed} expired verification code(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gatehouse", description="Gatehouse administration")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-staff", help="Create a staff account")
    create.add_argument("--email", required=True)
    create.add_argument("--name", default="")
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.MANAGER.value)
    create.add_argument("--password", help="Prompted for when omitted")
    create.set_defaults(func=cmd_create_staff)

    listing = sub.add_parser("list-staff", help="List staff accounts")
    listing.set_defaults(func=cmd_list_staff)

    update = sub.add_parser("update-staff", help="Change role, name or active flag of a staff account")
    update.add_argument("--email", required=True)
    update.add_argument("--role", choices=[r.value for r in Role])
    update.add_argument("--name")
    active = update.add_mutually_exclusive_group()
    active.add_argument("--activate", dest="active", action="store_const", const=True)
    active.add_argument("--deactivate", dest="active", action="store_const", const=False)
    update.set_defaults(func=cmd_update_staff, active=None)

    delete = sub.add_parser("delete-staff", help="Delete a staff account")
    delete.add_argument("--email", required=True)
    delete.set_defaults(func=cmd_delete_staff)

    purge = sub.add_parser("purge-codes", help="Delete expired phone verification codes")
    purge.set_defaults(func=cmd_purge_codes)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    store = CredentialStore(get_settings().database_url)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
