#!/usr/bin/env python3
"""
StaffGate admin CLI -- provisioning that has no HTTP endpoint.

Usage:
  python main.py generate-key
  python main.py create-permission USER_READ --resource USER
  python main.py create-role ADMIN --permission USER_READ --permission USER_WRITE
  python main.py create-user admin --email admin@corp.example --name "Admin" --role ADMIN
  python main.py assign-role kim ADMIN
  python main.py unlock kim

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the identity store (default sqlite:///staffgate.db)
  JWT_SECRET     Required by every command except generate-key (see core/config.py)
"""

import argparse
import getpass
import sys

from api.models import check_password_strength
from auth.errors import AuthError
from auth.lockout import LockoutPolicy
from auth.models import Permission, Registration, ResourceType, Role
from auth.passwords import PasswordHasher
from auth.store import IdentityStore
from auth.users import UserService
from core.config import generate_signing_key, get_settings


def _open() -> tuple[IdentityStore, UserService]:
    settings = get_settings()
    store = IdentityStore(settings.database_url)
    users = UserService(store, PasswordHasher(rounds=settings.bcrypt_rounds), LockoutPolicy.from_settings(settings))
    return store, users


def _create_permission(store: IdentityStore, args: argparse.Namespace) -> None:
    permission = store.create_permission(
        Permission(name=args.name, resource_type=ResourceType(args.resource), description=args.description)
    )
    print(f"  Permission {permission.name} created (id={permission.id}).")


def _create_role(store: IdentityStore, args: argparse.Namespace) -> None:
    permission_ids = set()
    for name in args.permission:
        permission = store.get_permission_by_name(name)
        if permission is None:
            raise SystemExit(f"  [!] Unknown permission '{name}'.")
        permission_ids.add(permission.id)
    role = store.create_role(Role(name=args.name, description=args.description, permission_ids=frozenset(permission_ids)))
    print(f"  Role {role.name} created (id={role.id}, {len(permission_ids)} permissions).")


def _assign_role(store: IdentityStore, username: str, role_name: str) -> None:
    identity = store.get_by_username(username)
    if identity is None:
        raise SystemExit(f"  [!] Unknown user '{username}'.")
    role = store.load_role_index().role_by_name(role_name)
    if role is None:
        raise SystemExit(f"  [!] Unknown role '{role_name}'.")
    store.assign_role(identity.id, role.id)
    print(f"  Role {role_name} assigned to {username}.")


def _create_user(store: IdentityStore, users: UserService, args: argparse.Namespace) -> None:
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Confirm:  "):
        raise SystemExit("  [!] Passwords do not match.")
    check_password_strength(password)
    view = users.create_user(
        Registration(
            username=args.username,
            password=password,
            email=args.email,
            name=args.name,
            employee_id=args.employee_id,
            department=args.department,
        )
    )
    print(f"  User {view.username} created (id={view.id}).")
    for role_name in args.role:
        _assign_role(store, view.username, role_name)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="staffgate",
        description="Provision keys, permissions, roles and users for StaffGate.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("generate-key", help="Print a fresh base64 JWT_SECRET (64 random bytes)")

    p = commands.add_parser("create-permission", help="Create a permission")
    p.add_argument("name")
    p.add_argument("--resource", required=True, choices=[r.value for r in ResourceType])
    p.add_argument("--description")

    p = commands.add_parser("create-role", help="Create a role from existing permissions")
    p.add_argument("name")
    p.add_argument("--permission", action="append", default=[], metavar="NAME")
    p.add_argument("--description")

    p = commands.add_parser("create-user", help="Create an ACTIVE user (prompts for the password)")
    p.add_argument("username")
    p.add_argument("--email", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--employee-id")
    p.add_argument("--department")
    p.add_argument("--role", action="append", default=[], metavar="NAME")

    p = commands.add_parser("assign-role", help="Grant a role to a user")
    p.add_argument("username")
    p.add_argument("role")

    p = commands.add_parser("unlock", help="Set a user ACTIVE and reset the failed-login counter")
    p.add_argument("username")

    args = parser.parse_args()

    if args.command == "generate-key":
        print(generate_signing_key())
        return

    store, users = _open()
    try:
        if args.command == "create-permission":
            _create_permission(store, args)
        elif args.command == "create-role":
            _create_role(store, args)
        elif args.command == "create-user":
            _create_user(store, users, args)
        elif args.command == "assign-role":
            _assign_role(store, args.username, args.role)
        elif args.command == "unlock":
            view = users.unlock(args.username)
            print(f"  {view.username} is {view.status.value}.")
    except (AuthError, ValueError) as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
