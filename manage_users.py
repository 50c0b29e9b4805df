from __future__ import annotations

import argparse

from constat import user_store
from constat.roles import ROLE_RANK, role_label


def print_user(user: dict[str, object]) -> None:
    status = "active" if user["is_active"] else "disabled"
    print(
        f"{user['id']:<36} {user['email']:<32} {role_label(user['role']):<20} {status:<8} "
        f"{user.get('full_name') or '-'}"
    )


def _require_user(email: str) -> dict[str, object]:
    user = user_store.get_user_by_email(email)
    if not user:
        raise SystemExit(f"User '{email}' not found")
    return user


def cmd_list(ns: argparse.Namespace) -> None:
    users = user_store.list_users(role=ns.role, include_inactive=ns.include_disabled)
    if not users:
        print("(no users)")
        return
    for user in users:
        print_user(user)


def cmd_add(ns: argparse.Namespace) -> None:
    try:
        record = user_store.create_user(
            email=ns.email,
            password=ns.password,
            full_name=ns.name,
            phone=ns.phone or "",
            role=ns.role,
            is_active=not ns.disabled,
        )
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    print("Created user:")
    print_user(record)


def cmd_update(ns: argparse.Namespace) -> None:
    user = _require_user(ns.email)
    updates: dict[str, object] = {}
    if ns.name is not None:
        updates["full_name"] = ns.name
    if ns.phone is not None:
        updates["phone"] = ns.phone
    if ns.new_email is not None:
        updates["email"] = ns.new_email
    if ns.role is not None:
        updates["role"] = ns.role
    if not updates:
        print("Nothing to update")
        return
    try:
        user_store.update_user(user["id"], **updates)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    print("Updated user")


def cmd_set_password(ns: argparse.Namespace) -> None:
    user = _require_user(ns.email)
    try:
        user_store.set_password(user["id"], ns.password)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    print(f"Password updated for '{ns.email}'")


def cmd_disable(ns: argparse.Namespace) -> None:
    user = _require_user(ns.email)
    user_store.disable_user(user["id"])
    print(f"Disabled '{ns.email}'")


def cmd_enable(ns: argparse.Namespace) -> None:
    user = _require_user(ns.email)
    user_store.enable_user(user["id"])
    print(f"Enabled '{ns.email}'")


def build_parser() -> argparse.ArgumentParser:
    roles = sorted(ROLE_RANK, key=ROLE_RANK.get, reverse=True)
    parser = argparse.ArgumentParser(description="Manage Constat application users")
    sub = parser.add_subparsers(dest="command", required=True)

    p_add = sub.add_parser("add", help="Create a new user")
    p_add.add_argument("email")
    p_add.add_argument("password")
    p_add.add_argument("--name", required=True)
    p_add.add_argument("--phone", default="")
    p_add.add_argument("--role", choices=roles, default="constateur")
    p_add.add_argument("--disabled", action="store_true")
    p_add.set_defaults(func=cmd_add)

    p_list = sub.add_parser("list", help="List users")
    p_list.add_argument("--role", choices=roles)
    p_list.add_argument("--no-disabled", dest="include_disabled", action="store_false")
    p_list.set_defaults(func=cmd_list, include_disabled=True, role=None)

    p_update = sub.add_parser("update", help="Update user profile or role")
    p_update.add_argument("email")
    p_update.add_argument("--name")
    p_update.add_argument("--phone")
    p_update.add_argument("--email", dest="new_email")
    p_update.add_argument("--role", choices=roles)
    p_update.set_defaults(func=cmd_update)

    p_pw = sub.add_parser("passwd", help="Reset a user password")
    p_pw.add_argument("email")
    p_pw.add_argument("password")
    p_pw.set_defaults(func=cmd_set_password)

    p_disable = sub.add_parser("disable", help="Disable a user and revoke its tokens")
    p_disable.add_argument("email")
    p_disable.set_defaults(func=cmd_disable)

    p_enable = sub.add_parser("enable", help="Re-enable a user")
    p_enable.add_argument("email")
    p_enable.set_defaults(func=cmd_enable)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
