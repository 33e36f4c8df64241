#!/usr/bin/env python3
"""
authgate -- operator CLI for the authentication service.

Usage:
  python main.py create-user alice alice@example.com
  python main.py create-user root root@example.com --admin --mfa
  python main.py unlock alice
  python main.py rotate-keys
  python main.py rotate-keys --force
  python main.py cleanup
  python main.py list-keys
  python main.py list-users
  python main.py audit --user alice --limit 20

Every command reads the same Settings as the API (environment variables or
.env), so it operates on the same database and signing keys.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.maintenance import run_maintenance
from auth.models import AuditEventKind
from auth.orchestrator import LoginOrchestrator, build_orchestrator
from auth.results import AuthFailure
from core.config import get_settings


def _read_password(from_stdin: bool = False) -> Optional[str]:
    """Prompt twice for a password, or read one line from stdin for scripted use."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n") or None
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _print_failure(failure: AuthFailure) -> None:
    print(f"  [!] {failure.message}")
    for problem in failure.problems:
        print(f"      - {problem}")


def cmd_create_user(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    roles = ["user", "admin"] if args.admin else ["user"]
    result = orchestrator.register(args.username, args.email, password, roles=roles, mfa_enabled=args.mfa)
    if isinstance(result, AuthFailure):
        _print_failure(result)
        return 1
    print(f"  Created {result.username} ({result.account_id}) roles={','.join(roles)}")
    return 0


def cmd_unlock(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    account = orchestrator.accounts.get_by_username_or_email(args.username)
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    result = orchestrator.unlock_account(account.id, actor="cli")
    if isinstance(result, AuthFailure):
        _print_failure(result)
        return 1
    print(f"  {account.username}: {result.message.lower()}.")
    return 0


def cmd_rotate_keys(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    result = orchestrator.rotate_signing_key(actor="cli", force=args.force)
    if isinstance(result, AuthFailure):
        _print_failure(result)
        return 1
    if result is None:
        print("  Active signing key is not due for rotation. Use --force to rotate anyway.")
    else:
        print(f"  Activated signing key {result}")
    return 0


def cmd_cleanup(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    report = run_maintenance(orchestrator.keys, orchestrator.sessions, orchestrator.audit, orchestrator.metrics)
    print(f"  Rotated key:       {report.rotated_key_id or 'no'}")
    print(f"  Keys pruned:       {report.keys_pruned}")
    print(f"  Sessions removed:  {report.sessions_removed}")
    return 0


def cmd_list_keys(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    keys = orchestrator.keys.store.list_keys()
    if not keys:
        print("  No signing keys yet. One is created on first use.")
        return 0
    print(f"  {'KEY ID':<34} {'ACTIVE':<7} {'CREATED':<26} EXPIRES")
    for key in keys:
        print(
            f"  {key.key_id:<34} {'yes' if key.is_active else 'no':<7} "
            f"{key.created_at:%Y-%m-%d %H:%M:%S %Z}    {key.expires_at:%Y-%m-%d %H:%M:%S %Z}"
        )
    return 0


def cmd_list_users(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    accounts = orchestrator.accounts.list_accounts()
    if not accounts:
        print("  No accounts yet.")
        return 0
    print(f"  {'USERNAME':<24} {'EMAIL':<32} {'ROLES':<14} {'MFA':<4} LOCKED")
    for account in accounts:
        locked = orchestrator.lockout.is_locked(account)
        print(
            f"  {account.username:<24} {account.email:<32} {','.join(account.roles):<14} "
            f"{'yes' if account.mfa_enabled else 'no':<4} {'yes' if locked else 'no'}"
        )
    return 0


def cmd_audit(orchestrator: LoginOrchestrator, args: argparse.Namespace) -> int:
    account_id = None
    if args.user:
        account = orchestrator.accounts.get_by_username_or_email(args.user)
        if account is None:
            print(f"  [!] No account named '{args.user}'.")
            return 1
        account_id = account.id
    kind = AuditEventKind(args.kind) if args.kind else None
    events = orchestrator.audit.list_events(account_id=account_id, kind=kind, limit=args.limit)
    if not events:
        print("  No audit events.")
        return 0
    for event in events:
        print(
            f"  {event.timestamp:%Y-%m-%d %H:%M:%S}  {event.kind.value:<26} "
            f"{event.username or '-':<20} {event.ip_address or '-':<15} {event.detail or ''}"
        )
    return 0


_COMMANDS = {
    "create-user": cmd_create_user,
    "unlock": cmd_unlock,
    "rotate-keys": cmd_rotate_keys,
    "cleanup": cmd_cleanup,
    "list-keys": cmd_list_keys,
    "list-users": cmd_list_users,
    "audit": cmd_audit,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Maintenance commands for the authgate authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice alice@example.com
  echo "$OPS_PASSWORD" | python main.py create-user ops ops@example.com --admin --password-stdin
  python main.py rotate-keys --force
  python main.py cleanup
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account (prompts for the password)")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("--admin", action="store_true", help="Grant the admin role")
    create.add_argument("--mfa", action="store_true", help="Require a second factor at login")
    create.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")

    unlock = sub.add_parser("unlock", help="Clear the lockout on an account")
    unlock.add_argument("username", help="Username or email")

    rotate = sub.add_parser("rotate-keys", help="Rotate the signing key if it is due")
    rotate.add_argument("--force", action="store_true", help="Rotate even if the active key is not due")

    sub.add_parser("cleanup", help="Run one maintenance tick (rotation, key GC, expired sessions)")
    sub.add_parser("list-keys", help="Show stored signing keys")
    sub.add_parser("list-users", help="Show accounts with their roles and lockout state")

    audit = sub.add_parser("audit", help="Show recent security events, newest first")
    audit.add_argument("--user", help="Only events for this username or email")
    audit.add_argument("--kind", choices=[k.value for k in AuditEventKind], help="Only events of this kind")
    audit.add_argument("--limit", type=int, default=50, help="Maximum events to show (default 50)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1
    orchestrator = build_orchestrator(get_settings())
    try:
        return _COMMANDS[args.command](orchestrator, args)
    finally:
        orchestrator.accounts.engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
