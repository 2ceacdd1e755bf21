#!/usr/bin/env python3
"""
identitycore -- maintenance CLI for the credential store.

Runs against the database named by DATABASE_URL (see core/config.py), using
the same AuthEngine and policy as the HTTP API.

Usage:
  python main.py sweep
  python main.py create-admin admin@example.com --first-name Ada
  python main.py block mallory@example.com --reason "chargeback fraud"
  python main.py unblock mallory@example.com
  python main.py history alice@example.com --limit 20

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the credential store.
  SECRET_KEY     Required unless DEBUG=true.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from identity.engine import AuthEngine, AuthOutcome, AuthPolicy, AuthResult
from identity.errors import TransientStoreFailure, ValidationFailure
from identity.passwords import PasswordHasher, check_password_strength
from identity.store import CredentialStore

logger = logging.getLogger("identitycore.cli")


def build_engine(store: CredentialStore) -> AuthEngine:
    settings = get_settings()
    return AuthEngine(
        store,
        hasher=PasswordHasher(settings.bcrypt_rounds),
        policy=AuthPolicy.from_settings(settings),
    )


def _prompt_password() -> Optional[str]:
    """Ask twice for a new password. Returns None (after printing why) on mismatch or weakness."""
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Repeat password: "):
        print("  [!] Passwords do not match.")
        return None
    try:
        return check_password_strength(password)
    except ValidationFailure as exc:
        print(f"  [!] {exc}")
        return None


# ---------------------------------------------------------------------------
# Commands -- each returns a process exit code
# ---------------------------------------------------------------------------


def _report(result: AuthResult) -> int:
    """Print the outcome and map it to an exit code (2 = store unavailable)."""
    print(f"  {result.message}" if result.success else f"  [!] {result.message}")
    if result.success:
        return 0
    return 2 if result.outcome is AuthOutcome.STORE_UNAVAILABLE else 1


def cmd_sweep(engine: AuthEngine, args: argparse.Namespace) -> int:
    report = engine.sweep_expired()
    print(f"  Closed {report.sessions_closed} expired session(s).")
    print(f"  {report.expired_tokens} unused token(s) past expiry (kept for audit).")
    return 0


def cmd_create_admin(engine: AuthEngine, args: argparse.Namespace) -> int:
    password = _prompt_password()
    if password is None:
        return 1

    result = engine.register(args.email, password, first_name=args.first_name, last_name=args.last_name)
    if not result.success:
        return _report(result)
    account_id = result.account.id

    # No inbox round-trip for an operator-created account.
    for step in (engine.confirm_email_manually(account_id), engine.assign_role(account_id, "admin")):
        if not step.success:
            return _report(step)
    print(f"  Admin account {args.email} created (id {account_id}).")
    return 0


def _resolve(engine: AuthEngine, email: str) -> Optional[int]:
    account = engine.get_account_by_email(email)
    if account is None:
        print(f"  [!] No account with email {email}.")
        return None
    return account.id


def cmd_block(engine: AuthEngine, args: argparse.Namespace) -> int:
    account_id = _resolve(engine, args.email)
    if account_id is None:
        return 1
    return _report(engine.block_account(account_id, args.reason))


def cmd_unblock(engine: AuthEngine, args: argparse.Namespace) -> int:
    account_id = _resolve(engine, args.email)
    if account_id is None:
        return 1
    return _report(engine.unblock_account(account_id))


def cmd_history(engine: AuthEngine, args: argparse.Namespace) -> int:
    account_id = _resolve(engine, args.email)
    if account_id is None:
        return 1
    records = engine.login_history(account_id, args.limit)
    if not records:
        print("  No login attempts recorded.")
        return 0
    for r in records:
        when = r.created_at.strftime("%Y-%m-%d %H:%M:%S") if r.created_at else "?"
        outcome = "ok  " if r.success else "FAIL"
        reason = f"  ({r.failure_reason})" if r.failure_reason else ""
        print(f"  {when}  {outcome}  {r.origin:<15}{reason}")
    return 0


_COMMANDS = {
    "sweep": cmd_sweep,
    "create-admin": cmd_create_admin,
    "block": cmd_block,
    "unblock": cmd_unblock,
    "history": cmd_history,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="identitycore",
        description="Maintenance commands for the credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep
  python main.py create-admin admin@example.com
  python main.py block mallory@example.com --reason "abuse report #42"
  python main.py history alice@example.com --limit 20
        """,
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL for this run")
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    sub.add_parser("sweep", help="Close expired sessions and report stale tokens")

    p = sub.add_parser("create-admin", help="Create a confirmed account with the admin role")
    p.add_argument("email")
    p.add_argument("--first-name", default=None)
    p.add_argument("--last-name", default=None)

    p = sub.add_parser("block", help="Block an account and end its sessions")
    p.add_argument("email")
    p.add_argument("--reason", required=True, help="Shown to the account holder on login")

    p = sub.add_parser("unblock", help="Lift a block")
    p.add_argument("email")

    p = sub.add_parser("history", help="Show recent login attempts, newest first")
    p.add_argument("email")
    p.add_argument("--limit", type=int, default=50)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    store: Optional[CredentialStore] = None
    try:
        store = CredentialStore(args.database_url or settings.database_url)
        return _COMMANDS[args.command](build_engine(store), args)
    except (TransientStoreFailure, SQLAlchemyError):
        logger.exception("Credential store unavailable")
        print("  [!] Credential store unavailable. See the log for details.")
        return 2
    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
