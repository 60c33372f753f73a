#!/usr/bin/env python3
"""
infst-web -- command-line entry points.

Usage:
  python main.py login --endpoint https://infst.example.com
  python main.py whoami
  python main.py cleanup

`login` links this machine to an account through the device flow and saves
the bearer token. `whoami` checks the saved token against the server.
`cleanup` runs the server-side sweep once (for an external daily cron); it
reads DATABASE_URL and the other server settings from the environment.
"""

import argparse
import logging
import sys
import webbrowser
from pathlib import Path
from typing import Any, Optional

from client.device import DeviceLoginError, fetch_me, load_credentials, login, save_credentials


def _show_code(grant: dict[str, Any]) -> None:
    url = grant["verification_url"]
    print("Please visit the following URL and enter the code:")
    print()
    print(f"  URL:  {url}")
    print(f"  Code: {grant['user_code']}")
    print()
    if not webbrowser.open(f"{url}?code={grant['user_code']}"):
        print("Could not open a browser. Please open the URL manually.")
    print("Waiting for authorization...")


def cmd_login(endpoint: str, credentials_path: Optional[Path]) -> int:
    try:
        credentials = login(endpoint, on_code=_show_code)
    except DeviceLoginError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    path = save_credentials(credentials, credentials_path)
    print("Login successful!")
    print(f"Credentials saved to: {path}")
    return 0


def cmd_whoami(credentials_path: Optional[Path]) -> int:
    try:
        credentials = load_credentials(credentials_path)
        if credentials is None:
            print("  [!] Not logged in. Run: python main.py login --endpoint URL", file=sys.stderr)
            return 1
        me = fetch_me(credentials)
    except DeviceLoginError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    print(f"{me.get('username') or me.get('email')} on {credentials.endpoint}")
    return 0


def cmd_cleanup() -> int:
    # Server-side imports stay here so login/whoami work without server settings.
    from sqlalchemy.exc import SQLAlchemyError

    from auth.store import UserStore
    from core.config import get_settings
    from jobs.cleanup import sweep
    from ratelimit.store import RateLimitStore

    settings = get_settings()
    try:
        user_store = UserStore(db_url=settings.database_url)
        rate_limit_store = RateLimitStore(db_url=settings.database_url)
        try:
            result = sweep(user_store, rate_limit_store, settings.device_code_grace_seconds)
        finally:
            rate_limit_store.close()
            user_store.close()
    except SQLAlchemyError as e:
        print(f"  [!] Cleanup failed: {e}", file=sys.stderr)
        return 1
    print(
        f"Removed {result.device_authorizations} device authorizations "
        f"and {result.rate_limits} rate-limit counters."
    )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="infst-web",
        description="Device login client and maintenance commands for infst-web.",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        metavar="PATH",
        help="Credentials file (default: ~/.config/infst/credentials.json)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log HTTP retries and sweep details")
    sub = parser.add_subparsers(dest="command", required=True)

    p_login = sub.add_parser("login", help="Link this machine to your account")
    p_login.add_argument("--endpoint", required=True, metavar="URL", help="Server base URL")
    sub.add_parser("whoami", help="Show which account the saved token belongs to")
    sub.add_parser("cleanup", help="Delete expired device codes and rate-limit counters")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "login":
        return cmd_login(args.endpoint, args.credentials)
    if args.command == "whoami":
        return cmd_whoami(args.credentials)
    return cmd_cleanup()


if __name__ == "__main__":
    sys.exit(main())
