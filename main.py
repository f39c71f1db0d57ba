#!/usr/bin/env python3
"""
DevDash identity CLI.

Sign in, inspect and refresh the local session, and link a GitHub account from the
terminal; or serve the same operations over HTTP.
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from typing import Any, Dict

#
# NOTE: Keep devdash imports lazy (inside functions) so `--help` stays fast and
# configuration errors surface as CLI errors rather than import failures.
#


def _configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "warning").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False))


def show_status(service) -> None:
    """Print the current session and GitHub link."""
    snap = service.snapshot()
    link = service.secondary_link()
    user = snap.user
    _print(
        {
            "authenticated": snap.is_authenticated,
            "state": snap.state.value,
            "simulated": snap.simulated,
            "user": None
            if user is None
            else {"id": user.id, "email": user.email, "name": user.display_name, "role": user.role},
            "github": None
            if link is None
            else {
                "username": link.external_username,
                "method": link.connection_method.value,
                "connectedAt": link.connected_at,
                "simulated": link.simulated,
            },
        }
    )


async def login_email(service, email: str, *, remember: bool) -> None:
    password = getpass.getpass("Password: ")
    session = await service.login_with_credential(email, password, remember)
    print(f"Signed in as {session.user.display_name} <{session.user.email}>")


async def login_sso(service, provider: str) -> None:
    from devdash.auth.models import PendingRedirect

    result = await service.login_with_redirect_provider(provider)
    if isinstance(result, PendingRedirect):
        # The callback is handled by the HTTP server (`--serve`).
        print(f"Open this URL to continue signing in:\n  {result.authorization_url}")
        return
    suffix = " (simulated)" if result.simulated else ""
    print(f"Signed in as {result.user.display_name} <{result.user.email}>{suffix}")


async def connect_github(service) -> None:
    token = getpass.getpass("GitHub personal access token: ")
    link = await service.connect_secondary_account(token, "token")
    print(f"Linked GitHub account @{link.external_username}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="DevDash sign-in and GitHub account linking",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the current session
  python main.py --status

  # Email/password sign-in (DEVDASH_PRIMARY_SCHEME=credentials), kept across restarts
  python main.py --login developer@devdash.com --remember

  # Enterprise single sign-on
  python main.py --sso enterprise

  # Serve the HTTP API
  python main.py --serve --port 8080
        """,
    )
    parser.add_argument("--status", action="store_true", help="Show the current session and GitHub link")
    parser.add_argument("--login", metavar="EMAIL", help="Sign in with email and password (prompts for password)")
    parser.add_argument("--remember", action="store_true", help="Keep the session across restarts (with --login)")
    parser.add_argument("--sso", metavar="PROVIDER", help="Sign in with a redirect provider (enterprise, google, github)")
    parser.add_argument("--refresh", action="store_true", help="Refresh the session token")
    parser.add_argument("--logout", action="store_true", help="Sign out (the GitHub link is kept)")
    parser.add_argument(
        "--connect-github", action="store_true", help="Link a GitHub account by personal access token (prompts)"
    )
    parser.add_argument("--disconnect-github", action="store_true", help="Remove the GitHub account link")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--host", default="127.0.0.1", help="Server bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    from devdash.auth.config import load_auth_config
    from devdash.auth.errors import AuthError
    from devdash.auth.service import build_auth_service

    try:
        service = build_auth_service(load_auth_config())

        if args.serve:
            from devdash.api.app import run

            run(service, host=args.host, port=args.port)
            return

        _configure_logging()
        service.initialize()

        if args.login:
            asyncio.run(login_email(service, args.login, remember=args.remember))
        elif args.sso:
            asyncio.run(login_sso(service, args.sso))
        elif args.refresh:
            asyncio.run(service.refresh_token())
            print("Session refreshed")
        elif args.logout:
            asyncio.run(service.logout())
            print("Signed out")
        elif args.connect_github:
            asyncio.run(connect_github(service))
        elif args.disconnect_github:
            asyncio.run(service.disconnect_secondary_account())
            print("GitHub account unlinked")
        elif args.status:
            show_status(service)
        else:
            parser.print_help()
            return

    except AuthError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
