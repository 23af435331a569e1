"""CLI for gmail-cli - Gmail from the terminal.

Usage:
    gmail config <client-id>               # Save OAuth client id (prompts for secret)
    gmail import <path>                    # Import credentials.json from Cloud Console
    gmail login                            # Interactive OAuth login (opens browser)
    gmail logout                           # Revoke and delete the stored token
    gmail status                           # Show configuration and token status
    gmail list [--unread] [-n N] [-q Q] [-l LABEL]
    gmail read <id>
    gmail archive <id>
    gmail spam <id> | gmail unspam <id>
    gmail label <id> <label> | gmail unlabel <id> <label>
    gmail delete <id>                      # Move to trash
    gmail labels                           # List labels
    gmail unsubscribe <id>                 # Open the List-Unsubscribe link

Exit codes:
    0 success, 1 API or other error, 2 usage, 3 authorization failed,
    4 login required, 5 not found, 6 network error, 7 not configured
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import shutil
import sys
import webbrowser
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from gmail_cli.config import ClientConfig, Settings, load_settings, parse_client_secrets
from gmail_cli.exceptions import (
    ApiError,
    AuthError,
    ConfigError,
    GmailCliError,
    NetworkError,
    NotFound,
    ReauthRequired,
)
from gmail_cli.google import SessionManager

if TYPE_CHECKING:
    from gmail_cli.gmail import GmailClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AUTH = 3
EXIT_REAUTH = 4
EXIT_NOT_FOUND = 5
EXIT_NETWORK = 6
EXIT_CONFIG = 7

SessionFactory = Callable[..., SessionManager]


# --- Setup commands ---


def cmd_config(settings: Settings, client_id: str, client_secret: str | None = None) -> int:
    """Save OAuth client credentials to config.json."""
    if client_secret is None:
        client_secret = getpass.getpass("Client Secret: ").strip()
    if not client_secret:
        print("Error: Client secret cannot be empty", file=sys.stderr)
        return EXIT_ERROR

    path = settings.save_client_config(ClientConfig(client_id, client_secret))
    print(f"Credentials saved to {path}")
    print("Next: Run 'gmail login' to authorize")
    return EXIT_OK


def cmd_import(settings: Settings, source_path: str) -> int:
    """Import OAuth credentials from a file."""
    source = Path(source_path).expanduser()

    if not source.exists():
        print(f"Error: File not found: {source}", file=sys.stderr)
        return EXIT_ERROR

    # Validate JSON format
    try:
        with open(source) as f:
            client = parse_client_secrets(json.load(f))
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON: {e}", file=sys.stderr)
        return EXIT_ERROR

    settings.ensure_home()
    shutil.copy2(source, settings.credentials_path)
    settings.credentials_path.chmod(0o600)

    print("Imported OAuth credentials")
    print(f"  From: {source}")
    print(f"  To:   {settings.credentials_path}")
    print(f"  Client ID: {client.client_id[:40]}...")
    print()
    print("Next: Run 'gmail login' to authorize")
    return EXIT_OK


def cmd_status(settings: Settings, session_factory: SessionFactory) -> int:
    """Show configuration and token status."""
    print(f"Config home : {settings.home}")
    print(f"Account     : {settings.account}")

    try:
        session = session_factory(settings)
    except ConfigError as e:
        print(f"Client      : not configured ({e})")
        return EXIT_CONFIG

    print(f"Client      : {session.client.client_id[:40]}")
    info = session.token_info()

    if info["status"] == "no_token":
        print("Token       : none - run 'gmail login'")
        return EXIT_REAUTH

    print(f"Token       : {info['status']}")
    print(f"Scopes      : {', '.join(info.get('scopes', []))}")
    print(f"Expires in  : {info.get('expires_in', 'unknown')}")
    print(f"Refreshable : {'yes' if info['has_refresh_token'] else 'no'}")
    return EXIT_OK


def cmd_login(session: SessionManager, timeout: float | None = None) -> int:
    """Interactive OAuth login."""
    print("Opening browser for authentication...")
    credential = session.login(timeout=timeout)
    print(f"Login successful! Token saved for account '{session.account}'.")
    logger.debug(f"Granted scopes: {sorted(credential.scopes)}")
    return EXIT_OK


def cmd_logout(session: SessionManager) -> int:
    """Revoke and remove the stored token."""
    if session.logout():
        print("Token revoked and local cache cleared")
    else:
        print("Not logged in; nothing to do")
    return EXIT_OK


# --- Mail commands ---


def cmd_list(
    client: GmailClient,
    max_results: int = 100,
    query: str | None = None,
    label: str = "inbox",
    unread: bool = False,
) -> int:
    """List messages as 'id | from | subject'."""
    messages = client.list_messages(query=query, label=label, max_results=max_results, unread=unread)
    if not messages:
        print("No messages found.")
        return EXIT_OK

    for msg in messages:
        print(f"{msg.id} | {msg.sender or 'Unknown'} | {msg.subject or '(no subject)'}")
    return EXIT_OK


def cmd_read(client: GmailClient, message_id: str) -> int:
    """Print a message's headers and plain-text body."""
    msg = client.get_message(message_id)

    print(f"From: {msg.sender or 'Unknown'}")
    print(f"To: {msg.to or 'Unknown'}")
    print(f"Subject: {msg.subject or '(no subject)'}")
    print(f"Date: {msg.header('Date') or 'Unknown'}")
    print("---")
    print(msg.text)
    return EXIT_OK


def cmd_labels(client: GmailClient) -> int:
    labels = sorted(client.list_labels(), key=lambda label: (label.type != "system", label.name.lower()))
    for label in labels:
        print(f"{label.id:<24} {label.name}")
    return EXIT_OK


def cmd_unsubscribe(
    client: GmailClient,
    message_id: str,
    open_url: Callable[[str], bool] | None = None,
) -> int:
    """Open the message's List-Unsubscribe link in a browser."""
    open_url = open_url or webbrowser.open
    msg = client.get_message(message_id)
    header = msg.header("List-Unsubscribe")

    if not header:
        print("No unsubscribe header found in this message")
        return EXIT_OK

    url = msg.unsubscribe_url
    if url is None:
        print(f"No HTTP unsubscribe link found. Header: {header}")
        return EXIT_OK

    print("Opening unsubscribe link...")
    if not open_url(url):
        print(f"Could not open a browser. Visit:\n{url}")
    return EXIT_OK


def _message_action(client: GmailClient, command: str, args: argparse.Namespace) -> int:
    """Run a single-message modify command and print a confirmation."""
    message_id = args.id
    if command == "archive":
        client.archive(message_id)
        print(f"Archived {message_id}")
    elif command == "spam":
        client.mark_spam(message_id)
        print(f"Marked as spam {message_id}")
    elif command == "unspam":
        client.unspam(message_id)
        print(f"Moved to inbox {message_id}")
    elif command == "label":
        client.add_label(message_id, args.label)
        print(f"Added label {args.label} to {message_id}")
    elif command == "unlabel":
        client.remove_label(message_id, args.label)
        print(f"Removed label {args.label} from {message_id}")
    elif command == "delete":
        client.trash(message_id)
        print(f"Moved to trash {message_id}")
    return EXIT_OK


MESSAGE_ACTIONS = ("archive", "spam", "unspam", "label", "unlabel", "delete")


# --- Wiring ---


def _make_browser(no_browser: bool) -> Callable[[str], bool]:
    def open_browser(url: str) -> bool:
        print(f"Authorization URL:\n{url}\n")
        if no_browser:
            return True
        return webbrowser.open(url)

    return open_browser


def _make_client(session: SessionManager) -> GmailClient:
    from gmail_cli.gmail import GmailClient

    return GmailClient(session)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gmail", description="CLI tool to access the Gmail API")
    parser.add_argument(
        "--account",
        default=None,
        help="Account name for the stored token (default: default)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    config_parser = subparsers.add_parser(
        "config", help="Set OAuth client credentials (from Google Cloud Console)"
    )
    config_parser.add_argument("client_id", help="OAuth client ID")

    import_parser = subparsers.add_parser("import", help="Import OAuth credentials.json")
    import_parser.add_argument("path", help="Path to credentials.json file")

    login_parser = subparsers.add_parser("login", help="Authenticate with Gmail (opens browser)")
    login_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the browser callback (default: 120)",
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Don't open browser automatically",
    )

    subparsers.add_parser("logout", help="Revoke and delete the stored token")
    subparsers.add_parser("status", help="Show configuration and token status")

    list_parser = subparsers.add_parser("list", help="List messages")
    list_parser.add_argument(
        "-n", "--max", type=int, default=100, help="Maximum number of messages to show"
    )
    list_parser.add_argument("-q", "--query", default=None, help="Search query (Gmail search syntax)")
    list_parser.add_argument(
        "-l",
        "--label",
        default="inbox",
        help="Label to filter by (inbox, sent, trash, spam, starred, drafts, all, or a label name)",
    )
    list_parser.add_argument("-u", "--unread", action="store_true", help="Show only unread messages")

    read_parser = subparsers.add_parser("read", help="Read a specific message")
    read_parser.add_argument("id", help="Message ID")

    for name, help_text in (
        ("archive", "Archive a message (remove from inbox)"),
        ("spam", "Mark a message as spam"),
        ("unspam", "Remove from spam and move to inbox"),
        ("delete", "Move a message to trash"),
        ("unsubscribe", "Open a message's unsubscribe link"),
    ):
        action_parser = subparsers.add_parser(name, help=help_text)
        action_parser.add_argument("id", help="Message ID")

    label_parser = subparsers.add_parser("label", help="Add a label to a message")
    label_parser.add_argument("id", help="Message ID")
    label_parser.add_argument("label", help="Label to add")

    unlabel_parser = subparsers.add_parser("unlabel", help="Remove a label from a message")
    unlabel_parser.add_argument("id", help="Message ID")
    unlabel_parser.add_argument("label", help="Label to remove")

    subparsers.add_parser("labels", help="List labels")

    return parser


def run(
    args: argparse.Namespace,
    settings: Settings,
    session_factory: SessionFactory = SessionManager.from_settings,
    client_factory: Callable[[SessionManager], GmailClient] = _make_client,
) -> int:
    """Dispatch a parsed command. Errors propagate to the caller."""
    command = args.command

    if command == "config":
        return cmd_config(settings, args.client_id)
    if command == "import":
        return cmd_import(settings, args.path)
    if command == "status":
        return cmd_status(settings, session_factory)

    if command == "login":
        session = session_factory(settings, browser=_make_browser(args.no_browser))
        return cmd_login(session, timeout=args.timeout)

    session = session_factory(settings)
    if command == "logout":
        return cmd_logout(session)

    client = client_factory(session)
    if command == "list":
        return cmd_list(client, args.max, args.query, args.label, args.unread)
    if command == "read":
        return cmd_read(client, args.id)
    if command == "labels":
        return cmd_labels(client)
    if command == "unsubscribe":
        return cmd_unsubscribe(client, args.id)
    if command in MESSAGE_ACTIONS:
        return _message_action(client, command, args)

    raise ValueError(f"Unknown command: {command}")


def main(
    argv: list[str] | None = None,
    session_factory: SessionFactory = SessionManager.from_settings,
    client_factory: Callable[[SessionManager], GmailClient] = _make_client,
) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    try:
        settings = load_settings(account=args.account)
        return run(args, settings, session_factory, client_factory)
    except ReauthRequired as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_REAUTH
    except AuthError as e:
        print(f"Authorization failed: {e}", file=sys.stderr)
        return EXIT_AUTH
    except NotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except NetworkError as e:
        print(f"Network error: {e}", file=sys.stderr)
        return EXIT_NETWORK
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'gmail config <client-id>' or 'gmail import <credentials.json>' first", file=sys.stderr)
        return EXIT_CONFIG
    except (ApiError, GmailCliError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nAborted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
