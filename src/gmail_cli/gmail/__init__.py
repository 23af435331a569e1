"""Gmail API client.

Thin wrapper over the Gmail REST API (messages list/get/modify/trash and
labels). Authentication comes from a SessionManager, which refreshes the
access token as needed.

Usage:
    from gmail_cli.config import load_settings
    from gmail_cli.gmail import GmailClient
    from gmail_cli.google import SessionManager

    session = SessionManager.from_settings(load_settings())
    client = GmailClient(session)

    for msg in client.list_messages(unread=True, max_results=20):
        print(msg.id, msg.sender, msg.subject)

    msg = client.get_message(msg.id)
    print(msg.text)
"""

from __future__ import annotations

from gmail_cli.gmail.client import (
    LABEL_ALIASES,
    GmailClient,
    GmailMessage,
    Label,
    find_unsubscribe_url,
)

__all__ = ["GmailClient", "GmailMessage", "Label", "LABEL_ALIASES", "find_unsubscribe_url"]
