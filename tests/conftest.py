"""Pytest configuration and shared fixtures."""

import base64
import fcntl
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest

from gmail_cli.config import ClientConfig
from gmail_cli.exceptions import AuthError
from gmail_cli.google import CallbackReceiver, Credential, SessionManager, TokenStore
from gmail_cli.google.session import SCOPES

GMAIL_SCOPE = SCOPES["gmail"]


class FakeAuthorizationServer(CallbackReceiver):
    """Stands in for both the browser and the loopback callback server.

    ``open_browser`` records the authorization URL; ``wait_for_redirect``
    answers the way Google would for the configured outcome.
    """

    def __init__(self, outcome: str = "approve", code: str = "auth-code"):
        self.outcome = outcome
        self.code = code
        self.authorization_url: str | None = None
        self.timeout: float | None = None
        self.closed = False

    @property
    def redirect_uri(self) -> str:
        return "http://127.0.0.1:8765/"

    def open_browser(self, url: str) -> bool:
        self.authorization_url = url
        return True

    @property
    def authorization_params(self) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(urlsplit(self.authorization_url).query).items()}

    def wait_for_redirect(self, timeout: float) -> str:
        self.timeout = timeout
        if self.outcome == "timeout":
            raise AuthError(f"Timed out after {timeout:g}s waiting for the OAuth callback")

        state = self.authorization_params["state"]
        if self.outcome == "deny":
            return f"{self.redirect_uri}?error=access_denied&state={state}"
        if self.outcome == "bad_state":
            state = "forged-state"
        return f"{self.redirect_uri}?code={self.code}&state={state}"

    def close(self) -> None:
        self.closed = True


def make_credential(expires_in: timedelta = timedelta(hours=1), **overrides) -> Credential:
    """Build a Credential expiring ``expires_in`` from now."""
    values = {
        "access_token": "stored-access-token",
        "refresh_token": "stored-refresh-token",
        "expiry": datetime.now(timezone.utc) + expires_in,
        "scopes": frozenset([GMAIL_SCOPE]),
    }
    values.update(overrides)
    return Credential(**values)


def token_response(access_token: str = "new-access-token", refresh_token: str | None = None, **extra) -> dict:
    """Token endpoint response as returned by OAuth2Session."""
    token = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": 3599,
        "scope": GMAIL_SCOPE,
    }
    if refresh_token:
        token["refresh_token"] = refresh_token
    token.update(extra)
    return token


def lock_is_free(store: TokenStore) -> bool:
    """Try a non-blocking exclusive lock on the store's lock file from a separate handle."""
    with open(store.path.with_suffix(".lock")) as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return True


def encode_body(text: str) -> str:
    """Encode text the way Gmail does (base64url, no padding)."""
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


@pytest.fixture
def client_config():
    return ClientConfig("test-client-id.apps.googleusercontent.com", "test-client-secret")


@pytest.fixture
def token_store(tmp_path, client_config):
    return TokenStore(tmp_path / "tokens" / "default.json", client_id=client_config.client_id)


@pytest.fixture
def auth_server():
    return FakeAuthorizationServer()


@pytest.fixture
def session(client_config, token_store, auth_server):
    """SessionManager wired to the fake authorization server."""
    return SessionManager(
        client=client_config,
        store=token_store,
        receiver_factory=lambda: auth_server,
        browser=auth_server.open_browser,
        login_timeout=5,
    )


@pytest.fixture
def sample_message() -> dict:
    """A messages.get (format=full) response."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "Weekly Newsletter - Python Tips",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "newsletter@python.org"},
                {"name": "To", "value": "user@example.com"},
                {"name": "Date", "value": "Mon, 06 Jan 2025 10:30:00 +0000"},
                {
                    "name": "List-Unsubscribe",
                    "value": "<mailto:unsub@python.org>, <https://python.org/unsubscribe?id=123>",
                },
            ],
            "body": {"size": 0},
            "parts": [
                {"mimeType": "text/html", "body": {"data": encode_body("<p>Hello HTML</p>")}},
                {"mimeType": "text/plain", "body": {"data": encode_body("Welcome to this week's tips!")}},
            ],
        },
    }


@pytest.fixture
def gmail_service(sample_message):
    """A MagicMock shaped like googleapiclient's Gmail service."""
    service = MagicMock()
    messages = service.users.return_value.messages.return_value
    messages.list.return_value.execute.return_value = {"messages": [{"id": "msg123456"}]}
    messages.get.return_value.execute.return_value = sample_message
    messages.modify.return_value.execute.return_value = {"id": "msg123456"}
    messages.trash.return_value.execute.return_value = {"id": "msg123456"}
    service.users.return_value.labels.return_value.list.return_value.execute.return_value = {
        "labels": [
            {"id": "INBOX", "name": "INBOX", "type": "system"},
            {"id": "Label_42", "name": "Receipts", "type": "user"},
        ]
    }
    return service
