"""Gmail API client implementation."""

from __future__ import annotations

import base64
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials as GoogleCredentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from gmail_cli.exceptions import ApiError, NetworkError, NotFound, ReauthRequired
from gmail_cli.google.session import SessionManager

logger = logging.getLogger(__name__)

# CLI names for Gmail system labels. "all" means no label filter.
LABEL_ALIASES: dict[str, str | None] = {
    "inbox": "INBOX",
    "sent": "SENT",
    "trash": "TRASH",
    "spam": "SPAM",
    "starred": "STARRED",
    "drafts": "DRAFT",
    "unread": "UNREAD",
    "important": "IMPORTANT",
    "all": None,
}

LIST_HEADERS = ["From", "To", "Subject", "Date"]
MAX_PAGE_SIZE = 500
HTTP_TIMEOUT = 30


@dataclass
class GmailMessage:
    """Represents a Gmail message."""

    id: str
    thread_id: str
    subject: str
    sender: str
    to: str
    date: datetime | None
    snippet: str
    body: str
    labels: list[str] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Get a header value by case-insensitive name."""
        return self.headers.get(name.lower())

    @property
    def text(self) -> str:
        """Plain-text body, falling back to the snippet."""
        return self.body or self.snippet

    @property
    def unsubscribe_url(self) -> str | None:
        """First HTTP(S) link from the List-Unsubscribe header."""
        return find_unsubscribe_url(self.header("List-Unsubscribe"))


@dataclass
class Label:
    """A Gmail label."""

    id: str
    name: str
    type: str | None = None


def find_unsubscribe_url(header: str | None) -> str | None:
    """Extract the first http(s) URL from a List-Unsubscribe header.

    The header is a comma-separated list of ``<uri>`` entries, for example
    ``<mailto:unsub@example.com>, <https://example.com/unsub?id=1>``.
    """
    if not header:
        return None
    for part in header.split(","):
        candidate = part.strip().strip("<>").strip()
        if candidate.lower().startswith(("http://", "https://")):
            return candidate
    return None


def decode_body_data(data: str) -> str:
    """Decode Gmail's base64url body data (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_text_body(payload: dict) -> str:
    """Return the first text/plain body in a message payload, or ''."""
    data = payload.get("body", {}).get("data")
    if data and payload.get("mimeType", "text/plain") == "text/plain":
        return decode_body_data(data)

    for part in payload.get("parts", []):
        if part.get("mimeType") == "text/plain" and part.get("body", {}).get("data"):
            return decode_body_data(part["body"]["data"])
        if "parts" in part:
            text = extract_text_body({"parts": part["parts"]})
            if text:
                return text
    return ""


def parse_message(msg: dict[str, Any]) -> GmailMessage:
    """Build a GmailMessage from a messages.get response."""
    payload = msg.get("payload", {})
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

    msg_date = None
    if headers.get("date"):
        with contextlib.suppress(TypeError, ValueError):
            msg_date = parsedate_to_datetime(headers["date"])

    return GmailMessage(
        id=msg["id"],
        thread_id=msg.get("threadId", ""),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        to=headers.get("to", ""),
        date=msg_date,
        snippet=msg.get("snippet", ""),
        body=extract_text_body(payload),
        labels=msg.get("labelIds", []),
        headers=headers,
    )


class GmailClient:
    """Gmail API client backed by a SessionManager.

    Every request asks the session for a valid token first, so a missing or
    revoked credential fails with ReauthRequired before any Gmail call. If
    Gmail rejects a token with 401 the client refreshes once and retries.

    Usage:
        client = GmailClient(session)

        for msg in client.list_messages(unread=True):
            print(msg.id, msg.sender, msg.subject)

        client.archive("18c1f0e2ab34cd56")
    """

    def __init__(
        self,
        session: SessionManager,
        user: str = "me",
        service_factory: Callable[..., Any] = build,
        http_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._session = session
        self._user = user
        self._service_factory = service_factory
        self._http_factory = http_factory or (lambda: httplib2.Http(timeout=HTTP_TIMEOUT))
        self._service: Any = None
        self._token: str | None = None
        self._labels: list[Label] | None = None

    def _get_service(self, force_refresh: bool = False) -> Any:
        """Get a Gmail service bound to a currently valid token."""
        token = self._session.force_refresh() if force_refresh else self._session.get_valid_token()
        if self._service is None or token != self._token:
            # The session owns refresh; a 401 must reach _execute as an HttpError
            http = AuthorizedHttp(
                GoogleCredentials(token=token),
                http=self._http_factory(),
                refresh_status_codes=(),
            )
            self._service = self._service_factory("gmail", "v1", http=http, cache_discovery=False)
            self._token = token
        return self._service

    def _execute(self, make_request: Callable[[Any], Any], not_found: str | None = None) -> Any:
        """Execute a request, mapping errors and retrying once on 401."""
        for attempt in range(2):
            service = self._get_service(force_refresh=attempt > 0)
            try:
                return make_request(service).execute()
            except HttpError as e:
                if e.resp.status == 401 and attempt == 0:
                    logger.info("Access token rejected by Gmail, refreshing once")
                    continue
                raise _to_api_error(e, not_found) from e
            except RefreshError as e:
                raise ReauthRequired(
                    f"Access token could not be refreshed: {e}. Run 'gmail login' again."
                ) from e
            except (TransportError, httplib2.HttpLib2Error, OSError) as e:
                raise NetworkError(f"Failed to reach Gmail: {e}") from e

    # --- Messages ---

    def list_messages(
        self,
        query: str | None = None,
        label: str | None = "inbox",
        max_results: int = 100,
        unread: bool = False,
    ) -> list[GmailMessage]:
        """List messages with From/To/Subject/Date headers.

        Args:
            query: Gmail search query (e.g., "from:user@example.com").
            label: Label alias, name or id to filter by. "all" or None for no filter.
            max_results: Maximum number of messages to return.
            unread: Only unread messages.

        Returns:
            Messages in Gmail's order (newest first). Bodies are not fetched.
        """
        if unread:
            query = f"is:unread {query}" if query else "is:unread"
        label_id = self.resolve_label_id(label) if label else None

        refs: list[dict] = []
        page_token = None
        while len(refs) < max_results:
            params: dict[str, Any] = {
                "userId": self._user,
                "maxResults": min(max_results - len(refs), MAX_PAGE_SIZE),
            }
            if label_id:
                params["labelIds"] = [label_id]
            if query:
                params["q"] = query
            if page_token:
                params["pageToken"] = page_token

            results = self._execute(lambda s, p=params: s.users().messages().list(**p))
            refs.extend(results.get("messages", []))
            page_token = results.get("nextPageToken")
            if not page_token:
                break

        return [self._fetch(ref["id"], "metadata") for ref in refs[:max_results]]

    def get_message(self, message_id: str) -> GmailMessage:
        """Get a single message with its plain-text body.

        Raises:
            NotFound: If the message does not exist.
        """
        return self._fetch(message_id, "full")

    def _fetch(self, message_id: str, format_type: str) -> GmailMessage:
        params: dict[str, Any] = {"userId": self._user, "id": message_id, "format": format_type}
        if format_type == "metadata":
            params["metadataHeaders"] = LIST_HEADERS
        msg = self._execute(
            lambda s: s.users().messages().get(**params),
            not_found=f"message {message_id}",
        )
        return parse_message(msg)

    def modify_labels(
        self,
        message_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> None:
        """Add and remove label ids on a message."""
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        self._execute(
            lambda s: s.users().messages().modify(userId=self._user, id=message_id, body=body),
            not_found=f"message {message_id}",
        )
        logger.debug(f"Modified labels on {message_id}: +{body['addLabelIds']} -{body['removeLabelIds']}")

    def archive(self, message_id: str) -> None:
        """Remove a message from the inbox."""
        self.modify_labels(message_id, remove=["INBOX"])

    def mark_spam(self, message_id: str) -> None:
        self.modify_labels(message_id, add=["SPAM"], remove=["INBOX"])

    def unspam(self, message_id: str) -> None:
        """Move a message out of spam and back to the inbox."""
        self.modify_labels(message_id, add=["INBOX"], remove=["SPAM"])

    def add_label(self, message_id: str, label: str) -> str:
        """Add a label by alias, name or id. Returns the resolved label id."""
        label_id = self._require_label_id(label)
        self.modify_labels(message_id, add=[label_id])
        return label_id

    def remove_label(self, message_id: str, label: str) -> str:
        """Remove a label by alias, name or id. Returns the resolved label id."""
        label_id = self._require_label_id(label)
        self.modify_labels(message_id, remove=[label_id])
        return label_id

    def trash(self, message_id: str) -> None:
        """Move a message to the trash."""
        self._execute(
            lambda s: s.users().messages().trash(userId=self._user, id=message_id),
            not_found=f"message {message_id}",
        )

    def unsubscribe_url(self, message_id: str) -> str | None:
        """Get the HTTP unsubscribe link advertised by a message, if any."""
        return self.get_message(message_id).unsubscribe_url

    # --- Labels ---

    def list_labels(self) -> list[Label]:
        """List all Gmail labels (system and user)."""
        if self._labels is None:
            results = self._execute(lambda s: s.users().labels().list(userId=self._user))
            self._labels = [
                Label(id=label["id"], name=label["name"], type=label.get("type"))
                for label in results.get("labels", [])
            ]
        return self._labels

    def resolve_label_id(self, label: str) -> str | None:
        """Resolve a CLI label to a Gmail label id.

        Aliases (inbox, sent, spam, ...) map to system labels without an API
        call; "all" resolves to None. Anything else is matched against the
        account's labels by id or name, case-insensitively.

        Raises:
            NotFound: If no label matches.
        """
        key = label.strip().lower()
        if key in LABEL_ALIASES:
            return LABEL_ALIASES[key]

        for known in self.list_labels():
            if known.id.lower() == key or known.name.lower() == key:
                return known.id
        raise NotFound(f"label {label}")

    def _require_label_id(self, label: str) -> str:
        label_id = self.resolve_label_id(label)
        if label_id is None:
            raise ValueError(f"'{label}' is not a label that can be applied to a message")
        return label_id


def _to_api_error(error: HttpError, not_found: str | None) -> ApiError:
    """Map a googleapiclient HttpError to ApiError/NotFound."""
    status = error.resp.status
    reason = _error_reason(error)
    message = getattr(error, "reason", None) or str(error)

    if not_found and (status == 404 or (status == 400 and "invalid id" in message.lower())):
        return NotFound(not_found, status_code=status)
    return ApiError(f"Gmail API error (HTTP {status}): {message}", status_code=status, reason=reason)


def _error_reason(error: HttpError) -> str | None:
    """Pull Google's machine-readable error reason out of the response body."""
    try:
        content = json.loads(error.content.decode("utf-8"))
        return content["error"]["errors"][0]["reason"]
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        return None
