"""Credential model and locked on-disk token storage.

Tokens are stored in Google's "authorized user" JSON layout so the file can
also be read by ``google.oauth2.credentials.Credentials.from_authorized_user_file``.
The client secret is never written to the token file.
"""

from __future__ import annotations

import fcntl
import json
import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"

# Treat tokens as expired slightly early so a request never races the expiry.
EXPIRY_SKEW = timedelta(seconds=60)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """An OAuth credential for one account."""

    access_token: str
    refresh_token: str
    expiry: datetime
    scopes: frozenset[str] = field(default_factory=frozenset)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the access token is expired (or about to be)."""
        now = now or utcnow()
        return now >= self.expiry - EXPIRY_SKEW

    def expires_in(self, now: datetime | None = None) -> timedelta:
        now = now or utcnow()
        return max(self.expiry - now, timedelta(0))

    @classmethod
    def from_token_response(
        cls,
        token: dict[str, Any],
        previous: Credential | None = None,
        now: datetime | None = None,
    ) -> Credential:
        """Build a Credential from an OAuth token endpoint response.

        Missing refresh_token or scope fall back to ``previous`` so that a
        refresh without rotation keeps the stored values.
        """
        now = now or utcnow()

        if token.get("expires_at"):
            expiry = datetime.fromtimestamp(float(token["expires_at"]), tz=timezone.utc)
        else:
            expiry = now + timedelta(seconds=int(token.get("expires_in", 3600)))

        refresh_token = token.get("refresh_token") or (previous.refresh_token if previous else "")
        if token.get("scope"):
            scopes = frozenset(token["scope"].split())
        else:
            scopes = previous.scopes if previous else frozenset()

        return cls(
            access_token=token["access_token"],
            refresh_token=refresh_token,
            expiry=expiry,
            scopes=scopes,
        )

    def to_dict(self, client_id: str | None = None) -> dict[str, Any]:
        """Serialize to Google's authorized-user token format."""
        return {
            "token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_uri": TOKEN_URI,
            "client_id": client_id,
            "scopes": sorted(self.scopes),
            "type": "Bearer",
            "expiry": self.expiry.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        """Parse a stored token.

        Raises:
            ValueError: If required fields are missing or malformed.
        """
        access_token = data.get("token") or data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise ValueError("token file is missing token or refresh_token")

        expiry_raw = data.get("expiry")
        if isinstance(expiry_raw, str):
            expiry = datetime.fromisoformat(expiry_raw.replace("Z", "+00:00"))
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
        elif isinstance(expiry_raw, (int, float)):
            expiry = datetime.fromtimestamp(expiry_raw, tz=timezone.utc)
        else:
            # Unknown expiry: force a refresh on first use
            expiry = datetime.fromtimestamp(0, tz=timezone.utc)

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=expiry,
            scopes=frozenset(data.get("scopes") or []),
        )


class TokenStore:
    """File-backed storage for a single account's Credential.

    Every write replaces the whole file, so at most one Credential exists per
    token path. ``lock()`` serializes read-modify-write cycles across
    processes with an exclusive flock on a sibling ``.lock`` file.
    """

    def __init__(self, path: str | Path, client_id: str | None = None):
        self.path = Path(path).expanduser()
        self.client_id = client_id
        self._lock_file = self.path.with_suffix(".lock")

    @contextmanager
    def lock(self):
        """Acquire an exclusive file lock for the token file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock_file.touch(mode=0o600, exist_ok=True)
        with open(self._lock_file, "r") as lock_handle:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Credential | None:
        """Load the stored Credential, or None if absent or unreadable."""
        if not self.path.exists():
            logger.info("No existing token found")
            return None

        try:
            with open(self.path) as f:
                data = json.load(f)
            credential = Credential.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable token file {self.path}: {e}")
            return None

        logger.debug(f"Loaded token with scopes: {sorted(credential.scopes)}")
        return credential

    def save(self, credential: Credential) -> None:
        """Persist the Credential, replacing any existing one."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.unlink(missing_ok=True)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(credential.to_dict(self.client_id), f, indent=2)
        tmp_path.replace(self.path)
        logger.info(f"Token saved to {self.path}")

    def delete(self) -> bool:
        """Remove the token file. Returns False if there was nothing to remove."""
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info(f"Token file removed: {self.path}")
        return True
