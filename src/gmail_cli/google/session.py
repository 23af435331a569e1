"""Google OAuth session management using Authlib.

The SessionManager owns the credential lifecycle for one account:
- Interactive authorization-code login with PKCE and a loopback redirect
- Token storage under an exclusive file lock
- Automatic refresh of expired access tokens, with refresh-token rotation
- Revocation and local cleanup on logout

Everything else in the CLI asks it for one thing: a currently valid
bearer token (``get_valid_token``).
"""

from __future__ import annotations

import enum
import logging
import secrets
import webbrowser
from collections.abc import Callable
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.common.security import generate_token
from authlib.integrations.requests_client import OAuth2Session

from gmail_cli.config import ClientConfig, Settings
from gmail_cli.exceptions import AuthError, NetworkError, ReauthRequired
from gmail_cli.google.callback import CallbackReceiver, LoopbackCallbackServer
from gmail_cli.google.store import Credential, TokenStore, utcnow

logger = logging.getLogger(__name__)


# Common Google OAuth scopes
SCOPES = {
    "gmail": "https://www.googleapis.com/auth/gmail.modify",
    "gmail_readonly": "https://www.googleapis.com/auth/gmail.readonly",
    "gmail_labels": "https://www.googleapis.com/auth/gmail.labels",
}

HTTP_TIMEOUT = 30


class SessionState(enum.Enum):
    """Where the session is in its credential lifecycle."""

    LOGGED_OUT = "logged_out"
    AUTHORIZING = "authorizing"
    LOGGED_IN = "logged_in"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth_required"


def resolve_scopes(scopes: list[str]) -> list[str]:
    """Resolve scope names to full URLs."""
    resolved = []
    for scope in scopes:
        if scope.startswith("https://"):
            resolved.append(scope)
        elif scope in SCOPES:
            resolved.append(SCOPES[scope])
        else:
            raise ValueError(f"Unknown scope: {scope}. Use full URL or one of: {list(SCOPES.keys())}")
    return resolved


class SessionManager:
    """OAuth credential lifecycle for a single Gmail account.

    Example:
        >>> settings = load_settings()
        >>> session = SessionManager.from_settings(settings)
        >>> session.login()
        >>> token = session.get_valid_token()

    Args:
        client: OAuth client id/secret.
        store: Token storage for this account.
        scopes: Scope names (e.g., ["gmail"]) or full URLs.
        receiver_factory: Creates the redirect receiver for a login attempt.
        browser: Called with the authorization URL. Returns False if no
            browser could be opened.
        login_timeout: Default seconds to wait for the OAuth callback.
    """

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    REVOKE_URL = "https://oauth2.googleapis.com/revoke"

    def __init__(
        self,
        client: ClientConfig,
        store: TokenStore,
        scopes: list[str] | None = None,
        receiver_factory: Callable[[], CallbackReceiver] = LoopbackCallbackServer,
        browser: Callable[[str], bool] = webbrowser.open,
        login_timeout: float = 120.0,
        account: str = "default",
    ):
        self.client = client
        self.store = store
        self.required_scopes = resolve_scopes(scopes or ["gmail"])
        self.receiver_factory = receiver_factory
        self.browser = browser
        self.login_timeout = login_timeout
        self.account = account

        self.last_refresh: datetime | None = None
        self.refresh_count = 0
        self.state = SessionState.LOGGED_IN if store.exists() else SessionState.LOGGED_OUT

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> SessionManager:
        """Build a SessionManager from resolved CLI settings."""
        client = settings.load_client_config()
        return cls(
            client=client,
            store=TokenStore(settings.token_path, client_id=client.client_id),
            scopes=settings.scopes,
            login_timeout=settings.login_timeout,
            account=settings.account,
            **kwargs,
        )

    def _oauth_session(self, redirect_uri: str | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=self.client.client_id,
            client_secret=self.client.client_secret,
            scope=" ".join(self.required_scopes),
            redirect_uri=redirect_uri,
            token_endpoint_auth_method="client_secret_post",
            code_challenge_method="S256",
        )

    # --- Login ---

    def login(self, timeout: float | None = None) -> Credential:
        """Run the interactive authorization-code flow and persist the result.

        Opens the browser on Google's consent page and blocks until the
        redirect reaches the local receiver. Any existing credential for the
        account is replaced.

        Args:
            timeout: Seconds to wait for the callback. Defaults to login_timeout.

        Returns:
            The new Credential.

        Raises:
            AuthError: If the callback listener cannot start, consent is denied,
                the callback times out, the state does not match, or the code
                exchange fails.
        """
        timeout = self.login_timeout if timeout is None else timeout
        self.state = SessionState.AUTHORIZING

        try:
            receiver = self.receiver_factory()
        except OSError as e:
            self.state = self._state_from_store()
            raise AuthError(f"Could not start the local callback listener: {e}") from e

        try:
            with receiver:
                session = self._oauth_session(redirect_uri=receiver.redirect_uri)
                code_verifier = generate_token(64)
                url, state = session.create_authorization_url(
                    self.AUTHORIZE_URL,
                    state=secrets.token_urlsafe(24),
                    code_verifier=code_verifier,
                    access_type="offline",
                    prompt="consent",
                )

                if not self.browser(url):
                    logger.warning("Could not open a browser; visit the authorization URL manually")

                redirect_url = receiver.wait_for_redirect(timeout)
                code = self._parse_redirect(redirect_url, state)
                credential = self._exchange_code(session, code, code_verifier)
        except AuthError:
            self.state = self._state_from_store()
            raise

        with self.store.lock():
            self.store.save(credential)

        self.state = SessionState.LOGGED_IN
        logger.info(f"Logged in account '{self.account}' with scopes: {sorted(credential.scopes)}")
        return credential

    def _parse_redirect(self, redirect_url: str, expected_state: str) -> str:
        """Validate the redirect and return the authorization code."""
        params = {k: v[0] for k, v in parse_qs(urlsplit(redirect_url).query).items()}

        if "error" in params:
            description = params.get("error_description", "")
            if params["error"] == "access_denied":
                raise AuthError("Authorization was denied by the user")
            raise AuthError(f"Authorization failed: {params['error']} {description}".strip())

        if params.get("state") != expected_state:
            raise AuthError("OAuth state mismatch; possible CSRF, aborting login")

        code = params.get("code")
        if not code:
            raise AuthError("No authorization code in OAuth callback")
        return code

    def _exchange_code(self, session: OAuth2Session, code: str, code_verifier: str) -> Credential:
        try:
            token = session.fetch_token(
                self.TOKEN_URL,
                grant_type="authorization_code",
                code=code,
                code_verifier=code_verifier,
                timeout=HTTP_TIMEOUT,
            )
        except AuthlibBaseError as e:
            raise AuthError(f"Failed to exchange code for token: {e}") from e
        except requests.RequestException as e:
            raise AuthError(f"Failed to reach token endpoint: {e}") from e

        if not token.get("refresh_token"):
            raise AuthError("No refresh token received; revoke the app's access and log in again")

        credential = Credential.from_token_response(token)
        missing = set(self.required_scopes) - credential.scopes
        if credential.scopes and missing:
            raise AuthError(f"Granted token is missing required scopes: {sorted(missing)}")
        return credential

    # --- Tokens ---

    def get_valid_token(self) -> str:
        """Return an access token that has not expired.

        Refreshes the stored credential first if its access token has
        expired. The lock is held across load, refresh and save so two
        invocations never race on a rotating refresh token.

        Raises:
            ReauthRequired: If there is no credential or the refresh token
                was rejected.
            NetworkError: If the token endpoint could not be reached.
        """
        with self.store.lock():
            credential = self._load_or_reauth()
            if not credential.is_expired():
                self.state = SessionState.LOGGED_IN
                return credential.access_token

            logger.info("Token expired, refreshing...")
            return self._refresh(credential).access_token

    def force_refresh(self) -> str:
        """Refresh the access token regardless of its recorded expiry.

        Used when the API rejects a token that still looked valid.
        """
        with self.store.lock():
            credential = self._load_or_reauth()
            return self._refresh(credential).access_token

    def _load_or_reauth(self) -> Credential:
        credential = self.store.load()
        if credential is None:
            self.state = SessionState.LOGGED_OUT
            raise ReauthRequired()

        missing = set(self.required_scopes) - credential.scopes
        if credential.scopes and missing:
            self.state = SessionState.REAUTH_REQUIRED
            raise ReauthRequired(f"Token missing required scopes {sorted(missing)}. Run 'gmail login' again.")
        return credential

    def _refresh(self, credential: Credential) -> Credential:
        """Exchange the refresh token for a new access token and persist it."""
        self.state = SessionState.REFRESHING
        session = self._oauth_session()

        try:
            token = session.refresh_token(
                self.TOKEN_URL,
                refresh_token=credential.refresh_token,
                timeout=HTTP_TIMEOUT,
            )
        except AuthlibBaseError as e:
            self.state = SessionState.REAUTH_REQUIRED
            logger.warning(f"Token refresh rejected: {e}")
            raise ReauthRequired(
                "Stored refresh token was rejected (revoked or expired). Run 'gmail login' again."
            ) from e
        except requests.RequestException as e:
            self.state = SessionState.LOGGED_IN
            raise NetworkError(f"Failed to reach token endpoint: {e}") from e

        refreshed = Credential.from_token_response(dict(token), previous=credential)
        if refreshed.refresh_token != credential.refresh_token:
            logger.info("Refresh token was rotated")

        self.store.save(refreshed)
        self.last_refresh = utcnow()
        self.refresh_count += 1
        self.state = SessionState.LOGGED_IN
        return refreshed

    # --- Logout ---

    def logout(self) -> bool:
        """Revoke the stored credential and delete it.

        Returns:
            True if a credential was removed, False if there was none.
        """
        with self.store.lock():
            credential = self.store.load()
            if credential is not None:
                self._revoke(credential)
            removed = self.store.delete()

        self.state = SessionState.LOGGED_OUT
        if not removed:
            logger.info("No token to revoke")
        return removed

    def _revoke(self, credential: Credential) -> None:
        # Revoking the refresh token also invalidates its access tokens
        session = self._oauth_session()
        try:
            resp = session.post(
                self.REVOKE_URL,
                data={"token": credential.refresh_token},
                withhold_token=True,
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.warning(f"Failed to revoke token remotely: {e}")
            return

        if resp.status_code != 200:
            logger.warning(f"Token revocation returned HTTP {resp.status_code}")
        else:
            logger.info("Token revoked remotely")

    # --- Inspection ---

    def _state_from_store(self) -> SessionState:
        return SessionState.LOGGED_IN if self.store.exists() else SessionState.LOGGED_OUT

    def token_info(self) -> dict[str, Any]:
        """Get information about the stored token.

        Returns:
            Dictionary with token status, scopes, expiry, etc.
        """
        with self.store.lock():
            credential = self.store.load()

        if credential is None:
            return {"status": "no_token", "account": self.account}

        return {
            "status": "expired" if credential.is_expired() else "valid",
            "account": self.account,
            "scopes": sorted(credential.scopes),
            "expires_in": str(credential.expires_in()).split(".")[0],
            "has_refresh_token": bool(credential.refresh_token),
            "refresh_count": self.refresh_count,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
        }
