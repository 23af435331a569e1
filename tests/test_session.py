"""Tests for the OAuth SessionManager."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from conftest import GMAIL_SCOPE, FakeAuthorizationServer, lock_is_free, make_credential, token_response

from gmail_cli.config import ClientConfig, load_settings
from gmail_cli.exceptions import AuthError, CredentialsNotFoundError, NetworkError, ReauthRequired
from gmail_cli.google import SessionManager, SessionState
from gmail_cli.google.session import SCOPES, resolve_scopes


def fresh_token(access_token="login-access-token", refresh_token="login-refresh-token"):
    return token_response(access_token=access_token, refresh_token=refresh_token)


class TestSessionBasics:
    """Test scope resolution and construction."""

    def test_scope_resolution(self):
        """Should resolve scope names to URLs."""
        assert resolve_scopes(["gmail", "gmail_readonly"]) == [SCOPES["gmail"], SCOPES["gmail_readonly"]]

    def test_unknown_scope_raises(self):
        """Should reject unknown scope names."""
        with pytest.raises(ValueError, match="Unknown scope"):
            resolve_scopes(["unknown_scope"])

    def test_full_url_scopes_accepted(self):
        """Should pass full scope URLs through unchanged."""
        url = "https://www.googleapis.com/auth/gmail.send"
        assert resolve_scopes([url]) == [url]

    def test_from_settings_requires_client(self, tmp_path, monkeypatch):
        """Should raise CredentialsNotFoundError without a client config."""
        monkeypatch.delenv("GMAIL_CLI_CLIENT_ID", raising=False)
        monkeypatch.delenv("GMAIL_CLI_CLIENT_SECRET", raising=False)
        settings = load_settings(home=tmp_path)
        with pytest.raises(CredentialsNotFoundError):
            SessionManager.from_settings(settings)

    def test_from_settings_uses_account_token_path(self, tmp_path, monkeypatch):
        """Should store tokens under the account's file."""
        monkeypatch.setenv("GMAIL_CLI_CLIENT_ID", "cid")
        monkeypatch.setenv("GMAIL_CLI_CLIENT_SECRET", "secret")
        session = SessionManager.from_settings(load_settings(home=tmp_path, account="work"))
        assert session.store.path == tmp_path / "tokens" / "work.json"
        assert session.client == ClientConfig("cid", "secret")

    def test_initial_state(self, session, token_store):
        """Should start logged in only when a token is stored."""
        assert session.state is SessionState.LOGGED_OUT
        token_store.save(make_credential())
        restored = SessionManager(session.client, token_store)
        assert restored.state is SessionState.LOGGED_IN


class TestLogin:
    """Test the interactive authorization-code flow."""

    def test_login_persists_credential(self, session, auth_server, token_store):
        """Should save the exchanged credential and mark the session logged in."""
        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token()) as fetch:
            credential = session.login()

        assert credential.access_token == "login-access-token"
        assert token_store.load().refresh_token == "login-refresh-token"
        assert session.state is SessionState.LOGGED_IN
        assert auth_server.closed is True

        kwargs = fetch.call_args.kwargs
        assert kwargs["grant_type"] == "authorization_code"
        assert kwargs["code"] == "auth-code"
        assert kwargs["code_verifier"]

    def test_authorization_url(self, session, auth_server):
        """Should request offline access with PKCE and a state."""
        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token()):
            session.login()

        assert auth_server.authorization_url.startswith(SessionManager.AUTHORIZE_URL)
        params = auth_server.authorization_params
        assert params["client_id"] == session.client.client_id
        assert params["redirect_uri"] == auth_server.redirect_uri
        assert params["scope"] == GMAIL_SCOPE
        assert params["access_type"] == "offline"
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"]

    def test_login_uses_default_timeout(self, session, auth_server):
        """Should wait for the callback using the configured timeout."""
        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token()):
            session.login()
        assert auth_server.timeout == 5

        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token()):
            session.login(timeout=30)
        assert auth_server.timeout == 30

    def test_login_twice_replaces_credential(self, session, token_store):
        """Should replace the stored credential on a second login."""
        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token("first", "r-first")):
            session.login()
        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token("second", "r-second")):
            session.login()

        assert token_store.load().access_token == "second"
        assert token_store.load().refresh_token == "r-second"
        assert list(token_store.path.parent.glob("*.json")) == [token_store.path]

    @pytest.mark.parametrize(
        "outcome, message",
        [
            ("deny", "denied"),
            ("timeout", "Timed out"),
            ("bad_state", "state mismatch"),
        ],
    )
    def test_login_failures_raise_auth_error(self, client_config, token_store, outcome, message):
        """Should raise AuthError for denied, timed out or forged callbacks."""
        server = FakeAuthorizationServer(outcome=outcome)
        session = SessionManager(
            client_config, token_store, receiver_factory=lambda: server, browser=server.open_browser
        )

        with (
            patch.object(OAuth2Session, "fetch_token") as fetch,
            pytest.raises(AuthError, match=message),
        ):
            session.login()

        fetch.assert_not_called()
        assert token_store.load() is None
        assert session.state is SessionState.LOGGED_OUT
        assert server.closed is True

    def test_failed_login_keeps_existing_credential(self, client_config, token_store):
        """Should keep the stored credential when a new login fails."""
        token_store.save(make_credential())
        server = FakeAuthorizationServer(outcome="deny")
        session = SessionManager(
            client_config, token_store, receiver_factory=lambda: server, browser=server.open_browser
        )

        with pytest.raises(AuthError):
            session.login()

        assert token_store.load().access_token == "stored-access-token"
        assert session.state is SessionState.LOGGED_IN

    def test_listener_bind_failure_raises_auth_error(self, client_config, token_store):
        """Should report a callback port that cannot be bound as an AuthError."""

        def unbindable():
            raise OSError(98, "Address already in use")

        browser = MagicMock()
        session = SessionManager(client_config, token_store, receiver_factory=unbindable, browser=browser)

        with pytest.raises(AuthError, match="callback listener"):
            session.login()

        browser.assert_not_called()
        assert session.state is SessionState.LOGGED_OUT

    def test_exchange_error_raises_auth_error(self, session, token_store):
        """Should raise AuthError when the code exchange is rejected."""
        error = OAuthError(error="invalid_grant", description="Bad code")
        with (
            patch.object(OAuth2Session, "fetch_token", side_effect=error),
            pytest.raises(AuthError, match="exchange"),
        ):
            session.login()
        assert token_store.load() is None

    def test_missing_refresh_token_raises_auth_error(self, session):
        """Should raise AuthError when no refresh token is granted."""
        with (
            patch.object(OAuth2Session, "fetch_token", return_value=token_response()),
            pytest.raises(AuthError, match="No refresh token"),
        ):
            session.login()

    def test_browser_failure_still_waits_for_callback(self, client_config, token_store):
        """Should still wait for the callback when the browser cannot open."""
        server = FakeAuthorizationServer()

        def no_browser(url):
            server.open_browser(url)
            return False

        session = SessionManager(client_config, token_store, receiver_factory=lambda: server, browser=no_browser)
        with patch.object(OAuth2Session, "fetch_token", return_value=fresh_token()):
            session.login()
        assert token_store.load() is not None


class TestGetValidToken:
    """Test token refresh behavior."""

    def test_no_credential_requires_reauth(self, session):
        """Should raise ReauthRequired without calling the token endpoint."""
        with patch.object(OAuth2Session, "refresh_token") as refresh, pytest.raises(ReauthRequired):
            session.get_valid_token()
        refresh.assert_not_called()

    def test_valid_token_returned_without_refresh(self, session, token_store):
        """Should return a valid token without refreshing."""
        token_store.save(make_credential(timedelta(hours=1)))
        with patch.object(OAuth2Session, "refresh_token") as refresh:
            assert session.get_valid_token() == "stored-access-token"
        refresh.assert_not_called()

    @pytest.mark.parametrize(
        "expires_in",
        [timedelta(days=-30), timedelta(seconds=-1), timedelta(0), timedelta(seconds=59)],
    )
    def test_expired_token_is_refreshed_before_use(self, session, token_store, expires_in):
        """Should refresh tokens that are expired or within the skew."""
        token_store.save(make_credential(expires_in))
        with patch.object(OAuth2Session, "refresh_token", return_value=token_response()) as refresh:
            token = session.get_valid_token()

        refresh.assert_called_once()
        assert refresh.call_args.kwargs["refresh_token"] == "stored-refresh-token"
        assert token == "new-access-token"
        assert token != "stored-access-token"

    def test_refresh_rewrites_persisted_credential(self, session, token_store):
        """Should persist the refreshed credential."""
        token_store.save(make_credential(timedelta(hours=-1)))
        with patch.object(OAuth2Session, "refresh_token", return_value=token_response()):
            session.get_valid_token()

        stored = token_store.load()
        assert stored.access_token == "new-access-token"
        assert stored.refresh_token == "stored-refresh-token"
        assert stored.is_expired() is False
        assert session.refresh_count == 1
        assert session.state is SessionState.LOGGED_IN

    def test_refresh_holds_store_lock(self, session, token_store):
        """Should hold the token file lock while refreshing and saving."""
        token_store.save(make_credential(timedelta(hours=-1)))
        held = []

        def refresh(*args, **kwargs):
            held.append(not lock_is_free(token_store))
            return token_response()

        with patch.object(OAuth2Session, "refresh_token", side_effect=refresh):
            session.get_valid_token()

        assert held == [True]
        assert lock_is_free(token_store)

    def test_rotated_refresh_token_is_stored(self, session, token_store):
        """Should store a rotated refresh token."""
        token_store.save(make_credential(timedelta(hours=-1)))
        rotated = token_response(refresh_token="rotated-refresh-token")
        with patch.object(OAuth2Session, "refresh_token", return_value=rotated):
            session.get_valid_token()
        assert token_store.load().refresh_token == "rotated-refresh-token"

    def test_revoked_refresh_token_requires_reauth(self, session, token_store):
        """Should raise ReauthRequired when the refresh token is rejected."""
        token_store.save(make_credential(timedelta(hours=-1)))
        error = OAuthError(error="invalid_grant", description="Token has been expired or revoked.")
        with (
            patch.object(OAuth2Session, "refresh_token", side_effect=error),
            pytest.raises(ReauthRequired, match="login"),
        ):
            session.get_valid_token()
        assert session.state is SessionState.REAUTH_REQUIRED

    def test_network_failure_during_refresh_is_not_reauth(self, session, token_store):
        """Should raise NetworkError and keep the credential when offline."""
        token_store.save(make_credential(timedelta(hours=-1)))
        with (
            patch.object(OAuth2Session, "refresh_token", side_effect=requests.ConnectionError("down")),
            pytest.raises(NetworkError),
        ):
            session.get_valid_token()
        # The credential is untouched so a later retry can still refresh
        assert token_store.load().refresh_token == "stored-refresh-token"

    def test_missing_scope_requires_reauth(self, session, token_store):
        """Should require login again when a required scope is missing."""
        token_store.save(make_credential(scopes=frozenset([SCOPES["gmail_readonly"]])))
        with pytest.raises(ReauthRequired, match="scopes"):
            session.get_valid_token()

    def test_force_refresh_ignores_expiry(self, session, token_store):
        """Should refresh even when the token looks valid."""
        token_store.save(make_credential(timedelta(hours=1)))
        with patch.object(OAuth2Session, "refresh_token", return_value=token_response("forced")) as refresh:
            assert session.force_refresh() == "forced"
        refresh.assert_called_once()


class TestLogout:
    """Test revocation and local cleanup."""

    def test_logout_revokes_and_deletes(self, session, token_store):
        """Should revoke the refresh token and delete the file."""
        token_store.save(make_credential())
        with patch.object(OAuth2Session, "post", return_value=MagicMock(status_code=200)) as post:
            assert session.logout() is True

        assert token_store.exists() is False
        assert post.call_args.args[0] == SessionManager.REVOKE_URL
        assert post.call_args.kwargs["data"] == {"token": "stored-refresh-token"}
        assert session.state is SessionState.LOGGED_OUT

    def test_logout_without_credential_is_noop(self, session):
        """Should succeed quietly with nothing stored."""
        with patch.object(OAuth2Session, "post") as post:
            assert session.logout() is False
            assert session.logout() is False
        post.assert_not_called()

    def test_logout_deletes_even_if_revoke_fails(self, session, token_store):
        """Should delete locally when revocation fails."""
        token_store.save(make_credential())
        with patch.object(OAuth2Session, "post", side_effect=requests.ConnectionError("offline")):
            assert session.logout() is True
        assert token_store.exists() is False

    def test_logout_then_get_valid_token_requires_reauth(self, session, token_store):
        """Should require login after logout."""
        token_store.save(make_credential())
        with patch.object(OAuth2Session, "post", return_value=MagicMock(status_code=200)):
            session.logout()
        with pytest.raises(ReauthRequired):
            session.get_valid_token()


class TestTokenInfo:
    """Test token status reporting."""

    def test_no_token(self, session):
        """Should report no_token when nothing is stored."""
        assert session.token_info() == {"status": "no_token", "account": "default"}

    def test_valid_token(self, session, token_store):
        """Should report a valid token with its scopes."""
        token_store.save(make_credential(timedelta(hours=1)))
        info = session.token_info()
        assert info["status"] == "valid"
        assert info["has_refresh_token"] is True
        assert info["scopes"] == [GMAIL_SCOPE]

    def test_expired_token(self, session, token_store):
        """Should report an expired token."""
        token_store.save(make_credential(timedelta(hours=-1)))
        info = session.token_info()
        assert info["status"] == "expired"
        assert info["expires_in"] == "0:00:00"
