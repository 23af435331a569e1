"""Google OAuth session management."""

from gmail_cli.google.callback import CallbackReceiver, LoopbackCallbackServer
from gmail_cli.exceptions import (
    ApiError,
    AuthError,
    ConfigError,
    CredentialsNotFoundError,
    GmailCliError,
    NetworkError,
    NotFound,
    ReauthRequired,
)
from gmail_cli.google.session import SessionManager, SessionState
from gmail_cli.google.store import Credential, TokenStore

__all__ = [
    "SessionManager",
    "SessionState",
    "Credential",
    "TokenStore",
    "CallbackReceiver",
    "LoopbackCallbackServer",
    "GmailCliError",
    "ConfigError",
    "CredentialsNotFoundError",
    "AuthError",
    "ReauthRequired",
    "ApiError",
    "NotFound",
    "NetworkError",
]
