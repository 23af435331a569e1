"""Configuration and credential locations.

Everything lives under one config home, resolved in this order:
    $GMAIL_CLI_HOME
    $XDG_CONFIG_HOME/gmail-cli
    ~/.config/gmail-cli

Layout:
    .env                  - optional environment overrides
    config.json           - OAuth client id/secret (written by 'gmail config')
    credentials.json      - OAuth client file from Google Cloud Console
    tokens/<account>.json - OAuth tokens, one file per account

Environment variables always take precedence over files.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from gmail_cli.exceptions import ConfigError, CredentialsNotFoundError

APP_NAME = "gmail-cli"
DEFAULT_ACCOUNT = "default"
DEFAULT_LOGIN_TIMEOUT = 120.0
DEFAULT_SCOPES = ["gmail"]

ENV_HOME = "GMAIL_CLI_HOME"
ENV_CLIENT_ID = "GMAIL_CLI_CLIENT_ID"
ENV_CLIENT_SECRET = "GMAIL_CLI_CLIENT_SECRET"
ENV_LOGIN_TIMEOUT = "GMAIL_CLI_LOGIN_TIMEOUT"

ACCOUNT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@+-]*$")


def config_home() -> Path:
    """Return the configuration directory (not created)."""
    if os.environ.get(ENV_HOME):
        return Path(os.environ[ENV_HOME]).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / APP_NAME


def _load_env_file(env_path: Path) -> dict[str, str]:
    """Load environment variables from a file.

    Args:
        env_path: Path to .env file.

    Returns:
        Dictionary of loaded variables.
    """
    loaded = {}
    if not env_path.exists():
        return loaded

    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            # Remove surrounding quotes
            if (value.startswith('"') and value.endswith('"')) or (
                value.startswith("'") and value.endswith("'")
            ):
                value = value[1:-1]

            # Only set if not already in environment (env vars take precedence)
            if key and key not in os.environ:
                os.environ[key] = value
                loaded[key] = value

    return loaded


@dataclass
class ClientConfig:
    """OAuth client registration (from Google Cloud Console)."""

    client_id: str
    client_secret: str


@dataclass
class Settings:
    """Resolved settings for one CLI invocation.

    Built once by :func:`load_settings` and handed to every command handler.
    """

    home: Path
    account: str = DEFAULT_ACCOUNT
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    login_timeout: float = DEFAULT_LOGIN_TIMEOUT

    @property
    def client_config_path(self) -> Path:
        return self.home / "config.json"

    @property
    def credentials_path(self) -> Path:
        return self.home / "credentials.json"

    @property
    def tokens_dir(self) -> Path:
        return self.home / "tokens"

    @property
    def token_path(self) -> Path:
        return self.tokens_dir / f"{self.account}.json"

    def ensure_home(self) -> Path:
        """Create the config home if it doesn't exist."""
        self.home.mkdir(parents=True, exist_ok=True)
        return self.home

    def load_client_config(self) -> ClientConfig:
        """Resolve the OAuth client id and secret.

        Sources, first match wins: environment variables, config.json,
        credentials.json.

        Raises:
            CredentialsNotFoundError: If no source provides a client.
            ConfigError: If a source exists but is malformed.
        """
        client_id = os.environ.get(ENV_CLIENT_ID)
        client_secret = os.environ.get(ENV_CLIENT_SECRET)
        if client_id and client_secret:
            return ClientConfig(client_id, client_secret)

        if self.client_config_path.exists():
            data = _read_json(self.client_config_path)
            try:
                return ClientConfig(data["client_id"], data["client_secret"])
            except (KeyError, TypeError) as e:
                raise ConfigError(
                    f"Invalid client config at {self.client_config_path}: missing {e}"
                ) from e

        if self.credentials_path.exists():
            return parse_client_secrets(_read_json(self.credentials_path))

        raise CredentialsNotFoundError(str(self.credentials_path))

    def save_client_config(self, client: ClientConfig) -> Path:
        """Write config.json with owner-only permissions."""
        self.ensure_home()
        fd = os.open(self.client_config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump({"client_id": client.client_id, "client_secret": client.client_secret}, f, indent=2)
        # O_CREAT mode only applies to new files
        self.client_config_path.chmod(0o600)
        return self.client_config_path


def parse_client_secrets(data: dict) -> ClientConfig:
    """Extract client id/secret from a Google Cloud Console credentials file."""
    # Handle both web and installed app credential formats
    if "installed" in data:
        app_creds = data["installed"]
    elif "web" in data:
        app_creds = data["web"]
    else:
        raise ConfigError("Invalid credentials.json format. Expected 'installed' or 'web' key.")

    try:
        return ClientConfig(app_creds["client_id"], app_creds["client_secret"])
    except KeyError as e:
        raise ConfigError(f"Invalid credentials.json: missing {e}") from e


def _read_json(path: Path) -> dict:
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def load_settings(
    home: str | Path | None = None,
    account: str | None = None,
    scopes: list[str] | None = None,
    login_timeout: float | None = None,
) -> Settings:
    """Build Settings from arguments, the environment and the home .env file."""
    account = account or DEFAULT_ACCOUNT
    if not ACCOUNT_PATTERN.match(account):
        raise ConfigError(f"Invalid account name: {account!r}")

    home_path = Path(home).expanduser() if home else config_home()
    _load_env_file(home_path / ".env")

    if login_timeout is None:
        raw = os.environ.get(ENV_LOGIN_TIMEOUT)
        try:
            login_timeout = float(raw) if raw else DEFAULT_LOGIN_TIMEOUT
        except ValueError as e:
            raise ConfigError(f"{ENV_LOGIN_TIMEOUT} must be a number, got {raw!r}") from e

    return Settings(
        home=home_path,
        account=account,
        scopes=scopes or list(DEFAULT_SCOPES),
        login_timeout=login_timeout,
    )
