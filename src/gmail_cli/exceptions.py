"""gmail-cli exceptions."""


class GmailCliError(Exception):
    """Base exception for gmail-cli errors."""

    pass


class ConfigError(GmailCliError):
    """Raised when OAuth client configuration is missing or invalid."""

    pass


class CredentialsNotFoundError(ConfigError):
    """Raised when OAuth credentials file is not found."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Credentials file not found at {path}. "
            "Please download OAuth credentials from Google Cloud Console "
            "and run 'gmail import <path>', or run 'gmail config <client-id>'."
        )


class AuthError(GmailCliError):
    """Raised when interactive authorization fails (denied, timed out, bad exchange)."""

    pass


class ReauthRequired(GmailCliError):
    """Raised when no usable credential exists and the user must log in again."""

    def __init__(self, message: str = "Not logged in. Run 'gmail login' first."):
        super().__init__(message)


class NetworkError(GmailCliError):
    """Raised when a request could not reach Google."""

    pass


class ApiError(GmailCliError):
    """Raised when the Gmail API returns a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None, reason: str | None = None):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class NotFound(ApiError):
    """Raised when a message id or label does not exist."""

    def __init__(self, what: str, status_code: int | None = 404):
        self.what = what
        super().__init__(f"Not found: {what}", status_code=status_code, reason="notFound")
