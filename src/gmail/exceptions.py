"""Gmail integration exceptions for Interview Signals."""


class GmailError(Exception):
    """Base exception for Gmail errors."""

    pass


class GmailAuthError(GmailError):
    """Raised when OAuth client configuration or the install flow fails."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Gmail authentication failed: {reason}")


class TokenExpiredError(GmailAuthError):
    """Raised when a connected account's refresh token no longer works."""

    def __init__(self, account_email: str):
        self.account_email = account_email
        super().__init__(f"Token expired or revoked for {account_email}; reconnect required")
