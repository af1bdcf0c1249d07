"""Billing exceptions for Interview Signals."""


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class InvalidSignatureError(BillingError):
    """Raised when a webhook body doesn't match its signature header."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Invalid {provider} webhook signature")
