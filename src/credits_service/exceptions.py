"""Custom exception classes for the credits service."""

from decimal import Decimal


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class DefaultSecretKeyError(ConfigurationError):
    """Raised when default JWT secret key is used in production."""

    def __init__(self) -> None:
        super().__init__(
            "JWT_SECRET_KEY must be set explicitly in production. "
            "Use the secret shared with the auth service.",
        )


class ShortSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is too short in production."""

    def __init__(self) -> None:
        super().__init__("JWT_SECRET_KEY must be at least 32 characters in production.")


class CreditsError(Exception):
    """Base exception for credits service failures."""


# Domain errors: expected outcomes the caller can act on
class LedgerDomainError(CreditsError):
    """Base class for expected ledger outcomes."""


class InvalidAmountError(LedgerDomainError):
    """Raised when a credit or debit amount is not strictly positive."""

    def __init__(self, amount: object) -> None:
        self.amount = amount
        super().__init__(f"Amount must be greater than 0, got {amount!r}")


class InsufficientBalanceError(LedgerDomainError):
    """Raised when a debit would drive the balance below zero."""

    def __init__(self, account_id: str, required: Decimal, available: Decimal) -> None:
        self.account_id = account_id
        self.required = required
        self.available = available
        self.shortfall = max(required - available, Decimal(0))
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}")


class UnknownPackageError(LedgerDomainError):
    """Raised when a credit package id is not in the catalog."""

    def __init__(self, package_id: str) -> None:
        self.package_id = package_id
        super().__init__(f"Unknown credit package '{package_id}'")


class UnknownResourceTypeError(LedgerDomainError):
    """Raised when usage is reported for a resource type without a price."""

    def __init__(self, resource_type: str, valid_types: list[str]) -> None:
        self.resource_type = resource_type
        self.valid_types = valid_types
        super().__init__(f"Unknown resource type '{resource_type}'. Must be one of: {valid_types}")


class PaymentRequiredError(LedgerDomainError):
    """Raised by metering when the account cannot pay for the usage."""

    def __init__(self, account_id: str, resource_type: str, required: Decimal, available: Decimal) -> None:
        self.account_id = account_id
        self.resource_type = resource_type
        self.required = required
        self.available = available
        self.shortfall = max(required - available, Decimal(0))
        super().__init__(
            f"Insufficient credits for {resource_type}. "
            f"Required: {required}, available: {available}. Top up credits to continue."
        )


# Infrastructure errors: transient, eligible for retry
class LedgerInfrastructureError(CreditsError):
    """Base class for store failures."""


class LedgerTimeoutError(LedgerInfrastructureError):
    """Raised when a ledger operation does not finish within its timeout.

    The mutation may still have committed; reconcile through the history.
    """

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Ledger operation '{operation}' timed out after {timeout}s")


class LedgerUnavailableError(LedgerInfrastructureError):
    """Raised when the ledger store cannot be reached or fails."""

    def __init__(self, operation: str, original_error: str) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Ledger operation '{operation}' failed: {original_error}")


# Payment provider errors
class PaymentProviderError(CreditsError):
    """Base exception for payment provider failures."""


class PaymentProviderNotConfiguredError(PaymentProviderError):
    """Raised when Stripe keys are missing."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Stripe not configured: {setting} is not set")


class WebhookVerificationError(PaymentProviderError):
    """Raised when a webhook payload or signature is invalid."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Webhook verification failed: {reason}")
