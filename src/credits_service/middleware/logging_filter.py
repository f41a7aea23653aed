"""Sensitive data logging filter to prevent credential leakage.

SECURITY: This module provides a structlog processor that redacts sensitive
data from log output to prevent accidental credential exposure in logs.
"""

import re
from collections.abc import MutableMapping
from typing import Any

import structlog

# Sensitive field names that should always be redacted.
# Matching is by substring, so keep entries specific enough not to hit
# ledger fields such as reason_code or external_reference.
SENSITIVE_FIELDS = frozenset(
    {
        # Authentication
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "bearer",
        "credential",
        "cookie",
        # Database
        "database_url",
        "connection_string",
        # Stripe
        "stripe_signature",
        "client_secret",
        "card_number",
        "cvc",
        # Other
        "private_key",
        "signing_key",
        "jwt_secret",
    }
)

# Patterns that look like sensitive data even if field name is unknown
SENSITIVE_PATTERNS = [
    # JWT tokens
    re.compile(r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*"),
    # Bearer tokens
    re.compile(r"Bearer\s+[A-Za-z0-9_.-]+", re.IGNORECASE),
    # Stripe secret, restricted and webhook keys
    re.compile(r"(sk|rk)_(live|test)_[A-Za-z0-9]{10,}"),
    re.compile(r"whsec_[A-Za-z0-9]{10,}"),
    # PaymentIntent client secrets
    re.compile(r"pi_[A-Za-z0-9]+_secret_[A-Za-z0-9]+"),
    # Credentials embedded in connection URLs
    re.compile(r"://[^/\s:@]+:[^/\s@]+@"),
]

REDACTED = "***REDACTED***"


def _is_sensitive_field(key: str) -> bool:
    """Check if a field name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def _redact_sensitive_value(value: str) -> str:
    """Redact the whole value when it contains a sensitive pattern."""
    for pattern in SENSITIVE_PATTERNS:
        if pattern.search(value):
            return REDACTED
    return value


def _redact_dict(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Recursively redact sensitive data from a dictionary (in place)."""
    for key in list(data.keys()):
        value = data[key]

        if _is_sensitive_field(key):
            data[key] = REDACTED
            continue

        if isinstance(value, MutableMapping):
            _redact_dict(value)
        elif isinstance(value, list):
            data[key] = [
                _redact_dict(item)
                if isinstance(item, MutableMapping)
                else _redact_sensitive_value(item)
                if isinstance(item, str)
                else item
                for item in value
            ]
        elif isinstance(value, str):
            data[key] = _redact_sensitive_value(value)

    return data


def redact_sensitive_data(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts sensitive data from log events.

    The ``event`` message itself is left alone; only bound values are checked.
    """
    event = event_dict.pop("event", None)
    _redact_dict(event_dict)
    if event is not None:
        event_dict["event"] = event
    return event_dict
