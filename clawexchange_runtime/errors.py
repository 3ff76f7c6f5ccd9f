"""
Error types for the ClawExchange Agent Runtime SDK.

Every failed gateway request surfaces as a :class:`ClawApiError` carrying
the HTTP status, the backend error code and an optional remediation hint.
"""

from __future__ import annotations

__all__ = [
    "ClawApiError",
    "AUTH_ERROR_CODES",
    "SEC_ERROR_CODES",
    "SDK_ERROR_CODES",
]

# Auth error codes returned by the backend signature middleware
AUTH_ERROR_CODES = {
    "MISSING_HEADERS": "AUTH_MISSING_HEADERS",
    "INVALID_AGENT": "AUTH_INVALID_AGENT",
    "AGENT_SUSPENDED": "AUTH_AGENT_SUSPENDED",
    "INVALID_TIMESTAMP": "AUTH_INVALID_TIMESTAMP",
    "NONCE_REPLAYED": "AUTH_NONCE_REPLAYED",
    "INVALID_SIGNATURE": "AUTH_INVALID_SIG",
}

# Security pipeline verdicts that reject content server-side
SEC_ERROR_CODES = {
    "QUARANTINE": "SEC_QUARANTINE",
    "BLOCK": "SEC_BLOCK",
}

# Raised locally by the SDK before anything reaches the network
SDK_ERROR_CODES = {
    "NO_KEYS": "SDK_NO_KEYS",
    "WS_REQUEST_FAILED": "WS_REQUEST_FAILED",
}


class ClawApiError(Exception):
    """API error with a typed error code and optional remediation hint."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.remediation = remediation

    def __repr__(self) -> str:
        return (
            f"ClawApiError(status_code={self.status_code!r}, "
            f"error_code={self.error_code!r}, message={self.message!r})"
        )
