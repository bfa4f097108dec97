"""
Error taxonomy for the bank client, ledger and reconciliation engine.

  - AuthError: login failures. Captcha rejection and session expiry are
    retried automatically (bounded); everything else is fatal.
  - RequestError: an authenticated bank call returned a failing code.
  - ValidationError: bad input (date range, malformed payment record).
    Never retried.
  - TransientNetworkError: connection/timeout failures. Retried with backoff
    at the call site (see engine.retry.with_retry).
  - SettlementError: wallet transfer failed. Never retried; the payment is
    routed to manual review.
  - LedgerError: the store is unreachable or a write could not be applied.
"""

from typing import Optional


class SettlementEngineError(Exception):
    """Base exception for the settlement engine."""


class AuthError(SettlementEngineError):
    """Login to the bank failed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(f"({code}): {message}" if code else message)
        self.code = code
        self.message = message


class SessionExpiredError(AuthError):
    """The bank invalidated the session and renewal did not help."""


class CipherUnavailableError(AuthError):
    """No compatible login payload cipher is configured."""


class RequestError(SettlementEngineError):
    """Authenticated bank request returned a non-success code."""

    def __init__(self, code: Optional[str], message: str):
        super().__init__(f"Request failed ({code}): {message}")
        self.code = code
        self.message = message


class ValidationError(SettlementEngineError):
    """Input rejected before any side effect took place."""


class TransientNetworkError(SettlementEngineError):
    """Connection or timeout failure talking to an external service."""


class SettlementError(SettlementEngineError):
    """Stablecoin transfer could not be completed."""


class LedgerError(SettlementEngineError):
    """Payment ledger read/write failed."""


class CycleError(SettlementEngineError):
    """A reconciliation cycle could not run to completion."""
