"""Error taxonomy shared by the trading loop and its collaborators."""

from __future__ import annotations


class TradingError(Exception):
    """Base error carrying the failing dependency and a stable code."""

    code = "UNKNOWN_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        return self.message


class AuthenticationError(TradingError):
    """Credentials rejected. Needs an operator, never retried automatically."""

    code = "AUTH_FAILED"


class RateLimitError(TradingError):
    """Remote side throttled us; retried after a per-service cooldown."""

    code = "RATE_LIMIT"
    retryable = True


class NetworkError(TradingError):
    """Transport failure or timeout; retried with exponential backoff."""

    code = "NETWORK_ERROR"
    retryable = True


class TradeValidationError(TradingError):
    """A trade failed risk checks. Rejected synchronously."""

    code = "VALIDATION_FAILED"


class ServiceError(TradingError):
    """Generic remote failure."""

    code = "SERVICE_ERROR"
    retryable = True


class PersistenceError(TradingError):
    """Snapshot or journal I/O failed. Never aborts the control loop."""

    code = "PERSISTENCE_FAILED"


class SessionStartError(TradingError):
    """Raised by ``TradingSession.start`` when startup could not complete."""

    code = "TRADING_START_FAILED"
    retryable = True
