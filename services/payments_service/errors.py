"""Error taxonomy for the payments pipeline.

Every error carries the HTTP status the API answers with and whether a
queue worker should retry the job that raised it.
"""

from typing import Optional


class PaymentError(Exception):
    """Base exception for payment orchestration failures."""

    code = "PAYMENT_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class AuthorizationError(PaymentError):
    """Caller is not entitled to the target company, account or wallet."""

    code = "AUTHORIZATION_ERROR"
    status_code = 403


class ValidationError(PaymentError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InsufficientFundsError(PaymentError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 400

    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds: {available} sats available, {requested} requested"
        )


class WalletNotFoundError(PaymentError):
    code = "WALLET_NOT_FOUND"
    status_code = 404

    def __init__(self, wallet_id):
        self.wallet_id = wallet_id
        super().__init__(f"Wallet {wallet_id} not found")


class SignatureVerificationError(PaymentError):
    """Webhook signature missing or invalid; the payload is never processed."""

    code = "INVALID_SIGNATURE"
    status_code = 400


class FundingNotReadyError(PaymentError):
    """The bank debit has not settled yet, try again later."""

    code = "FUNDING_NOT_READY"
    status_code = 409
    retryable = True


class ProviderError(PaymentError):
    """Non-2xx or malformed response from an external provider."""

    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        response_data: Optional[dict] = None,
        retryable: bool = False,
        code: Optional[str] = None,
    ):
        self.provider = provider
        self.upstream_status = status_code
        self.response_data = response_data or {}
        super().__init__(
            f"{provider}: {message}",
            code=code,
            status_code=404 if status_code == 404 else None,
            retryable=retryable,
        )


class QuoteExpiredError(ProviderError):
    """A Strike quote passed its expiry; executing it again cannot succeed."""

    code = "QUOTE_EXPIRED"
    status_code = 409

    def __init__(self, quote_id: str, response_data: Optional[dict] = None):
        self.quote_id = quote_id
        super().__init__(
            "strike",
            f"Quote {quote_id} has expired",
            response_data=response_data,
            retryable=False,
        )


NON_RETRYABLE_JOB_ERRORS = (
    AuthorizationError,
    ValidationError,
    InsufficientFundsError,
    WalletNotFoundError,
    SignatureVerificationError,
)


def is_retryable_job_error(exc: BaseException) -> bool:
    """
    Decide whether a queue job should be attempted again after ``exc``.

    Quote expiry is terminal for a single execute call but a fresh job
    attempt requests a new quote, so the job layer retries it.
    """
    if isinstance(exc, NON_RETRYABLE_JOB_ERRORS):
        return False
    if isinstance(exc, QuoteExpiredError):
        return True
    if isinstance(exc, PaymentError):
        return exc.retryable
    # Unknown failures (database hiccups, bugs) are retried by the queue.
    return True
