"""
Auction house errors

The hierarchy encodes how a failure must be handled:

- ValidationError: the request itself is wrong. Reported immediately and never retried.
- TransientError: infrastructure hiccup. Retried with backoff by `RetryPolicy`, then raised.
- LedgerError: the chain rejected or failed the transaction. Fatal for the attempt; the state must be re-checked
  before anything is retried.
- BookkeepingError: a record-only operation whose verified write failed.

A chain action that succeeded but whose record update could not be verified is not an error. It is reported as a
`Divergence` value on the operation result.
"""
from dataclasses import dataclass
from datetime import datetime


class AuctionHouseError(Exception):
    """Auction house base exception"""


class ValidationError(AuctionHouseError):
    """Base exception for invalid requests"""


class InvalidObjectIdError(ValidationError):
    """Object id or address does not match 0x followed by 64 hex characters"""


class MissingFieldError(ValidationError):
    """A required field is missing or empty"""


class UnauthorizedError(ValidationError):
    """Caller is not allowed to perform the operation"""


class InvalidTransitionError(ValidationError):
    """The record status does not allow the operation"""


class BidTooLowError(ValidationError):
    """Bid does not exceed the current bid by more than the minimum increment"""

    def __init__(self, amount: int, minimum_exclusive: int):
        super().__init__(
            f"bid must be greater than {minimum_exclusive}: amount={amount}"
        )
        self.amount = amount
        self.minimum_exclusive = minimum_exclusive


class AuctionEndedError(ValidationError):
    """The auction has ended"""


class CooldownActiveError(ValidationError):
    """The cooldown that follows a completed auction has not elapsed yet"""

    def __init__(self, cooldown_until: datetime):
        super().__init__(f"cooldown is active until {cooldown_until.isoformat()}")
        self.cooldown_until = cooldown_until


class NotQueueHeadError(ValidationError):
    """Only the head of the queue can be activated"""


class ActiveAuctionExistsError(ValidationError):
    """Another auction is live"""


class CustodyError(ValidationError):
    """The NFT, kiosk or kiosk owner cap is not where it is required to be"""


class DuplicateSubmissionError(ValidationError):
    """The NFT already has an open auction record"""


class InsufficientBalanceError(ValidationError):
    """The signer cannot cover the amount being spent plus the gas budget"""

    def __init__(self, address: str, balance: int, required: int):
        super().__init__(
            f"insufficient balance: address={address} balance={balance} required={required}"
        )
        self.address = address
        self.balance = balance
        self.required = required


class TransientError(AuctionHouseError):
    """Base exception for retriable infrastructure failures"""


class ChainTimeoutError(TransientError):
    """Chain request timed out"""


class ChainConnectionError(TransientError):
    """Chain node could not be reached"""


class RecordStoreUnavailableError(TransientError):
    """Record store could not be reached"""


class LedgerError(AuctionHouseError):
    """Base exception for failures reported by the chain"""


class TransactionFailedError(LedgerError):
    """Transaction was executed and reported a failed status, or was rejected during execution"""

    def __init__(self, description: str, digest: str | None, error: str | None):
        super().__init__(f"{description} failed: digest={digest} error={error}")
        self.description = description
        self.digest = digest
        self.error = error


class ChainRpcError(LedgerError):
    """Chain node returned an error response"""

    def __init__(self, method: str, code: int | None, message: str):
        super().__init__(f"{method} failed: [{code}] {message}")
        self.method = method
        self.code = code


class UnexpectedChainStateError(LedgerError):
    """Chain state does not match what the operation requires or produced"""


class BookkeepingError(AuctionHouseError):
    """A record-only update could not be verified"""


class RecordNotFoundError(AuctionHouseError):
    """Auction record does not exist"""


@dataclass(slots=True, frozen=True)
class Divergence:
    """
    The chain action succeeded but the record store could not be brought in line with it.

    Divergences never undo or repeat the chain action. They are surfaced for manual repair.
    """

    record_id: str
    description: str
    patch: dict
    digest: str | None = None

    def __str__(self) -> str:
        return f"[Divergence] record={self.record_id} {self.description} digest={self.digest}"
