"""
Auction domain model
"""
from dataclasses import dataclass, fields, replace
from datetime import datetime, UTC
from enum import StrEnum
from typing import Any, NewType

from ulid import ULID

from kioskauction.chain.gateway import TransactionSigner
from kioskauction.chain.model import Address, ObjectId
from kioskauction.errors import ValidationError

RecordId = NewType("RecordId", str)


def new_record_id() -> RecordId:
    return RecordId(str(ULID()))


class AuctionStatus(StrEnum):
    """
    Auction workflow status
    """

    # submitted by the seller, NFT in admin escrow
    PENDING = "pending"
    # seller asked to get the NFT back before approval
    CANCEL_REQUESTED = "cancel_requested"
    # NFT placed in the shared kiosk, waiting for the lane
    QUEUED = "queued"
    # on-chain auction is live
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        """
        Open records still hold the NFT in the auction workflow
        """
        return self not in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AuctionStatus.COMPLETED, AuctionStatus.REJECTED, AuctionStatus.CANCELED}
)


@dataclass(slots=True)
class AuctionRecord:
    """
    Off-chain workflow record, one per submitted NFT.

    The record is authoritative for workflow status and scheduling metadata only. Bids and balances are always
    re-read from the chain auction object.
    """

    # pylint: disable=too-many-instance-attributes

    id: RecordId
    token_id: ObjectId
    collection_type: str
    seller: Address
    starting_bid: int
    auction_duration_hours: int
    is_priority: bool = False
    status: AuctionStatus = AuctionStatus.PENDING
    name: str | None = None

    # custody handles, set once the NFT is in the shared kiosk
    kiosk_id: ObjectId | None = None
    custody_cap_id: ObjectId | None = None
    # set on activation
    auction_object_id: ObjectId | None = None

    current_bid: int = 0
    highest_bidder: Address | None = None
    winner: Address | None = None
    final_bid: int | None = None
    fee_amount: int | None = None
    seller_amount: int | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancel_requested_at: datetime | None = None

    nft_transferred: bool = False
    nft_transferred_at: datetime | None = None
    status_reason: str | None = None

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    @property
    def duration_ms(self) -> int:
        return self.auction_duration_hours * 60 * 60 * 1000

    def apply(self, patch: dict[str, Any]) -> "AuctionRecord":
        """
        Returns a copy with the patch applied.

        :raises ValidationError: if the patch names unknown fields, tries to change the id,
                                 or tries to revert `nft_transferred`
        """
        unknown = set(patch) - self.field_names()
        if unknown:
            raise ValidationError(f"unknown record fields: {sorted(unknown)}")
        if "id" in patch and patch["id"] != self.id:
            raise ValidationError("record id cannot be changed")
        if self.nft_transferred and patch.get("nft_transferred", True) is not True:
            raise ValidationError(f"nft_transferred cannot be reverted: record={self.id}")
        return replace(self, **patch)

    def matches(self, patch: dict[str, Any]) -> bool:
        """
        :return: True if every patched field has the patched value
        """
        return all(getattr(self, name) == value for name, value in patch.items())


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True, frozen=True)
class Caller:
    """
    Identity of whoever invokes an operation.

    The signer must sign for the address. Operations never read wallet state from anywhere else.
    """

    address: Address
    signer: TransactionSigner

    def __post_init__(self):
        object.__setattr__(self, "address", Address(self.address))
