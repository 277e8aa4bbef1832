"""
Read-optimized live auction view consumed by the presentation layer
"""
from dataclasses import dataclass, field
from datetime import datetime

from kioskauction.chain.model import Address, ObjectId
from kioskauction.domain.auction import AuctionRecord


@dataclass(slots=True, frozen=True)
class BidHistoryEntry:
    """
    :param synthetic: True only for the seed entry, i.e., the starting bid attributed to the seller
    """

    bidder: Address
    amount: int
    timestamp: datetime | None
    tx_digest: str | None = None
    synthetic: bool = False


@dataclass(slots=True, frozen=True)
class QueuePreviewEntry:
    record_id: str
    token_id: ObjectId
    name: str | None
    seller: Address
    starting_bid: int
    is_priority: bool
    created_at: datetime | None

    @classmethod
    def create(cls, record: AuctionRecord) -> "QueuePreviewEntry":
        return cls(
            record_id=record.id,
            token_id=record.token_id,
            name=record.name,
            seller=record.seller,
            starting_bid=record.starting_bid,
            is_priority=record.is_priority,
            created_at=record.created_at,
        )


@dataclass(slots=True, frozen=True)
class LiveAuction:
    """
    Active auction merged with its chain state.

    `current_bid`, `highest_bidder` and `end_time` come from the chain auction object.
    `highest_bidder` is None when nobody has bid.
    """

    # pylint: disable=too-many-instance-attributes

    record: AuctionRecord
    auction_object_id: ObjectId
    current_bid: int
    highest_bidder: Address | None
    end_time: datetime
    time_remaining_ms: int
    is_ended: bool
    # bids must be strictly greater than this amount
    minimum_bid: int
    bid_history: tuple[BidHistoryEntry, ...] = ()


@dataclass(slots=True, frozen=True)
class LiveView:
    """
    Snapshot of the auction lane

    When no auction is live, `cooldown_until` is set while the cooldown is running
    """

    as_of: datetime
    live: LiveAuction | None
    cooldown_until: datetime | None = None
    queue_preview: tuple[QueuePreviewEntry, ...] = field(default_factory=tuple)
