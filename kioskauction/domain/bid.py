"""
Bid domain model
"""
from dataclasses import dataclass
from datetime import datetime
from typing import NewType

from ulid import ULID

from kioskauction.chain.model import Address
from kioskauction.domain.auction import RecordId

BidId = NewType("BidId", str)


def new_bid_id() -> BidId:
    return BidId(str(ULID()))


@dataclass(slots=True)
class BidRecord:
    """
    Submitted bid, kept only until the auction completes.

    Never used for payouts: the chain auction object is the source of truth for the highest bid.
    """

    id: BidId
    auction_id: RecordId
    bidder: Address
    amount: int
    digest: str
    created_at: datetime
