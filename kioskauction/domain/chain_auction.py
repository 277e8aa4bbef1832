"""
Marketplace auction object, as read from the chain
"""
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any

from kioskauction.chain.model import Address, ChainObject, MoveType, ObjectId
from kioskauction.errors import UnexpectedChainStateError

# marketplace auction status: anything other than LIVE means the auction has ended
AUCTION_STATUS_LIVE = 0


def _int_field(value: Any) -> int:
    # u64 values are returned as strings, Balance<T> may be nested as {"value": ...}
    if isinstance(value, dict):
        value = value.get("value", value.get("fields", {}).get("value"))
    return int(value)


@dataclass(slots=True, frozen=True)
class ChainAuction:
    """
    Chain authoritative auction state

    :param highest_bidder: None when nobody has bid, i.e., the chain reports `0x0`
    :param end_time_ms: epoch millis
    :param balance: escrowed bid proceeds held by the auction object
    """

    object_id: ObjectId
    current_bid: int
    highest_bidder: Address | None
    status: int
    end_time_ms: int
    balance: int
    nft_id: ObjectId
    kiosk_id: ObjectId

    @classmethod
    def from_object(cls, obj: ChainObject, auction_type: MoveType) -> "ChainAuction":
        """
        :raises UnexpectedChainStateError: if the object is not an auction of the marketplace package, or is malformed
        """
        if not obj.type.is_struct(auction_type):
            raise UnexpectedChainStateError(f"object {obj.object_id} is not an auction: {obj.type}")
        try:
            return cls(
                object_id=obj.object_id,
                current_bid=_int_field(obj.get_field("current_bid")),
                highest_bidder=Address.parse_optional(obj.get_field("highest_bidder")),
                status=int(obj.get_field("status")),
                end_time_ms=int(obj.get_field("end_time")),
                balance=_int_field(obj.fields.get("balance", 0)),
                nft_id=ObjectId.normalize(obj.get_field("nft_id")),
                kiosk_id=ObjectId.normalize(obj.get_field("kiosk_id")),
            )
        except (TypeError, ValueError) as err:
            raise UnexpectedChainStateError(
                f"malformed auction object {obj.object_id}: {err}"
            ) from err

    @property
    def end_time(self) -> datetime:
        return datetime.fromtimestamp(self.end_time_ms / 1000, UTC)

    def is_ended(self, now: datetime) -> bool:
        """
        Ended when the contract says so, or when the end time has been reached
        """
        return self.status != AUCTION_STATUS_LIVE or now >= self.end_time

    def time_remaining_ms(self, now: datetime) -> int:
        return max(0, self.end_time_ms - int(now.timestamp() * 1000))

    @property
    def has_bids(self) -> bool:
        return self.highest_bidder is not None

    def winner(self, seller: Address) -> Address | None:
        """
        No bid and a bid by the seller both mean the NFT was not sold
        """
        if self.highest_bidder is None or self.highest_bidder == seller:
            return None
        return self.highest_bidder
