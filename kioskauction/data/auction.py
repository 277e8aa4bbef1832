"""
Auction record data model
"""
from datetime import datetime, UTC
from typing import Any

from sqlalchemy import ForeignKey, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from kioskauction.chain.model import Address, ObjectId
from kioskauction.data import Base
from kioskauction.domain.auction import AuctionRecord, AuctionStatus, RecordId
from kioskauction.domain.bid import BidId, BidRecord


def as_utc(value: datetime | None) -> datetime | None:
    """
    sqlite does not store the timezone; datetimes are always stored as UTC
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _object_id(value: str | None) -> ObjectId | None:
    return ObjectId(value) if value else None


def _address(value: str | None) -> Address | None:
    return Address(value) if value else None


class TAuction(Base):
    """
    Auction record database table model
    """

    # pylint: disable=too-many-instance-attributes

    __tablename__ = "auction"

    id: Mapped[RecordId] = mapped_column(primary_key=True)
    token_id: Mapped[ObjectId] = mapped_column(index=True)
    collection_type: Mapped[str]
    seller: Mapped[Address] = mapped_column(index=True)
    starting_bid: Mapped[int]
    auction_duration_hours: Mapped[int]
    is_priority: Mapped[bool] = mapped_column(index=True)
    status: Mapped[AuctionStatus] = mapped_column(index=True)
    current_bid: Mapped[int]
    nft_transferred: Mapped[bool]

    name: Mapped[str | None] = mapped_column(default=None)
    kiosk_id: Mapped[ObjectId | None] = mapped_column(default=None)
    custody_cap_id: Mapped[ObjectId | None] = mapped_column(default=None)
    auction_object_id: Mapped[ObjectId | None] = mapped_column(index=True, default=None)
    highest_bidder: Mapped[Address | None] = mapped_column(default=None)
    winner: Mapped[Address | None] = mapped_column(default=None)
    final_bid: Mapped[int | None] = mapped_column(default=None)
    fee_amount: Mapped[int | None] = mapped_column(default=None)
    seller_amount: Mapped[int | None] = mapped_column(default=None)

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True, default=None)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True, default=None)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    nft_transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    status_reason: Mapped[str | None] = mapped_column(default=None)

    @classmethod
    def create(cls, record: AuctionRecord) -> "TAuction":
        """
        Converts AuctionRecord -> TAuction
        """
        values = {name: getattr(record, name) for name in AuctionRecord.field_names()}
        values["status"] = AuctionStatus(record.status)
        return cls(**values)

    def update(self, patch: dict[str, Any]):
        """
        Applies the patch field by field
        """
        for name, value in patch.items():
            setattr(self, name, value)

    def to_record(self) -> AuctionRecord:
        """
        Converts this instance into an AuctionRecord instance
        """
        return AuctionRecord(
            id=RecordId(self.id),
            token_id=ObjectId(self.token_id),
            collection_type=self.collection_type,
            seller=Address(self.seller),
            starting_bid=self.starting_bid,
            auction_duration_hours=self.auction_duration_hours,
            is_priority=self.is_priority,
            status=AuctionStatus(self.status),
            name=self.name,
            kiosk_id=_object_id(self.kiosk_id),
            custody_cap_id=_object_id(self.custody_cap_id),
            auction_object_id=_object_id(self.auction_object_id),
            current_bid=self.current_bid,
            highest_bidder=_address(self.highest_bidder),
            winner=_address(self.winner),
            final_bid=self.final_bid,
            fee_amount=self.fee_amount,
            seller_amount=self.seller_amount,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
            started_at=as_utc(self.started_at),
            completed_at=as_utc(self.completed_at),
            cancel_requested_at=as_utc(self.cancel_requested_at),
            nft_transferred=self.nft_transferred,
            nft_transferred_at=as_utc(self.nft_transferred_at),
            status_reason=self.status_reason,
        )


class TBid(Base):
    """
    Bid database table model
    """

    __tablename__ = "auction_bid"

    id: Mapped[BidId] = mapped_column(primary_key=True)
    auction_id: Mapped[RecordId] = mapped_column(
        ForeignKey("auction.id", ondelete="CASCADE"),
        index=True,
    )
    bidder: Mapped[Address] = mapped_column(index=True)
    amount: Mapped[int]
    digest: Mapped[str]
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @classmethod
    def create(cls, bid: BidRecord) -> "TBid":
        return cls(
            id=bid.id,
            auction_id=bid.auction_id,
            bidder=bid.bidder,
            amount=bid.amount,
            digest=bid.digest,
            created_at=bid.created_at,
        )

    def to_record(self) -> BidRecord:
        return BidRecord(
            id=BidId(self.id),
            auction_id=RecordId(self.auction_id),
            bidder=Address(self.bidder),
            amount=self.amount,
            digest=self.digest,
            created_at=as_utc(self.created_at),
        )
