"""
Live auction projector

Builds the read-optimized LiveView by merging the record store with chain state. Nothing is retained between calls:
every projection is re-derived from the chain and the record store.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, UTC, timedelta
from typing import AsyncIterator, Callable

from kioskauction.chain.gateway import ChainGateway
from kioskauction.chain.model import Address, ChainEvent, ObjectId
from kioskauction.chain.transactions import MarketplaceTransactions
from kioskauction.config import AuctionHouseConfig
from kioskauction.core.command import AsyncCommand
from kioskauction.core.logging import get_logger
from kioskauction.core.retry import RetryPolicy
from kioskauction.domain.auction import AuctionRecord, AuctionStatus, utc_now
from kioskauction.domain.chain_auction import ChainAuction
from kioskauction.domain.live_view import (
    BidHistoryEntry,
    LiveAuction,
    LiveView,
    QueuePreviewEntry,
)
from kioskauction.errors import InvalidObjectIdError, TransientError, UnexpectedChainStateError
from kioskauction.state_machine import scheduling
from kioskauction.store.record_store import RecordFilter, RecordStore

_LANE_STATUSES = RecordFilter.with_status(
    AuctionStatus.ACTIVE, AuctionStatus.QUEUED, AuctionStatus.COMPLETED
)

_EPOCH = datetime.fromtimestamp(0, UTC)


@dataclass(slots=True, frozen=True)
class BidHistoryRequest:
    record: AuctionRecord
    auction_object_id: ObjectId


class BuildBidHistory(AsyncCommand[BidHistoryRequest, tuple[BidHistoryEntry, ...]]):
    """
    Bid history for one auction object: the seed entry, i.e., the starting bid attributed to the seller, followed
    by the located BidPlaced events in chronological order.

    Only the most recent `limit` BidPlaced events are scanned. Events for other auctions are skipped.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        transactions: MarketplaceTransactions,
        retry_policy: RetryPolicy,
        limit: int = 100,
    ):
        self._gateway = gateway
        self._transactions = transactions
        self._retry_policy = retry_policy
        self._limit = limit

    async def __call__(self, args: BidHistoryRequest) -> tuple[BidHistoryEntry, ...]:
        event_type = self._transactions.bid_placed_event_type
        events = await self._retry_policy.run(
            lambda: self._gateway.query_events(event_type, self._limit, True),
            f"query_events {event_type}",
        )

        entries = []
        for event in events:
            entry = await self._to_entry(event, args.auction_object_id)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda entry: (entry.timestamp or _EPOCH, entry.amount))

        seed = BidHistoryEntry(
            bidder=args.record.seller,
            amount=args.record.starting_bid,
            timestamp=args.record.started_at,
            synthetic=True,
        )
        return (seed, *entries)

    async def _to_entry(self, event: ChainEvent, auction_object_id: ObjectId) -> BidHistoryEntry | None:
        fields = event.parsed_json
        try:
            if ObjectId.normalize(fields.get("auction_id", "")) != auction_object_id:
                return None
            bidder = Address.normalize(fields["bidder"])
            amount = int(fields["amount"])
        except (InvalidObjectIdError, KeyError, TypeError, ValueError):
            self.get_logger("_to_entry").warning("skipping malformed BidPlaced event: %s", event.tx_digest)
            return None

        timestamp_ms = event.timestamp_ms
        if timestamp_ms is None:
            try:
                timestamp_ms = await self._retry_policy.run(
                    lambda: self._gateway.get_transaction_timestamp(event.tx_digest),
                    f"get_transaction {event.tx_digest}",
                )
            except TransientError as err:
                self.get_logger("_to_entry").warning(
                    "transaction timestamp unavailable: %s : %s", event.tx_digest, err
                )
        return BidHistoryEntry(
            bidder=bidder,
            amount=amount,
            timestamp=datetime.fromtimestamp(timestamp_ms / 1000, UTC) if timestamp_ms else None,
            tx_digest=event.tx_digest,
        )


class LiveAuctionProjector:
    """
    Usage:
        view = await projector.project()
        async for view in projector.watch(timedelta(seconds=5)):
            render(view)
    """

    def __init__(
        self,
        config: AuctionHouseConfig,
        store: RecordStore,
        gateway: ChainGateway,
        retry_policy: RetryPolicy,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._store = store
        self._gateway = gateway
        self._retry_policy = retry_policy
        self._clock = clock
        self._transactions = MarketplaceTransactions(config.package_id)
        self._bid_history = BuildBidHistory(
            gateway, self._transactions, retry_policy, config.bid_event_query_limit
        )
        self._logger = get_logger(self)

    async def project(self) -> LiveView:
        now = self._clock()
        records = await self._retry_policy.run(
            lambda: self._store.query(_LANE_STATUSES), "query records"
        )
        queue_preview = tuple(
            QueuePreviewEntry.create(record)
            for record in scheduling.queue_order(records)[: self._config.queue_preview_size]
        )

        active = sorted(
            (record for record in records if record.status == AuctionStatus.ACTIVE),
            key=lambda record: (record.started_at or _EPOCH, record.id),
        )
        if not active:
            until = scheduling.cooldown_until(records, self._config.cooldown)
            return LiveView(
                as_of=now,
                live=None,
                cooldown_until=until if until and until > now else None,
                queue_preview=queue_preview,
            )

        return LiveView(
            as_of=now,
            live=await self._project_live(active[0], now),
            queue_preview=queue_preview,
        )

    async def _project_live(self, record: AuctionRecord, now: datetime) -> LiveAuction:
        auction_id = record.auction_object_id
        if auction_id is None:
            raise UnexpectedChainStateError(f"active record has no auction object: {record.id}")
        obj = await self._retry_policy.run(
            lambda: self._gateway.get_object(auction_id), f"get_object {auction_id}"
        )
        if obj is None:
            raise UnexpectedChainStateError(f"auction object does not exist: {auction_id}")
        auction = ChainAuction.from_object(obj, self._transactions.auction_type)

        return LiveAuction(
            record=record,
            auction_object_id=auction_id,
            current_bid=auction.current_bid,
            highest_bidder=auction.highest_bidder,
            end_time=auction.end_time,
            time_remaining_ms=auction.time_remaining_ms(now),
            is_ended=auction.is_ended(now),
            minimum_bid=auction.current_bid + self._config.min_bid_increment,
            bid_history=await self._bid_history(BidHistoryRequest(record, auction_id)),
        )

    async def watch(self, interval: timedelta) -> AsyncIterator[LiveView]:
        """
        Re-projects at the polling interval, forever. Transient failures skip a tick.
        """
        while True:
            try:
                yield await self.project()
            except TransientError as err:
                self._logger.warning("projection failed: %s", err)
            await asyncio.sleep(interval.total_seconds())

    async def seller_history(self, seller: Address) -> list[AuctionRecord]:
        """
        :return: all records of the seller, newest first
        """
        seller = Address(seller)
        records = await self._retry_policy.run(
            lambda: self._store.query(RecordFilter(seller=seller)), f"query records {seller}"
        )
        return sorted(records, key=lambda record: (record.created_at or _EPOCH, record.id), reverse=True)
