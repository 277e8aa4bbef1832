"""
SQLAlchemy backed record store
"""
from typing import Any

from sqlalchemy import select, delete
from sqlalchemy.exc import OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from kioskauction.core.logging import get_logger
from kioskauction.data.auction import TAuction, TBid
from kioskauction.domain.auction import AuctionRecord, RecordId, utc_now
from kioskauction.domain.bid import BidRecord
from kioskauction.errors import RecordNotFoundError, RecordStoreUnavailableError
from kioskauction.store.record_store import RecordStore, RecordFilter, ChangeKind


class SqlAlchemyRecordStore(RecordStore):
    """
    Each operation runs in its own transaction.

    Connection level database errors are raised as RecordStoreUnavailableError, which is transient.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__()
        self._session_factory = session_factory
        self._logger = get_logger(self)

    async def get(self, record_id: RecordId) -> AuctionRecord | None:
        try:
            async with self._session_factory() as session:
                auction: TAuction | None = await session.get(TAuction, record_id)
                return auction.to_record() if auction else None
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"get failed: {record_id}") from err

    async def query(self, record_filter: RecordFilter) -> list[AuctionRecord]:
        query = select(TAuction)
        if record_filter.statuses is not None:
            query = query.where(TAuction.status.in_([str(status) for status in record_filter.statuses]))
        if record_filter.seller is not None:
            query = query.where(TAuction.seller == str(record_filter.seller))
        if record_filter.token_id is not None:
            query = query.where(TAuction.token_id == str(record_filter.token_id))
        if record_filter.auction_object_id is not None:
            query = query.where(TAuction.auction_object_id == str(record_filter.auction_object_id))
        query = query.order_by(TAuction.created_at, TAuction.id)

        try:
            async with self._session_factory() as session:
                return [auction.to_record() for auction in await session.scalars(query)]
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError("query failed") from err

    async def add(self, record: AuctionRecord) -> RecordId:
        now = utc_now()
        record = record.apply(
            {
                "created_at": record.created_at if record.created_at else now,
                "updated_at": now,
            }
        )
        try:
            async with self._session_factory.begin() as session:
                session.add(TAuction.create(record))
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"add failed: {record.id}") from err

        self._logger.debug("added record: %s", record.id)
        self._publish(ChangeKind.ADDED, [record])
        return record.id

    async def update(self, record_id: RecordId, patch: dict[str, Any]) -> AuctionRecord:
        try:
            async with self._session_factory.begin() as session:
                auction: TAuction | None = await session.get(TAuction, record_id)
                if auction is None:
                    raise RecordNotFoundError(record_id)
                # validates the patch against the current state
                updated = auction.to_record().apply({**patch, "updated_at": utc_now()})
                auction.update({**patch, "updated_at": updated.updated_at})
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"update failed: {record_id}") from err

        self._publish(ChangeKind.UPDATED, [updated])
        return updated

    async def delete(self, record_id: RecordId) -> bool:
        try:
            async with self._session_factory.begin() as session:
                auction: TAuction | None = await session.get(TAuction, record_id)
                if auction is None:
                    return False
                record = auction.to_record()
                await session.execute(delete(TBid).where(TBid.auction_id == record_id))
                await session.delete(auction)
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"delete failed: {record_id}") from err

        self._publish(ChangeKind.DELETED, [record])
        return True

    async def add_bid(self, bid: BidRecord) -> None:
        try:
            async with self._session_factory.begin() as session:
                session.add(TBid.create(bid))
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"add_bid failed: {bid.id}") from err

    async def query_bids(self, record_id: RecordId) -> list[BidRecord]:
        query = (
            select(TBid)
            .where(TBid.auction_id == record_id)
            .order_by(TBid.created_at, TBid.id)
        )
        try:
            async with self._session_factory() as session:
                return [bid.to_record() for bid in await session.scalars(query)]
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"query_bids failed: {record_id}") from err

    async def delete_bids(self, record_id: RecordId) -> int:
        try:
            async with self._session_factory.begin() as session:
                result = await session.execute(delete(TBid).where(TBid.auction_id == record_id))
                return result.rowcount
        except (OperationalError, InterfaceError) as err:
            raise RecordStoreUnavailableError(f"delete_bids failed: {record_id}") from err
