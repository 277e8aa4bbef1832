import asyncio
import tempfile
import unittest
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from kioskauction.app import AuctionHouse
from kioskauction.chain.model import Address, ObjectId
from kioskauction.config import AuctionHouseConfig, MIST_PER_SUI
from kioskauction.core.retry import RetryPolicy, fixed_backoff
from kioskauction.data import Base, configure_sqlite_engine
from kioskauction.domain.auction import AuctionRecord, AuctionStatus, Caller, RecordId, new_record_id
from kioskauction.domain.bid import BidRecord
from kioskauction.errors import RecordStoreUnavailableError
from kioskauction.store.sqlalchemy_store import SqlAlchemyRecordStore
from tests.support.fake_chain import NFT_TYPE, FakeChain, FakeClock, FakeSigner, random_address, random_object_id
from tests.test_support import KioskAuctionIsolatedAsyncioTestCase


T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def auction_record(
    seller: Address | None = None,
    created_at: datetime = T0,
    status: AuctionStatus = AuctionStatus.PENDING,
    is_priority: bool = False,
) -> AuctionRecord:
    return AuctionRecord(
        id=new_record_id(),
        token_id=random_object_id(),
        collection_type=str(NFT_TYPE),
        seller=seller if seller else random_address(),
        starting_bid=1_000_000_000,
        auction_duration_hours=24,
        is_priority=is_priority,
        status=status,
        name="Sui Fren #7",
        current_bid=1_000_000_000,
        created_at=created_at,
    )


class FlakyRecordStore(SqlAlchemyRecordStore):
    """
    Record store whose writes can be made to fail or to be silently lost
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # number of upcoming updates that fail
        self.update_failures = 0
        self.updates_offline = False
        self.drop_updates = False
        self.adds_offline = False
        self.bids_offline = False
        self.delete_bids_delay = timedelta(0)

    async def update(self, record_id: RecordId, patch: dict[str, Any]) -> AuctionRecord:
        if self.updates_offline:
            raise RecordStoreUnavailableError(f"update failed: {record_id}")
        if self.update_failures > 0:
            self.update_failures -= 1
            raise RecordStoreUnavailableError(f"update failed: {record_id}")
        if self.drop_updates:
            record = await self.get(record_id)
            assert record is not None
            return record
        return await super().update(record_id, patch)

    async def add(self, record: AuctionRecord) -> RecordId:
        if self.adds_offline:
            raise RecordStoreUnavailableError(f"add failed: {record.id}")
        return await super().add(record)

    async def add_bid(self, bid: BidRecord) -> None:
        if self.bids_offline:
            raise RecordStoreUnavailableError(f"add_bid failed: {bid.id}")
        await super().add_bid(bid)

    async def delete_bids(self, record_id: RecordId) -> int:
        if self.bids_offline:
            raise RecordStoreUnavailableError(f"delete_bids failed: {record_id}")
        await asyncio.sleep(self.delete_bids_delay.total_seconds())
        return await super().delete_bids(record_id)


def temp_database(test: unittest.TestCase) -> Path:
    """
    :return: path of a sqlite database file in a temp directory that is removed when the test is cleaned up
    """
    database_dir = tempfile.TemporaryDirectory()
    test.addCleanup(database_dir.cleanup)
    return Path(database_dir.name) / "kioskauction.db"


async def create_record_store(database: Path) -> tuple[FlakyRecordStore, Any]:
    """
    :param database: sqlite database file
    :return: (store, engine); dispose the engine when done
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{database}")
    configure_sqlite_engine(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return FlakyRecordStore(async_sessionmaker(engine, expire_on_commit=False)), engine


def fast_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        backoff=fixed_backoff(timedelta(0)),
        timeout=timedelta(seconds=5),
    )


class AuctionHouseTestCase(KioskAuctionIsolatedAsyncioTestCase):
    """
    Auction house wired to the fake chain, a record store backed by a per-test sqlite file and a fake clock.

    The shared custody kiosk exists and the admin owns its kiosk owner cap.
    """

    config_overrides: dict[str, Any] = {}

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.clock = FakeClock()
        self.config = AuctionHouseConfig(
            **{"submission_retry_backoff": timedelta(0), **self.config_overrides}
        )
        self.chain = FakeChain(self.config, self.clock)
        self.chain.create_kiosk(
            self.config.admin_address, self.config.shared_kiosk_id, self.config.kiosk_owner_cap_id
        )

        self.store, self.engine = await create_record_store(temp_database(self))
        self.retry_policy = fast_retry_policy()
        self.house = AuctionHouse(
            self.config,
            self.store,
            self.chain,
            retry_policy=self.retry_policy,
            clock=self.clock,
            confirm_delay=timedelta(0),
        )
        self.auctions = self.house.state_machine
        self.admin = self.caller(self.config.admin_address, 1_000 * MIST_PER_SUI)

    async def asyncTearDown(self) -> None:
        await self.engine.dispose()
        await super().asyncTearDown()

    def caller(self, address: Address | None = None, balance: int = 100 * MIST_PER_SUI) -> Caller:
        address = Address(address) if address else random_address()
        self.chain.set_balance(address, balance)
        return Caller(address, FakeSigner(self.chain, address))

    def mint(self, owner: Caller, name: str = "Sui Fren") -> ObjectId:
        return self.chain.mint_nft(owner.address, name)

    async def submit(
        self,
        seller: Caller,
        starting_bid: int = MIST_PER_SUI,
        duration_hours: int = 1,
        is_priority: bool = False,
        name: str = "Sui Fren",
    ) -> AuctionRecord:
        # distinct created_at values keep the queue order deterministic
        self.clock.advance(timedelta(seconds=1))
        token_id = self.mint(seller, name)
        result = await self.auctions.submit(seller, token_id, starting_bid, duration_hours, is_priority)
        self.assertIsNone(result.divergence)
        return result.record

    async def queue(self, seller: Caller, **kwargs) -> AuctionRecord:
        record = await self.submit(seller, **kwargs)
        result = await self.auctions.approve(self.admin, record.id)
        self.assertIsNone(result.divergence)
        return result.record

    async def start_auction(self, seller: Caller, **kwargs) -> AuctionRecord:
        record = await self.queue(seller, **kwargs)
        result = await self.auctions.activate(self.admin, record.id)
        self.assertIsNone(result.divergence)
        return result.record

    async def get(self, record_id: RecordId) -> AuctionRecord:
        record = await self.store.get(record_id)
        assert record is not None
        return record
