"""
Auction house wiring
"""
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from kioskauction.chain.gateway import ChainGateway
from kioskauction.chain.sui_gateway import SuiJsonRpcGateway
from kioskauction.config import AuctionHouseConfig
from kioskauction.core.retry import RetryPolicy, linear_backoff
from kioskauction.custody import CustodyVerifier
from kioskauction.data import Base, configure_sqlite_engine
from kioskauction.domain.auction import Caller, utc_now
from kioskauction.orchestrator import TransactionOrchestrator
from kioskauction.projector import LiveAuctionProjector
from kioskauction.reconciliation import RecordReconciler
from kioskauction.services.auction_scheduler_service import AuctionSchedulerService
from kioskauction.state_machine.auction_house import AuctionStateMachine
from kioskauction.store.record_store import RecordStore
from kioskauction.store.sqlalchemy_store import SqlAlchemyRecordStore


def retry_policy_from_config(config: AuctionHouseConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry_max_attempts,
        backoff=linear_backoff(config.retry_backoff_step),
        timeout=config.rpc_timeout,
    )


class AuctionHouse:
    """
    Wires the auction house components together.

    The same RetryPolicy instance is shared by the orchestrator, reconciler, custody verifier, state machine and
    projector.
    """

    # pylint: disable=too-many-instance-attributes

    def __init__(
        self,
        config: AuctionHouseConfig,
        store: RecordStore,
        gateway: ChainGateway,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        confirm_delay: timedelta = timedelta(seconds=1),
    ):
        self.config = config
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.retry_policy = retry_policy if retry_policy else retry_policy_from_config(config)

        self.orchestrator = TransactionOrchestrator(gateway, config, self.retry_policy)
        self.reconciler = RecordReconciler(store, self.retry_policy, confirm_delay=confirm_delay)
        self.custody = CustodyVerifier(gateway, config, self.retry_policy)
        self.state_machine = AuctionStateMachine(
            config=config,
            store=store,
            orchestrator=self.orchestrator,
            reconciler=self.reconciler,
            custody=self.custody,
            retry_policy=self.retry_policy,
            clock=clock,
        )
        self.projector = LiveAuctionProjector(config, store, gateway, self.retry_policy, clock)

        self._engine: AsyncEngine | None = None

    def scheduler(self, admin: Caller) -> AuctionSchedulerService:
        """
        :param admin: the scheduler acts with the admin identity
        """
        return AuctionSchedulerService(
            self.state_machine,
            self.store,
            admin,
            poll_interval=self.config.scheduler_poll_interval,
            clock=self.clock,
        )

    @classmethod
    async def create(
        cls,
        config: AuctionHouseConfig,
        database_url: str = "sqlite+aiosqlite:///kioskauction.db",
    ) -> "AuctionHouse":
        """
        Creates the record store tables if needed, and connects to the configured Sui node
        """
        engine = create_async_engine(database_url)
        configure_sqlite_engine(engine)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        store = SqlAlchemyRecordStore(async_sessionmaker(engine, expire_on_commit=False))
        gateway = SuiJsonRpcGateway(config.rpc_url, timeout=config.rpc_timeout.total_seconds())
        auction_house = cls(config, store, gateway)
        auction_house._engine = engine
        return auction_house

    async def close(self):
        if isinstance(self.gateway, SuiJsonRpcGateway):
            await self.gateway.close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
