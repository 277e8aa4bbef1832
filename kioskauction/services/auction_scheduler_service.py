"""
Auction scheduler service
"""
import asyncio
from datetime import datetime, timedelta
from typing import Callable

from reactivex.abc import DisposableBase

from kioskauction.core.async_service import AsyncService
from kioskauction.domain.auction import AuctionRecord, AuctionStatus, Caller, RecordId, utc_now
from kioskauction.errors import AuctionHouseError
from kioskauction.state_machine.auction_house import AuctionStateMachine
from kioskauction.store.record_store import RecordFilter, RecordStore, RecordsChangedEvent


class AuctionSchedulerService(AsyncService):
    """
    Drives the auction lane:
    - owns exactly one expiry task per active auction; the task ends the auction once the chain end time is reached
    - activates the head of the queue when the lane is free and the cooldown has elapsed

    The service acts with the admin identity. It polls at `poll_interval`, and is woken up early by record changes.

    Notes
    -----
    - An auction ended manually before its expiry task fires is not ended twice: `end_auction` returns the
      completed record unchanged.
    - Failures are logged and retried on the next tick.
    - An expiry task is only cancelled while it is still waiting for the end time. Once it has called
      `end_auction` it runs to completion, because settlement also deletes the auction's bid records.
    - Ticks are serialized.
    """

    def __init__(
        self,
        state_machine: AuctionStateMachine,
        store: RecordStore,
        admin: Caller,
        poll_interval: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__()
        self._state_machine = state_machine
        self._store = store
        self._admin = admin
        self._poll_interval = poll_interval
        self._clock = clock

        self._expiry_tasks: dict[RecordId, asyncio.Task] = {}
        # records whose expiry task is ending the auction
        self._closing: set[RecordId] = set()
        self._tick_lock = asyncio.Lock()
        self._wakeup: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscription: DisposableBase | None = None

    @property
    def expiry_tasks(self) -> dict[RecordId, asyncio.Task]:
        return dict(self._expiry_tasks)

    async def _start(self):
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._subscription = self._state_machine.on_records_changed(self._on_records_changed)
        self._spawn(self._run(), "run")

    async def _stop(self):
        if self._subscription:
            self._subscription.dispose()
            self._subscription = None
        self._expiry_tasks.clear()
        self._closing.clear()

    def _on_records_changed(self, _event: RecordsChangedEvent):
        # invoked on a thread pool thread
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)

    async def _run(self):
        assert self._wakeup is not None
        while True:
            try:
                await self.tick()
            except AuctionHouseError as err:
                self._logger.warning("scheduler tick failed: %s", err)
            try:
                await asyncio.wait_for(self._wakeup.wait(), self._poll_interval.total_seconds())
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def tick(self):
        """
        Reconciles expiry tasks with the active records, then activates the queue head if the lane is free
        """
        async with self._tick_lock:
            active = await self._store.query(RecordFilter.with_status(AuctionStatus.ACTIVE))
            active_ids = {record.id for record in active}

            for record_id in list(self._expiry_tasks):
                if record_id not in active_ids:
                    task = self._expiry_tasks.pop(record_id)
                    if record_id not in self._closing:
                        task.cancel()

            for record in active:
                task = self._expiry_tasks.get(record.id)
                if task is None or task.done():
                    self._expiry_tasks[record.id] = self._spawn(self._expire(record), f"expire.{record.id}")

            if not active:
                result = await self._state_machine.activate_next(self._admin)
                if result is not None:
                    self._logger.info("activated queue head: record=%s", result.record.id)

    async def _expire(self, record: AuctionRecord):
        assert record.auction_object_id is not None
        auction = await self._state_machine.read_auction(record.auction_object_id)
        if auction is None:
            self._logger.error("auction object does not exist: record=%s", record.id)
            return

        while self._clock() < auction.end_time:
            remaining = (auction.end_time - self._clock()).total_seconds()
            await asyncio.sleep(max(0.0, min(remaining, self._poll_interval.total_seconds())))

        self._closing.add(record.id)
        try:
            result = await self._state_machine.end_auction(self._admin, record.id)
            self._logger.info(
                "auction expired: record=%s status=%s winner=%s",
                record.id,
                result.record.status,
                result.record.winner,
            )
        except AuctionHouseError as err:
            self._logger.error("auction could not be ended: record=%s : %s", record.id, err)
        finally:
            self._closing.discard(record.id)
            if self._wakeup is not None:
                self._wakeup.set()
