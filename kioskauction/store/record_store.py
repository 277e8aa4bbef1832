"""
Record store port
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Iterable

from reactivex import Observable, Subject
from reactivex.abc import DisposableBase, SchedulerBase
from reactivex.operators import observe_on, filter as rx_filter

from kioskauction.chain.model import Address, ObjectId
from kioskauction.core.rx import default_scheduler
from kioskauction.domain.auction import AuctionRecord, AuctionStatus, RecordId
from kioskauction.domain.bid import BidRecord


@dataclass(slots=True, frozen=True)
class RecordFilter:
    """
    All specified criteria must match. An empty filter matches every record.
    """

    statuses: frozenset[AuctionStatus] | None = None
    seller: Address | None = None
    token_id: ObjectId | None = None
    auction_object_id: ObjectId | None = None

    @classmethod
    def with_status(cls, *statuses: AuctionStatus) -> "RecordFilter":
        return cls(statuses=frozenset(statuses))

    def matches(self, record: AuctionRecord) -> bool:
        if self.statuses is not None and record.status not in self.statuses:
            return False
        if self.seller is not None and record.seller != self.seller:
            return False
        if self.token_id is not None and record.token_id != self.token_id:
            return False
        if self.auction_object_id is not None and record.auction_object_id != self.auction_object_id:
            return False
        return True


class ChangeKind(StrEnum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(slots=True, frozen=True)
class RecordsChangedEvent:
    """
    :param record: state after the change; for deletes, the last known state
    """

    kind: ChangeKind
    record: AuctionRecord

    @property
    def record_id(self) -> RecordId:
        return self.record.id


class RecordStore(ABC):
    """
    Auction and bid record storage with change notification.

    Record changes are published on `records_changed`, observed on the shared thread pool scheduler.
    Store failures are raised as RecordStoreUnavailableError.
    """

    def __init__(self):
        self._records_changed_subject: Subject[RecordsChangedEvent] = Subject()
        self.records_changed: Observable[RecordsChangedEvent] = self._records_changed_subject.pipe(
            observe_on(default_scheduler)
        )

    def subscribe(
        self,
        record_filter: RecordFilter,
        on_change: Callable[[RecordsChangedEvent], None],
        scheduler: SchedulerBase | None = None,
    ) -> DisposableBase:
        """
        Notifies `on_change` for every change to a record that matches the filter.

        :param scheduler: defaults to the shared thread pool scheduler
        :return: dispose it to unsubscribe
        """
        return self._records_changed_subject.pipe(
            rx_filter(lambda event: record_filter.matches(event.record)),
            observe_on(scheduler if scheduler else default_scheduler),
        ).subscribe(on_next=on_change)

    def _publish(self, kind: ChangeKind, records: Iterable[AuctionRecord]):
        for record in records:
            self._records_changed_subject.on_next(RecordsChangedEvent(kind, record))

    @abstractmethod
    async def get(self, record_id: RecordId) -> AuctionRecord | None:
        """
        :return: None if the record does not exist
        """

    @abstractmethod
    async def query(self, record_filter: RecordFilter) -> list[AuctionRecord]:
        """
        :return: matching records ordered by created_at
        """

    @abstractmethod
    async def add(self, record: AuctionRecord) -> RecordId:
        ...

    @abstractmethod
    async def update(self, record_id: RecordId, patch: dict[str, Any]) -> AuctionRecord:
        """
        Applies the patch to a single record. `updated_at` is stamped.

        :raises RecordNotFoundError: if the record does not exist
        :raises ValidationError: if the patch is invalid, see `AuctionRecord.apply`
        """

    @abstractmethod
    async def delete(self, record_id: RecordId) -> bool:
        """
        Deletes the record and its bids

        :return: False if the record did not exist
        """

    @abstractmethod
    async def add_bid(self, bid: BidRecord) -> None:
        ...

    @abstractmethod
    async def query_bids(self, record_id: RecordId) -> list[BidRecord]:
        """
        :return: bids ordered by created_at
        """

    @abstractmethod
    async def delete_bids(self, record_id: RecordId) -> int:
        """
        :return: number of deleted bids
        """
