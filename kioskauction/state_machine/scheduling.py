"""
Queue scheduling policy

Pure functions of the record set: the result never depends on the order in which records are passed in.
"""
from datetime import datetime, timedelta, MINYEAR, UTC
from typing import Iterable

from kioskauction.domain.auction import AuctionRecord, AuctionStatus

_EPOCH_MIN = datetime(MINYEAR, 1, 1, tzinfo=UTC)


def queue_key(record: AuctionRecord) -> tuple[bool, datetime, str]:
    """
    priority first, then earlier created_at, then record id
    """
    return (not record.is_priority, record.created_at or _EPOCH_MIN, record.id)


def queue_order(records: Iterable[AuctionRecord]) -> list[AuctionRecord]:
    """
    :return: queued records in activation order
    """
    return sorted(
        (record for record in records if record.status == AuctionStatus.QUEUED),
        key=queue_key,
    )


def select_next(records: Iterable[AuctionRecord]) -> AuctionRecord | None:
    """
    :return: the head of the queue, None if nothing is queued
    """
    ordered = queue_order(records)
    return ordered[0] if ordered else None


def cooldown_until(records: Iterable[AuctionRecord], cooldown: timedelta) -> datetime | None:
    """
    :return: end of the cooldown that follows the most recently completed auction, None if nothing ever completed
    """
    completed_at = [
        record.completed_at
        for record in records
        if record.status == AuctionStatus.COMPLETED and record.completed_at is not None
    ]
    if not completed_at:
        return None
    return max(completed_at) + cooldown


def is_cooldown_active(
    records: Iterable[AuctionRecord], cooldown: timedelta, now: datetime
) -> bool:
    until = cooldown_until(records, cooldown)
    return until is not None and now < until


def lane_is_free(records: Iterable[AuctionRecord]) -> bool:
    return all(record.status != AuctionStatus.ACTIVE for record in records)
