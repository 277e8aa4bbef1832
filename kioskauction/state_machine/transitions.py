"""
Legal auction status transitions
"""
from kioskauction.domain.auction import AuctionStatus, AuctionRecord
from kioskauction.errors import InvalidTransitionError

TRANSITIONS: dict[AuctionStatus, frozenset[AuctionStatus]] = {
    AuctionStatus.PENDING: frozenset(
        {AuctionStatus.QUEUED, AuctionStatus.REJECTED, AuctionStatus.CANCEL_REQUESTED}
    ),
    # approve despite the request -> QUEUED, cancel approved -> REJECTED, cancel denied -> PENDING
    AuctionStatus.CANCEL_REQUESTED: frozenset(
        {AuctionStatus.REJECTED, AuctionStatus.PENDING, AuctionStatus.QUEUED}
    ),
    AuctionStatus.QUEUED: frozenset({AuctionStatus.ACTIVE, AuctionStatus.CANCELED}),
    # CANCELED only for an admin delist of an auction without bids
    AuctionStatus.ACTIVE: frozenset({AuctionStatus.COMPLETED, AuctionStatus.CANCELED}),
    AuctionStatus.COMPLETED: frozenset(),
    AuctionStatus.REJECTED: frozenset(),
    AuctionStatus.CANCELED: frozenset(),
}


def can_transition(source: AuctionStatus, target: AuctionStatus) -> bool:
    return target in TRANSITIONS[AuctionStatus(source)]


def ensure_transition(record: AuctionRecord, target: AuctionStatus) -> None:
    """
    :raises InvalidTransitionError: if the record cannot move to the target status
    """
    if not can_transition(record.status, target):
        raise InvalidTransitionError(
            f"record {record.id} cannot transition {record.status} -> {target}"
        )


def ensure_status(record: AuctionRecord, *allowed: AuctionStatus) -> None:
    """
    :raises InvalidTransitionError: if the record status is not one of the allowed statuses
    """
    if record.status not in allowed:
        raise InvalidTransitionError(
            f"record {record.id} has status {record.status}, expected one of: "
            f"{', '.join(str(status) for status in allowed)}"
        )
