"""
Reconciliation of record store bookkeeping with chain effects

A chain failure is fatal for an operation. A record store failure after the chain action succeeded is not: the chain
is the irreversible ledger and the record store is a cache of workflow status that can be repaired. This module
implements the second half of that asymmetry.
"""
import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from reactivex import Observable, Subject
from reactivex.operators import observe_on

from kioskauction.core.logging import get_logger
from kioskauction.core.retry import RetryPolicy
from kioskauction.core.rx import default_scheduler
from kioskauction.domain.auction import RecordId
from kioskauction.errors import AuctionHouseError, Divergence, TransientError, ValidationError
from kioskauction.store.record_store import RecordStore

T = TypeVar("T")


class RecordReconciler:
    """
    Verified record writes, chain post-state confirmation and divergence reporting.

    Divergences are logged at WARNING and published on `divergences`.
    """

    def __init__(
        self,
        store: RecordStore,
        retry_policy: RetryPolicy,
        verify_attempts: int = 3,
        confirm_attempts: int = 5,
        confirm_delay: timedelta = timedelta(seconds=1),
    ):
        self._store = store
        self._retry_policy = retry_policy
        self._verify_attempts = verify_attempts
        self._confirm_attempts = confirm_attempts
        self._confirm_delay = confirm_delay
        self._logger = get_logger(self)

        self._divergences_subject: Subject[Divergence] = Subject()
        self.divergences: Observable[Divergence] = self._divergences_subject.pipe(
            observe_on(default_scheduler)
        )

    async def update_record_verified(self, record_id: RecordId, patch: dict[str, Any]) -> bool:
        """
        Writes the patch, then re-reads the record and compares the patched fields.

        The write is retried on mismatch or store errors. Never raises into business logic.

        :return: False if the write could not be verified
        """
        logger = self._logger.getChild("update_record_verified")
        for attempt in range(1, self._verify_attempts + 1):
            try:
                await self._store.update(record_id, patch)
                record = await self._store.get(record_id)
                if record is not None and record.matches(patch):
                    return True
                logger.warning(
                    "record %s does not match patch [attempt %s/%s]: %s",
                    record_id,
                    attempt,
                    self._verify_attempts,
                    sorted(patch),
                )
            except ValidationError as err:
                # retrying an invalid patch cannot succeed
                logger.error("record %s rejected patch: %s", record_id, err)
                return False
            except AuctionHouseError as err:
                logger.warning(
                    "record %s update failed [attempt %s/%s]: %s",
                    record_id,
                    attempt,
                    self._verify_attempts,
                    err,
                )

            if attempt < self._verify_attempts:
                await asyncio.sleep(self._retry_policy.backoff(attempt).total_seconds())

        return False

    async def confirm_chain(
        self,
        description: str,
        probe: Callable[[], Awaitable[T]],
        predicate: Callable[[T], bool],
    ) -> T | None:
        """
        Re-reads chain state until the intended post-state is observed.

        :param probe: fresh chain read, e.g., `lambda: gateway.get_object(auction_id)`
        :return: the confirming observation, or None if it was never observed
        """
        logger = self._logger.getChild("confirm_chain")
        for attempt in range(1, self._confirm_attempts + 1):
            try:
                observed = await self._retry_policy.run(probe, description)
                if predicate(observed):
                    return observed
                logger.debug(
                    "%s not observed yet [attempt %s/%s]", description, attempt, self._confirm_attempts
                )
            except TransientError as err:
                logger.warning(
                    "%s could not be read [attempt %s/%s]: %s",
                    description,
                    attempt,
                    self._confirm_attempts,
                    err,
                )
            if attempt < self._confirm_attempts:
                await asyncio.sleep(self._confirm_delay.total_seconds())

        return None

    async def commit(
        self,
        record_id: RecordId,
        patch: dict[str, Any],
        digest: str | None,
        chain_confirmed: bool = True,
    ) -> Divergence | None:
        """
        Commits the record patch that follows a successful chain action.

        The patch is written only when the chain post-state was confirmed. Never re-attempts the chain action.

        :return: Divergence if the record could not be brought in line with the chain
        """
        if not chain_confirmed:
            return self.report(
                Divergence(record_id, "chain post-state was not confirmed", patch, digest)
            )
        if not await self.update_record_verified(record_id, patch):
            return self.report(
                Divergence(record_id, "record update could not be verified", patch, digest)
            )
        return None

    def report(self, divergence: Divergence) -> Divergence:
        self._logger.warning("%s patch=%s", divergence, divergence.patch)
        self._divergences_subject.on_next(divergence)
        return divergence
