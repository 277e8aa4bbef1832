"""
Auction workflow state machine

Maps seller, bidder and admin intents to chain transactions plus reconciled record updates.

Rules that hold for every operation:
- the caller identity is explicit; admin operations check it before any read, chain call or mutation
- custody is re-read from the chain before every state changing call
- operations on the same record are serialized
- record updates that follow a chain action are committed through the reconciler; a record update that cannot be
  verified never undoes or repeats the chain action, it is reported as a Divergence on the result
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from reactivex.abc import DisposableBase, SchedulerBase

from kioskauction.chain.model import Address, MoveType, ObjectId
from kioskauction.chain.transactions import MarketplaceTransactions, TransactionDraft
from kioskauction.config import AuctionHouseConfig
from kioskauction.core.locks import KeyedLocks
from kioskauction.core.logging import get_logger
from kioskauction.core.retry import RetryPolicy
from kioskauction.custody import CustodyVerifier, NftLocationKind
from kioskauction.domain.auction import (
    AuctionRecord,
    AuctionStatus,
    Caller,
    RecordId,
    new_record_id,
    utc_now,
)
from kioskauction.domain.bid import BidRecord, new_bid_id
from kioskauction.domain.chain_auction import ChainAuction, AUCTION_STATUS_LIVE
from kioskauction.errors import (
    ActiveAuctionExistsError,
    AuctionEndedError,
    AuctionHouseError,
    BidTooLowError,
    BookkeepingError,
    ChainTimeoutError,
    CooldownActiveError,
    CustodyError,
    Divergence,
    DuplicateSubmissionError,
    MissingFieldError,
    NotQueueHeadError,
    RecordNotFoundError,
    TransactionFailedError,
    UnauthorizedError,
    UnexpectedChainStateError,
    ValidationError,
)
from kioskauction.orchestrator import TransactionOrchestrator, TransactionResult
from kioskauction.reconciliation import RecordReconciler
from kioskauction.state_machine import scheduling
from kioskauction.state_machine.transitions import ensure_status, ensure_transition
from kioskauction.store.record_store import RecordFilter, RecordStore, RecordsChangedEvent

CANCEL_APPROVED = "cancel approved"

# statuses needed to decide whether an auction may be activated
_LANE_STATUSES = RecordFilter.with_status(
    AuctionStatus.ACTIVE, AuctionStatus.QUEUED, AuctionStatus.COMPLETED
)


@dataclass(slots=True, frozen=True)
class ActionResult:
    """
    :param digest: None when no transaction was needed, e.g., the chain already was in the target state
    :param divergence: set when the chain action succeeded but the record could not be updated
    """

    record: AuctionRecord
    digest: str | None = None
    divergence: Divergence | None = None


@dataclass(slots=True, frozen=True)
class BidResult(ActionResult):
    bid: BidRecord | None = None


class AuctionStateMachine:
    """
    Auction workflow operations
    """

    # pylint: disable=too-many-instance-attributes,too-many-arguments

    def __init__(
        self,
        config: AuctionHouseConfig,
        store: RecordStore,
        orchestrator: TransactionOrchestrator,
        reconciler: RecordReconciler,
        custody: CustodyVerifier,
        retry_policy: RetryPolicy,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._store = store
        self._orchestrator = orchestrator
        self._reconciler = reconciler
        self._custody = custody
        self._retry_policy = retry_policy
        self._clock = clock
        self._tx = MarketplaceTransactions(config.package_id)
        self._locks = KeyedLocks()
        self._logger = get_logger(self)

    @property
    def config(self) -> AuctionHouseConfig:
        return self._config

    def on_records_changed(
        self,
        callback: Callable[[RecordsChangedEvent], None],
        record_filter: RecordFilter = RecordFilter(),
        scheduler: SchedulerBase | None = None,
    ) -> DisposableBase:
        """
        Subscription port for the presentation layer and the scheduler
        """
        return self._store.subscribe(record_filter, callback, scheduler)

    # ----------------------------------------------------------------------------------------------------------------
    # seller operations

    async def submit(
        self,
        caller: Caller,
        token_id: str,
        starting_bid: int,
        duration_hours: int,
        is_priority: bool = False,
        source_kiosk_id: str | None = None,
    ) -> ActionResult:
        """
        Moves the seller's NFT into admin escrow and creates a pending record.

        If the NFT is held in a kiosk, `source_kiosk_id` must name it and the seller must own its kiosk owner cap.
        The NFT is taken out of the kiosk first.
        """
        self._require_signer(caller)
        token_id = ObjectId(token_id)
        kiosk_id = ObjectId(source_kiosk_id) if source_kiosk_id else None
        _require_positive_int("starting_bid", starting_bid)
        _require_positive_int("duration_hours", duration_hours)

        async with self._locks.hold(f"token:{token_id}"):
            existing = await self._query(RecordFilter(token_id=token_id))
            if any(record.status.is_open for record in existing):
                raise DuplicateSubmissionError(f"NFT already has an open auction record: {token_id}")

            location = await self._custody.locate(token_id, kiosk_id)
            if location.kind == NftLocationKind.MISSING:
                raise CustodyError(f"NFT does not exist: {token_id}")
            if location.kind == NftLocationKind.ADDRESS and location.owner != caller.address:
                raise CustodyError(f"NFT {token_id} is not owned by {caller.address}")
            if location.kind == NftLocationKind.OTHER_CONTAINER:
                raise CustodyError(
                    f"NFT {token_id} is held by an object; the kiosk holding it must be specified"
                )
            if location.kind == NftLocationKind.KIOSK:
                assert kiosk_id is not None
                await self._exit_seller_kiosk(caller, token_id, kiosk_id)

            nft = await self._custody.require_owned_by(token_id, caller.address)
            draft = MarketplaceTransactions.public_transfer(
                caller.address, token_id, nft.type, self._config.admin_address
            )
            result = await self._submit_with_recheck(
                caller,
                draft,
                already_done=lambda: self._is_owned_by(token_id, self._config.admin_address),
                preconditions=lambda: self._custody.require_owned_by(token_id, caller.address),
            )
            digest = result.digest if result else None
            escrowed = await self._reconciler.confirm_chain(
                f"escrow {token_id}",
                lambda: self._custody.locate(token_id),
                lambda loc: loc.is_owned_by(self._config.admin_address),
            )

            now = self._clock()
            record = AuctionRecord(
                id=new_record_id(),
                token_id=token_id,
                collection_type=str(nft.type),
                seller=caller.address,
                starting_bid=starting_bid,
                auction_duration_hours=duration_hours,
                is_priority=is_priority,
                status=AuctionStatus.PENDING,
                name=_display_name(nft.fields),
                current_bid=starting_bid,
                created_at=now,
            )
            if escrowed is None:
                divergence = self._reconciler.report(
                    Divergence(record.id, "escrow transfer was not confirmed", {}, digest)
                )
                return ActionResult(record, digest, divergence)

            try:
                await self._retry_policy.run(lambda: self._store.add(record), f"add record {record.id}")
            except AuctionHouseError as err:
                self._logger.error("record could not be created for escrowed NFT %s: %s", token_id, err)
                divergence = self._reconciler.report(
                    Divergence(record.id, "record could not be created", {"status": record.status}, digest)
                )
                return ActionResult(record, digest, divergence)

            self._logger.info("submitted: record=%s token=%s seller=%s", record.id, token_id, caller.address)
            return ActionResult(record, digest)

    async def _exit_seller_kiosk(self, caller: Caller, token_id: ObjectId, kiosk_id: ObjectId):
        cap = await self._custody.find_owner_cap(caller.address, kiosk_id)
        if cap is None:
            raise CustodyError(f"{caller.address} does not own the kiosk owner cap for kiosk {kiosk_id}")
        nft = await self._custody.get_object(token_id)
        if nft is None:
            raise CustodyError(f"NFT does not exist: {token_id}")

        draft = MarketplaceTransactions.kiosk_take_and_transfer(
            caller.address, kiosk_id, cap.object_id, token_id, nft.type, caller.address
        )
        await self._submit_with_recheck(
            caller,
            draft,
            already_done=lambda: self._is_owned_by(token_id, caller.address),
            preconditions=lambda: self._require_in_custody(kiosk_id, token_id),
        )
        confirmed = await self._reconciler.confirm_chain(
            f"exit kiosk {kiosk_id}",
            lambda: self._custody.locate(token_id),
            lambda loc: loc.is_owned_by(caller.address),
        )
        if confirmed is None:
            raise UnexpectedChainStateError(f"NFT {token_id} was not observed leaving kiosk {kiosk_id}")

    async def request_cancel(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Seller asks to get a pending NFT back. Record-only: the admin resolves the request.

        :raises BookkeepingError: if the record update could not be verified
        """
        self._require_signer(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            if record.seller != caller.address:
                raise UnauthorizedError(f"only the seller can cancel record {record_id}")
            ensure_status(record, AuctionStatus.PENDING)
            ensure_transition(record, AuctionStatus.CANCEL_REQUESTED)
            await self._custody.require_owned_by(record.token_id, self._config.admin_address)

            patch = {
                "status": AuctionStatus.CANCEL_REQUESTED,
                "cancel_requested_at": self._clock(),
            }
            if not await self._reconciler.update_record_verified(record.id, patch):
                raise BookkeepingError(f"cancel request could not be recorded: {record_id}")
            return ActionResult(record.apply(patch))

    # ----------------------------------------------------------------------------------------------------------------
    # admin moderation

    async def approve(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Places the escrowed NFT into the shared kiosk and queues the record.

        Re-approving a record whose NFT is already in the kiosk skips the transaction.
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.PENDING, AuctionStatus.CANCEL_REQUESTED)
            ensure_transition(record, AuctionStatus.QUEUED)

            kiosk_id = self._config.shared_kiosk_id
            cap_id = self._config.kiosk_owner_cap_id
            await self._custody.verify_custody_container(kiosk_id, cap_id)

            digest = None
            if await self._custody.is_in_custody(kiosk_id, record.token_id):
                self._logger.info("NFT already in custody, skipping place_nft: record=%s", record.id)
            else:
                nft = await self._custody.require_owned_by(record.token_id, self._config.admin_address)
                draft = self._tx.place_nft(caller.address, kiosk_id, cap_id, record.token_id, nft.type)
                result = await self._submit_with_recheck(
                    caller,
                    draft,
                    already_done=lambda: self._custody.is_in_custody(kiosk_id, record.token_id),
                    preconditions=lambda: self._custody.require_owned_by(
                        record.token_id, self._config.admin_address
                    ),
                )
                digest = result.digest if result else None

            confirmed = await self._reconciler.confirm_chain(
                f"place {record.token_id}",
                lambda: self._custody.is_in_custody(kiosk_id, record.token_id),
                bool,
            )
            patch = {
                "status": AuctionStatus.QUEUED,
                "kiosk_id": kiosk_id,
                "custody_cap_id": cap_id,
                "status_reason": None,
            }
            return await self._commit(record, patch, digest, confirmed is not None)

    async def reject(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Returns the escrowed NFT to the seller
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.PENDING, AuctionStatus.CANCEL_REQUESTED)
            return await self._return_to_seller(caller, record, None)

    async def resolve_cancel_request(
        self, caller: Caller, record_id: RecordId, approved: bool
    ) -> ActionResult:
        """
        approved: the NFT is returned to the seller and the record is rejected with reason 'cancel approved'
        denied: the record goes back to pending
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.CANCEL_REQUESTED)
            if approved:
                return await self._return_to_seller(caller, record, CANCEL_APPROVED)

            ensure_transition(record, AuctionStatus.PENDING)
            await self._custody.require_owned_by(record.token_id, self._config.admin_address)
            patch = {"status": AuctionStatus.PENDING, "cancel_requested_at": None}
            if not await self._reconciler.update_record_verified(record.id, patch):
                raise BookkeepingError(f"cancel request denial could not be recorded: {record_id}")
            return ActionResult(record.apply(patch))

    async def _return_to_seller(
        self, caller: Caller, record: AuctionRecord, reason: str | None
    ) -> ActionResult:
        ensure_transition(record, AuctionStatus.REJECTED)
        admin = self._config.admin_address

        digest = None
        location = await self._custody.locate(record.token_id)
        if location.is_owned_by(record.seller):
            self._logger.info("NFT already returned to seller: record=%s", record.id)
        elif location.is_owned_by(admin):
            nft = location.nft
            assert nft is not None
            draft = MarketplaceTransactions.public_transfer(admin, record.token_id, nft.type, record.seller)
            result = await self._submit_with_recheck(
                caller,
                draft,
                already_done=lambda: self._is_owned_by(record.token_id, record.seller),
                preconditions=lambda: self._custody.require_owned_by(record.token_id, admin),
            )
            digest = result.digest if result else None
        else:
            raise CustodyError(
                f"NFT {record.token_id} is not in admin escrow: {location.kind} {location.owner or ''}".strip()
            )

        confirmed = await self._reconciler.confirm_chain(
            f"return {record.token_id}",
            lambda: self._custody.locate(record.token_id),
            lambda loc: loc.is_owned_by(record.seller),
        )
        patch = {
            "status": AuctionStatus.REJECTED,
            "nft_transferred": True,
            "nft_transferred_at": self._clock(),
            "status_reason": reason,
        }
        return await self._commit(record, patch, digest, confirmed is not None)

    # ----------------------------------------------------------------------------------------------------------------
    # auction lane

    async def activate(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Creates the on-chain auction for the head of the queue.

        Preconditions: no active record, cooldown elapsed, the record is the queue head.
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            await self._check_activation(record)
            if record.kiosk_id is None or record.custody_cap_id is None:
                raise MissingFieldError(f"record {record.id} has no custody handles")
            kiosk_id, cap_id = record.kiosk_id, record.custody_cap_id

            await self._custody.verify_custody_container(kiosk_id, cap_id)
            await self._require_in_custody(kiosk_id, record.token_id)

            draft = self._tx.list_nft(
                caller.address,
                kiosk_id,
                cap_id,
                record.token_id,
                MoveType.parse(record.collection_type),
                record.starting_bid,
                record.duration_ms,
            )

            async def preconditions():
                await self._check_activation(await self._get(record.id))
                await self._require_in_custody(kiosk_id, record.token_id)

            try:
                result = await self._submit_with_recheck(
                    caller,
                    draft,
                    already_done=_never,
                    preconditions=preconditions,
                )
            except TransactionFailedError as err:
                # another activation may have won the lane on chain
                if not scheduling.lane_is_free(await self._query(_LANE_STATUSES)):
                    raise ActiveAuctionExistsError(
                        f"another auction became active while activating {record.id}"
                    ) from err
                raise
            assert result is not None

            created = result.created_of_type(self._tx.auction_type)
            if not created:
                divergence = self._reconciler.report(
                    Divergence(record.id, "auction object not found in transaction effects", {}, result.digest)
                )
                return ActionResult(record, result.digest, divergence)
            auction_id = created[0].object_id

            auction = await self._reconciler.confirm_chain(
                f"auction {auction_id}",
                lambda: self.read_auction(auction_id),
                lambda obj: obj is not None,
            )
            patch = {
                "status": AuctionStatus.ACTIVE,
                "started_at": self._clock(),
                "auction_object_id": auction_id,
                "current_bid": auction.current_bid if auction else record.starting_bid,
                "highest_bidder": None,
            }
            self._logger.info("activated: record=%s auction=%s", record.id, auction_id)
            return await self._commit(record, patch, result.digest, auction is not None)

    async def activate_next(self, caller: Caller) -> ActionResult | None:
        """
        Activates the head of the queue when the lane is free and the cooldown has elapsed.

        :return: None if the lane is busy, the cooldown is running or nothing is queued
        """
        self._require_admin(caller)
        records = await self._query(_LANE_STATUSES)
        if not scheduling.lane_is_free(records):
            return None
        if scheduling.is_cooldown_active(records, self._config.cooldown, self._clock()):
            return None
        head = scheduling.select_next(records)
        if head is None:
            return None
        return await self.activate(caller, head.id)

    async def _check_activation(self, record: AuctionRecord):
        records = await self._query(_LANE_STATUSES)
        if not scheduling.lane_is_free(records):
            raise ActiveAuctionExistsError("an auction is already active")
        until = scheduling.cooldown_until(records, self._config.cooldown)
        if until is not None and self._clock() < until:
            raise CooldownActiveError(until)
        ensure_status(record, AuctionStatus.QUEUED)
        ensure_transition(record, AuctionStatus.ACTIVE)
        head = scheduling.select_next(records)
        if head is None or head.id != record.id:
            raise NotQueueHeadError(
                f"record {record.id} is not the head of the queue: head={head.id if head else None}"
            )

    async def place_bid(self, caller: Caller, record_id: RecordId, amount: int) -> BidResult:
        """
        Bids on the live auction.

        The bid must be greater than the chain's current bid plus the minimum increment. Bids are never resubmitted:
        a failed bid is reported to the bidder, an unknown outcome is resolved by re-reading the auction.
        """
        self._require_signer(caller)
        _require_positive_int("amount", amount)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.ACTIVE)
            auction_id = _auction_object_id(record)

            auction = await self._require_auction(auction_id)
            if auction.is_ended(self._clock()):
                raise AuctionEndedError(f"auction has ended: record={record.id}")
            minimum_exclusive = auction.current_bid + self._config.min_bid_increment
            if amount <= minimum_exclusive:
                raise BidTooLowError(amount, minimum_exclusive)

            draft = self._tx.place_bid(caller.address, auction_id, amount)
            digest = None
            try:
                result = await self._orchestrator.execute(draft, caller.signer, spend=amount)
                digest = result.digest
            except ChainTimeoutError:
                post = await self.read_auction(auction_id)
                if post is None or post.highest_bidder != caller.address or post.current_bid != amount:
                    raise
                self._logger.warning("bid outcome resolved by re-read: record=%s", record.id)

            bid = BidRecord(
                id=new_bid_id(),
                auction_id=record.id,
                bidder=caller.address,
                amount=amount,
                digest=digest or "",
                created_at=self._clock(),
            )
            try:
                await self._retry_policy.run(lambda: self._store.add_bid(bid), f"add bid {bid.id}")
            except AuctionHouseError as err:
                # bid records only bridge latency, the chain holds the bid
                self._logger.warning("bid record could not be stored: %s", err)

            post = await self._reconciler.confirm_chain(
                f"bid on {auction_id}",
                lambda: self.read_auction(auction_id),
                lambda obj: obj is not None and obj.current_bid >= amount,
            )
            patch: dict[str, Any] = {}
            if post is not None:
                patch = {"current_bid": post.current_bid, "highest_bidder": post.highest_bidder}
            action = await self._commit(record, patch, digest, post is not None)
            self._logger.info("bid placed: record=%s bidder=%s amount=%s", record.id, caller.address, amount)
            return BidResult(action.record, action.digest, action.divergence, bid)

    async def end_auction(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Closes the auction and settles the record from the post-close chain read.

        Idempotent: a completed record is returned unchanged, and the close transaction is skipped when the chain
        already reports the auction as ended.
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            if record.status == AuctionStatus.COMPLETED:
                return ActionResult(record)
            ensure_status(record, AuctionStatus.ACTIVE)
            auction = await self._require_auction(_auction_object_id(record))
            return await self._close_and_settle(caller, record, auction, proceeds=None)

    async def release_funds(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Recovery path: ends the chain auction if it is still live and settles the record using the escrowed balance
        read before the close.
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.ACTIVE, AuctionStatus.COMPLETED)
            if record.status == AuctionStatus.COMPLETED and record.fee_amount is not None:
                return ActionResult(record)

            auction = await self._require_auction(_auction_object_id(record))
            if record.kiosk_id is not None:
                location = await self._custody.locate(record.token_id, record.kiosk_id)
                self._logger.info("release funds: record=%s nft location=%s", record.id, location.kind)
            return await self._close_and_settle(caller, record, auction, proceeds=auction.balance, early=True)

    async def _close_and_settle(
        self,
        caller: Caller,
        record: AuctionRecord,
        auction: ChainAuction,
        proceeds: int | None,
        early: bool = False,
    ) -> ActionResult:
        """
        :param proceeds: amount used for the fee split; defaults to the final bid
        :param early: when True, a live auction is closed even if its end time has not been reached yet
        """
        if record.status != AuctionStatus.COMPLETED:
            ensure_transition(record, AuctionStatus.COMPLETED)
        digest = None
        if auction.status == AUCTION_STATUS_LIVE:
            if self._clock() < auction.end_time:
                if not early:
                    raise ValidationError(
                        f"auction for record {record.id} ends at {auction.end_time.isoformat()}"
                    )
                self._logger.warning(
                    "ending auction before its end time: record=%s end_time=%s",
                    record.id,
                    auction.end_time.isoformat(),
                )
            draft = self._tx.end_auction(caller.address, auction.object_id)
            result = await self._submit_with_recheck(
                caller,
                draft,
                already_done=lambda: self._auction_closed(auction.object_id),
                preconditions=lambda: self._require_auction(auction.object_id),
            )
            digest = result.digest if result else None
            post = await self._reconciler.confirm_chain(
                f"close {auction.object_id}",
                lambda: self.read_auction(auction.object_id),
                lambda obj: obj is not None and obj.status != AUCTION_STATUS_LIVE,
            )
        else:
            self._logger.info("auction already ended on chain, skipping close: record=%s", record.id)
            post = auction

        if post is None:
            divergence = self._reconciler.report(
                Divergence(record.id, "auction close was not confirmed", {}, digest)
            )
            return ActionResult(record, digest, divergence)

        winner = post.winner(record.seller)
        final_bid = post.current_bid
        fee_amount, seller_amount = 0, 0
        if winner is not None:
            settled = final_bid if proceeds is None else proceeds
            fee_amount = settled * self._config.fee_bps // 10_000
            seller_amount = settled - fee_amount

        patch = {
            "status": AuctionStatus.COMPLETED,
            "completed_at": record.completed_at if record.completed_at else self._clock(),
            "current_bid": post.current_bid,
            "highest_bidder": post.highest_bidder,
            "winner": winner,
            "final_bid": final_bid,
            "fee_amount": fee_amount,
            "seller_amount": seller_amount,
        }
        action = await self._commit(record, patch, digest, True)
        if action.divergence is None:
            try:
                deleted = await self._retry_policy.run(
                    lambda: self._store.delete_bids(record.id), f"delete bids {record.id}"
                )
            except AuctionHouseError as err:
                self._logger.warning("bid records could not be deleted: record=%s : %s", record.id, err)
                deleted = 0
            self._logger.info(
                "auction completed: record=%s winner=%s final_bid=%s bids_deleted=%s",
                record.id,
                winner,
                final_bid,
                deleted,
            )
        return action

    # ----------------------------------------------------------------------------------------------------------------
    # recovery

    async def delist(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Cancels a queued auction, or an active auction without bids, and returns the NFT to the seller.
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.QUEUED, AuctionStatus.ACTIVE)
            ensure_transition(record, AuctionStatus.CANCELED)
            kiosk_id, cap_id = _custody_handles(record)

            is_active = record.status == AuctionStatus.ACTIVE
            if is_active and record.auction_object_id is not None:
                auction = await self.read_auction(record.auction_object_id)
                if auction is not None and auction.has_bids:
                    raise ValidationError(
                        f"auction for record {record.id} has bids; end it instead of delisting"
                    )

            patch = {
                "status": AuctionStatus.CANCELED,
                "nft_transferred": True,
                "nft_transferred_at": self._clock(),
                "status_reason": "delisted",
            }
            if not await self._custody.is_in_custody(kiosk_id, record.token_id):
                self._logger.warning("NFT not in custody, marking record canceled: record=%s", record.id)
                return await self._commit(record, {**patch, "status_reason": "nft not in custody"}, None, True)

            await self._custody.verify_custody_container(kiosk_id, cap_id)
            collection_type = MoveType.parse(record.collection_type)
            if is_active:
                await self._tolerate_failure(
                    caller,
                    MarketplaceTransactions.kiosk_delist(
                        caller.address, kiosk_id, cap_id, record.token_id, collection_type
                    ),
                )

            digest = await self._take_and_transfer(caller, record, kiosk_id, cap_id, record.seller)

            if is_active and record.auction_object_id is not None:
                await self._tolerate_failure(
                    caller, MarketplaceTransactions.delete_object(caller.address, record.auction_object_id)
                )

            confirmed = await self._reconciler.confirm_chain(
                f"return {record.token_id}",
                lambda: self._custody.locate(record.token_id),
                lambda loc: loc.is_owned_by(record.seller),
            )
            return await self._commit(record, patch, digest, confirmed is not None)

    async def release_nft(self, caller: Caller, record_id: RecordId) -> ActionResult:
        """
        Transfers the NFT of a completed auction to the winner, or back to the seller when it was not sold.
        """
        self._require_admin(caller)
        async with self._locks.hold(record_id):
            record = await self._get(record_id)
            ensure_status(record, AuctionStatus.COMPLETED)
            if record.nft_transferred:
                return ActionResult(record)
            kiosk_id, cap_id = _custody_handles(record)
            recipient = record.winner if record.winner else record.seller

            patch = {"nft_transferred": True, "nft_transferred_at": self._clock()}
            if not await self._custody.is_in_custody(kiosk_id, record.token_id):
                location = await self._custody.locate(record.token_id)
                self._logger.warning(
                    "NFT not in custody: record=%s location=%s %s",
                    record.id,
                    location.kind,
                    location.owner,
                )
                return await self._commit(record, patch, None, True)

            await self._custody.verify_custody_container(kiosk_id, cap_id)
            await self._tolerate_failure(
                caller,
                MarketplaceTransactions.kiosk_delist(
                    caller.address, kiosk_id, cap_id, record.token_id, MoveType.parse(record.collection_type)
                ),
            )
            digest = await self._take_and_transfer(caller, record, kiosk_id, cap_id, recipient)

            confirmed = await self._reconciler.confirm_chain(
                f"release {record.token_id}",
                lambda: self._custody.locate(record.token_id),
                lambda loc: loc.is_owned_by(recipient),
            )
            return await self._commit(record, patch, digest, confirmed is not None)

    async def _take_and_transfer(
        self,
        caller: Caller,
        record: AuctionRecord,
        kiosk_id: ObjectId,
        cap_id: ObjectId,
        recipient: Address,
    ) -> str | None:
        draft = MarketplaceTransactions.kiosk_take_and_transfer(
            caller.address,
            kiosk_id,
            cap_id,
            record.token_id,
            MoveType.parse(record.collection_type),
            recipient,
        )
        result = await self._submit_with_recheck(
            caller,
            draft,
            already_done=lambda: self._is_owned_by(record.token_id, recipient),
            preconditions=lambda: self._require_in_custody(kiosk_id, record.token_id),
        )
        return result.digest if result else None

    async def _tolerate_failure(self, caller: Caller, draft: TransactionDraft):
        try:
            await self._orchestrator.execute(draft, caller.signer)
        except TransactionFailedError as err:
            self._logger.warning("%s failed, continuing: %s", draft.description, err)

    # ----------------------------------------------------------------------------------------------------------------
    # support

    async def _submit_with_recheck(
        self,
        caller: Caller,
        draft: TransactionDraft,
        already_done: Callable[[], Awaitable[bool]],
        preconditions: Callable[[], Awaitable[Any]],
        spend: int = 0,
    ) -> TransactionResult | None:
        """
        Submits the transaction. A failed submission is retried `submission_retries` times after a fixed backoff,
        and only after a fresh re-check:
        - if the effect already happened, nothing is resubmitted and None is returned
        - otherwise the preconditions must still hold, i.e., `preconditions` must not raise

        A timeout means the outcome is unknown. It is resolved by the re-check only, never by resubmitting.
        """
        attempts = 1 + self._config.submission_retries
        for attempt in range(1, attempts + 1):
            try:
                return await self._orchestrator.execute(draft, caller.signer, spend)
            except ChainTimeoutError:
                if await already_done():
                    self._logger.warning("%s timed out but its effect is on chain", draft.description)
                    return None
                raise
            except TransactionFailedError as err:
                if attempt >= attempts:
                    raise
                self._logger.warning(
                    "%s failed [attempt %s/%s], re-checking before retry: %s",
                    draft.description,
                    attempt,
                    attempts,
                    err,
                )
            await asyncio.sleep(self._config.submission_retry_backoff.total_seconds())
            if await already_done():
                self._logger.info("%s effect already on chain, not resubmitting", draft.description)
                return None
            await preconditions()
        raise AssertionError("unreachable")

    async def _commit(
        self,
        record: AuctionRecord,
        patch: dict[str, Any],
        digest: str | None,
        chain_confirmed: bool,
    ) -> ActionResult:
        divergence = await self._reconciler.commit(record.id, patch, digest, chain_confirmed)
        if divergence is not None:
            return ActionResult(record, digest, divergence)
        return ActionResult(record.apply(patch), digest)

    async def _get(self, record_id: RecordId) -> AuctionRecord:
        record = await self._retry_policy.run(
            lambda: self._store.get(record_id), f"get record {record_id}"
        )
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def _query(self, record_filter: RecordFilter) -> list[AuctionRecord]:
        return await self._retry_policy.run(
            lambda: self._store.query(record_filter), "query records"
        )

    async def read_auction(self, auction_id: ObjectId) -> ChainAuction | None:
        obj = await self._custody.get_object(auction_id)
        if obj is None:
            return None
        return ChainAuction.from_object(obj, self._tx.auction_type)

    async def _require_auction(self, auction_id: ObjectId) -> ChainAuction:
        auction = await self.read_auction(auction_id)
        if auction is None:
            raise UnexpectedChainStateError(f"auction object does not exist: {auction_id}")
        return auction

    async def _auction_closed(self, auction_id: ObjectId) -> bool:
        auction = await self.read_auction(auction_id)
        return auction is not None and auction.status != AUCTION_STATUS_LIVE

    async def _is_owned_by(self, nft_id: ObjectId, owner: Address) -> bool:
        return (await self._custody.locate(nft_id)).is_owned_by(owner)

    async def _require_in_custody(self, kiosk_id: ObjectId, nft_id: ObjectId):
        if not await self._custody.is_in_custody(kiosk_id, nft_id):
            raise CustodyError(f"NFT {nft_id} is not in kiosk {kiosk_id}")

    def _require_signer(self, caller: Caller):
        if caller.signer.address != caller.address:
            raise UnauthorizedError(f"signer does not sign for {caller.address}")

    def _require_admin(self, caller: Caller):
        if caller.address != self._config.admin_address:
            raise UnauthorizedError(f"{caller.address} is not the admin")
        self._require_signer(caller)


async def _never() -> bool:
    return False


def _require_positive_int(name: str, value: Any):
    if value is None:
        raise MissingFieldError(f"{name} is required")
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer: {value!r}")


def _auction_object_id(record: AuctionRecord) -> ObjectId:
    if record.auction_object_id is None:
        raise MissingFieldError(f"record {record.id} has no auction object")
    return record.auction_object_id


def _custody_handles(record: AuctionRecord) -> tuple[ObjectId, ObjectId]:
    if record.kiosk_id is None or record.custody_cap_id is None:
        raise MissingFieldError(f"record {record.id} has no custody handles")
    return record.kiosk_id, record.custody_cap_id


def _display_name(fields: dict[str, Any]) -> str | None:
    name = fields.get("name")
    return name if isinstance(name, str) else None
