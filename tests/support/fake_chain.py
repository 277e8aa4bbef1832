"""
In-memory chain with the marketplace and kiosk semantics the auction house relies on.

Transactions are applied atomically: if any command aborts, the chain state is restored and failed effects are
returned, like a Move abort.
"""
import asyncio
import copy
import itertools
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Any, Callable

from kioskauction.chain.gateway import ChainGateway, SignedTransaction
from kioskauction.chain.model import (
    Address,
    ChainEvent,
    ChainObject,
    CreatedObject,
    GasCost,
    KIOSK_OWNER_CAP_TYPE,
    KIOSK_TYPE,
    MoveType,
    ObjectId,
    ObjectOwner,
    TransactionEffects,
)
from kioskauction.chain.transactions import (
    GasCoinArg,
    MoveCall,
    ObjectArg,
    PureArg,
    ResultArg,
    SplitCoins,
    TransactionDraft,
    TransferObjects,
)
from kioskauction.config import AuctionHouseConfig
from kioskauction.domain.chain_auction import AUCTION_STATUS_LIVE
from kioskauction.errors import ChainConnectionError, ChainRpcError, ChainTimeoutError

GAS = GasCost(computation=1_000_000, storage=2_000_000, rebate=500_000)

AUCTION_STATUS_ENDED = 1

NFT_PACKAGE = ObjectId("0x" + "ab" * 32)
NFT_TYPE = MoveType.parse(f"{NFT_PACKAGE}::frens::SuiFren")

_ZERO_ADDRESS = "0x0"


def random_object_id() -> ObjectId:
    return ObjectId("0x" + secrets.token_hex(32))


def random_address() -> Address:
    return Address("0x" + secrets.token_hex(32))


class FakeClock:
    """
    Time only moves when the test moves it
    """

    def __init__(self, now: datetime | None = None):
        self.now = now if now else datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now

    @property
    def now_ms(self) -> int:
        return int(self.now.timestamp() * 1000)


class MoveAbort(Exception):
    pass


@dataclass
class _Object:
    type: MoveType
    owner: ObjectOwner
    fields: dict[str, Any] = field(default_factory=dict)
    version: int = 1


@dataclass
class _Coin:
    amount: int


@dataclass
class _Fault:
    description: str
    kind: str
    error: str = ""
    remaining: int = 1
    applied: bool = True


class FakeChain(ChainGateway):
    """
    Faults are injected per transaction description, e.g., 'list_nft' or 'kiosk::take':
    - fail_next: the transaction reports a failed status and has no effect
    - reject_next: the node rejects the transaction with a JSON-RPC error
    - timeout_next: the submission times out, after the effects were applied unless `applied=False`
    """

    # pylint: disable=too-many-instance-attributes,too-many-public-methods

    def __init__(self, config: AuctionHouseConfig, clock: FakeClock):
        self.config = config
        self.clock = clock

        self.objects: dict[ObjectId, _Object] = {}
        self.kiosk_items: dict[ObjectId, set[ObjectId]] = {}
        self.listed: set[ObjectId] = set()
        self.balances: dict[Address, int] = {}
        self.events: list[ChainEvent] = []
        self.tx_timestamps: dict[str, int] = {}

        self.calls: list[str] = []
        self.submitted: list[TransactionDraft] = []
        self.dry_run_outcome: str | None = None
        self.read_failures = 0
        self.event_timestamps = True
        self.submit_delay: Callable[[], float] | None = None

        self.__built: dict[str, TransactionDraft] = {}
        self.__faults: list[_Fault] = []
        self.__tx_counter = itertools.count(1)
        self.__event_seq = itertools.count()

    # ----------------------------------------------------------------------------------------------------------------
    # test setup

    def create_kiosk(
        self,
        owner: Address,
        kiosk_id: ObjectId | None = None,
        cap_id: ObjectId | None = None,
        shared: bool = True,
    ) -> tuple[ObjectId, ObjectId]:
        kiosk_id = kiosk_id if kiosk_id else random_object_id()
        cap_id = cap_id if cap_id else random_object_id()
        self.objects[kiosk_id] = _Object(
            KIOSK_TYPE,
            ObjectOwner.shared() if shared else ObjectOwner.address_owner(owner),
            {"owner": str(owner), "item_count": 0},
        )
        self.objects[cap_id] = _Object(
            KIOSK_OWNER_CAP_TYPE, ObjectOwner.address_owner(owner), {"for": str(kiosk_id)}
        )
        self.kiosk_items[kiosk_id] = set()
        return kiosk_id, cap_id

    def mint_nft(
        self, owner: Address, name: str = "Sui Fren", nft_type: MoveType = NFT_TYPE
    ) -> ObjectId:
        nft_id = random_object_id()
        self.objects[nft_id] = _Object(
            nft_type, ObjectOwner.address_owner(owner), {"id": str(nft_id), "name": name}
        )
        return nft_id

    def place_in_kiosk(self, kiosk_id: ObjectId, nft_id: ObjectId):
        self.objects[nft_id].owner = ObjectOwner.object_owner(kiosk_id)
        self.kiosk_items[kiosk_id].add(nft_id)

    def set_balance(self, address: Address, amount: int):
        self.balances[Address(address)] = amount

    def balance(self, address: Address) -> int:
        return self.balances.get(Address(address), 0)

    def owner_of(self, object_id: ObjectId) -> ObjectOwner | None:
        obj = self.objects.get(object_id)
        return obj.owner if obj else None

    def in_kiosk(self, kiosk_id: ObjectId, nft_id: ObjectId) -> bool:
        return nft_id in self.kiosk_items.get(kiosk_id, set())

    def auction_fields(self, auction_id: ObjectId) -> dict[str, Any]:
        return dict(self.objects[auction_id].fields)

    def live_auctions(self) -> list[ObjectId]:
        return [
            object_id
            for object_id, obj in self.objects.items()
            if obj.type.is_struct(self.auction_type) and obj.fields["status"] == AUCTION_STATUS_LIVE
        ]

    def submissions(self, description: str) -> list[TransactionDraft]:
        return [draft for draft in self.submitted if draft.description == description]

    def emit_bid_event(
        self,
        auction_id: ObjectId,
        bidder: Address,
        amount: int,
        timestamp_ms: int | None = None,
        tx_digest: str | None = None,
    ) -> ChainEvent:
        tx_digest = tx_digest if tx_digest else self.__next_digest()
        event = ChainEvent(
            tx_digest=tx_digest,
            event_seq=next(self.__event_seq),
            type=self.bid_placed_event_type,
            parsed_json={"auction_id": str(auction_id), "bidder": str(bidder), "amount": str(amount)},
            sender=Address(bidder),
            timestamp_ms=timestamp_ms,
        )
        self.events.append(event)
        return event

    # ----------------------------------------------------------------------------------------------------------------
    # fault injection

    def fail_next(self, description: str, times: int = 1, error: str = "MoveAbort(EInjected, 1)"):
        self.__faults.append(_Fault(description, "fail", error, times))

    def reject_next(self, description: str, times: int = 1, error: str = "Transaction rejected"):
        self.__faults.append(_Fault(description, "reject", error, times))

    def timeout_next(self, description: str, applied: bool = True):
        self.__faults.append(_Fault(description, "timeout", applied=applied))

    def __take_fault(self, description: str) -> _Fault | None:
        for fault in self.__faults:
            if fault.description == description and fault.remaining > 0:
                fault.remaining -= 1
                return fault
        return None

    # ----------------------------------------------------------------------------------------------------------------
    # signer support

    def register(self, draft: TransactionDraft) -> str:
        tx_bytes = f"tx-{next(self.__tx_counter)}"
        self.__built[tx_bytes] = draft
        return tx_bytes

    @staticmethod
    def signature(address: Address, tx_bytes: str) -> str:
        return f"sig:{address}:{tx_bytes}"

    # ----------------------------------------------------------------------------------------------------------------
    # ChainGateway

    def __read(self, method: str):
        self.calls.append(method)
        if self.read_failures > 0:
            self.read_failures -= 1
            raise ChainConnectionError(f"{method} failed: connection reset")

    async def get_object(self, object_id: ObjectId) -> ChainObject | None:
        self.__read("get_object")
        obj = self.objects.get(ObjectId(object_id))
        if obj is None:
            return None
        return self.__snapshot(ObjectId(object_id), obj)

    async def get_dynamic_fields(self, parent_id: ObjectId) -> list[ObjectId]:
        self.__read("get_dynamic_fields")
        return sorted(self.kiosk_items.get(ObjectId(parent_id), set()))

    async def dry_run(self, tx_bytes: str) -> TransactionEffects:
        self.calls.append("dry_run")
        if self.dry_run_outcome == "unreachable":
            raise ChainConnectionError("sui_dryRunTransactionBlock failed: connection refused")
        if self.dry_run_outcome == "error":
            raise ChainRpcError("sui_dryRunTransactionBlock", -32602, "invalid transaction")
        if self.dry_run_outcome == "failure":
            return TransactionEffects(success=False, error="MoveAbort(EDryRun, 0)", gas=GAS)
        if tx_bytes not in self.__built:
            raise ChainRpcError("sui_dryRunTransactionBlock", -32602, f"unknown transaction: {tx_bytes}")
        return TransactionEffects(success=True, gas=GAS)

    async def submit(self, tx: SignedTransaction) -> TransactionEffects:
        self.calls.append("submit")
        draft = self.__built[tx.tx_bytes]
        self.submitted.append(draft)
        if self.submit_delay is not None:
            await asyncio.sleep(self.submit_delay())

        if tx.signatures != (self.signature(draft.sender, tx.tx_bytes),):
            raise ChainRpcError("sui_executeTransactionBlock", -32002, "invalid signature")

        fault = self.__take_fault(draft.description)
        if fault is not None and fault.kind == "reject":
            raise ChainRpcError("sui_executeTransactionBlock", -32002, fault.error)
        if fault is not None and fault.kind == "fail":
            return TransactionEffects(
                success=False, digest=self.__next_digest(), error=fault.error, gas=GAS
            )

        if fault is not None and fault.kind == "timeout":
            if fault.applied:
                self.__execute(draft)
            raise ChainTimeoutError(f"submit {draft.description} timed out")
        return self.__execute(draft)

    async def query_events(
        self, event_type: MoveType, limit: int = 100, descending: bool = True
    ) -> list[ChainEvent]:
        self.__read("query_events")
        events = [event for event in self.events if event.type.is_struct(event_type)]
        events.sort(key=lambda event: event.event_seq, reverse=descending)
        return events[:limit]

    async def get_owned_objects(self, owner: Address, struct_type: MoveType) -> list[ChainObject]:
        self.__read("get_owned_objects")
        return [
            self.__snapshot(object_id, obj)
            for object_id, obj in self.objects.items()
            if obj.type.is_struct(struct_type) and obj.owner.is_owned_by(owner)
        ]

    async def get_balance(self, owner: Address) -> int:
        self.__read("get_balance")
        return self.balance(owner)

    async def get_transaction_timestamp(self, digest: str) -> int | None:
        self.__read("get_transaction_timestamp")
        return self.tx_timestamps.get(digest)

    # ----------------------------------------------------------------------------------------------------------------
    # execution

    @property
    def auction_type(self) -> MoveType:
        return MoveType.parse(f"{self.config.package_id}::marketplace::Auction")

    @property
    def bid_placed_event_type(self) -> MoveType:
        return MoveType.parse(f"{self.config.package_id}::marketplace::BidPlaced")

    def __next_digest(self) -> str:
        return f"digest{secrets.token_hex(16)}"

    def __snapshot(self, object_id: ObjectId, obj: _Object) -> ChainObject:
        return ChainObject(
            object_id=object_id,
            type=obj.type,
            owner=obj.owner,
            fields=copy.deepcopy(obj.fields),
            version=obj.version,
        )

    def __execute(self, draft: TransactionDraft) -> TransactionEffects:
        state = copy.deepcopy((self.objects, self.kiosk_items, self.listed, self.balances, self.events))
        digest = self.__next_digest()
        created: list[CreatedObject] = []
        results: list[list[Any]] = []
        try:
            for command in draft.commands:
                results.append(self.__run(draft.sender, command, results, created, digest))
            self.__charge(draft.sender, GAS.net)
        except MoveAbort as abort:
            self.objects, self.kiosk_items, self.listed, self.balances, self.events = state
            return TransactionEffects(success=False, digest=digest, error=str(abort), gas=GAS)

        self.tx_timestamps[digest] = self.clock.now_ms
        return TransactionEffects(success=True, digest=digest, gas=GAS, created=tuple(created))

    def __charge(self, address: Address, amount: int):
        balance = self.balance(address)
        if balance < amount:
            raise MoveAbort(f"InsufficientGas: {address}")
        self.balances[Address(address)] = balance - amount

    def __run(
        self,
        sender: Address,
        command: Any,
        results: list[list[Any]],
        created: list[CreatedObject],
        digest: str,
    ) -> list[Any]:
        if isinstance(command, SplitCoins):
            if not isinstance(command.coin, GasCoinArg):
                raise MoveAbort("only the gas coin can be split")
            coins = []
            for amount in command.amounts:
                value = self.__value(amount, results)
                self.__charge(sender, value)
                coins.append(_Coin(value))
            return coins

        if isinstance(command, TransferObjects):
            recipient = Address(self.__value(command.recipient, results))
            for arg in command.objects:
                for object_id in self.__objects(arg, results):
                    self.__require_owner(object_id, sender)
                    self.objects[object_id].owner = ObjectOwner.address_owner(recipient)
            return []

        if isinstance(command, MoveCall):
            return self.__move_call(sender, command, results, created, digest)

        raise MoveAbort(f"unsupported command: {command}")

    def __move_call(
        self,
        sender: Address,
        call: MoveCall,
        results: list[list[Any]],
        created: list[CreatedObject],
        digest: str,
    ) -> list[Any]:
        package, module, function = call.target.split("::")
        package = ObjectId.normalize(package)
        args = call.arguments

        if package == self.config.package_id and module == "marketplace":
            if function == "place_nft":
                kiosk_id, cap_id, nft_id = (self.__object(arg, results) for arg in args)
                self.__require_cap(sender, kiosk_id, cap_id)
                if not self.objects[kiosk_id].owner.is_shared:
                    raise MoveAbort("EKioskNotShared")
                self.__require_owner(nft_id, sender)
                self.objects[nft_id].owner = ObjectOwner.object_owner(kiosk_id)
                self.kiosk_items[kiosk_id].add(nft_id)
                return []

            if function == "list_nft":
                kiosk_id, cap_id = self.__object(args[0], results), self.__object(args[1], results)
                nft_id = ObjectId(self.__value(args[2], results))
                starting_bid, duration_ms = self.__value(args[3], results), self.__value(args[4], results)
                self.__require_cap(sender, kiosk_id, cap_id)
                if nft_id not in self.kiosk_items[kiosk_id]:
                    raise MoveAbort("EItemNotFound")
                if nft_id in self.listed:
                    raise MoveAbort("EItemListed")
                if any(
                    ObjectId(self.objects[auction_id].fields["kiosk_id"]) == kiosk_id
                    for auction_id in self.live_auctions()
                ):
                    raise MoveAbort("EAuctionAlreadyActive")
                auction_id = random_object_id()
                self.objects[auction_id] = _Object(
                    self.auction_type,
                    ObjectOwner.shared(),
                    {
                        "id": str(auction_id),
                        "nft_id": str(nft_id),
                        "kiosk_id": str(kiosk_id),
                        "seller": str(sender),
                        "current_bid": str(starting_bid),
                        "highest_bidder": _ZERO_ADDRESS,
                        "balance": "0",
                        "status": AUCTION_STATUS_LIVE,
                        "end_time": str(self.clock.now_ms + duration_ms),
                    },
                )
                self.listed.add(nft_id)
                created.append(CreatedObject(auction_id, self.auction_type, ObjectOwner.shared()))
                return []

            if function == "place_bid":
                auction_id = self.__object(args[0], results)
                coin = self.__coin(args[1], results)
                fields = self.__auction(auction_id)
                if fields["status"] != AUCTION_STATUS_LIVE or self.clock.now_ms >= int(fields["end_time"]):
                    raise MoveAbort("EAuctionEnded")
                if coin.amount <= int(fields["current_bid"]):
                    raise MoveAbort("EBidTooLow")
                previous = Address.parse_optional(fields["highest_bidder"])
                if previous is not None:
                    self.balances[previous] = self.balance(previous) + int(fields["balance"])
                fields.update(
                    current_bid=str(coin.amount),
                    highest_bidder=str(sender),
                    balance=str(coin.amount),
                )
                self.events.append(
                    ChainEvent(
                        tx_digest=digest,
                        event_seq=next(self.__event_seq),
                        type=self.bid_placed_event_type,
                        parsed_json={
                            "auction_id": str(auction_id),
                            "bidder": str(sender),
                            "amount": str(coin.amount),
                        },
                        sender=sender,
                        timestamp_ms=self.clock.now_ms if self.event_timestamps else None,
                    )
                )
                return []

            if function == "end_auction_no_transfer":
                auction_id = self.__object(args[0], results)
                fields = self.__auction(auction_id)
                if fields["status"] != AUCTION_STATUS_LIVE:
                    raise MoveAbort("EAuctionAlreadyEnded")
                # the admin may close an auction at any time
                seller = Address(fields["seller"])
                self.balances[seller] = self.balance(seller) + int(fields["balance"])
                fields.update(status=AUCTION_STATUS_ENDED, balance="0")
                return []

        if package == ObjectId.normalize("0x2"):
            if (module, function) == ("kiosk", "delist"):
                kiosk_id, cap_id = self.__object(args[0], results), self.__object(args[1], results)
                nft_id = ObjectId(self.__value(args[2], results))
                self.__require_cap(sender, kiosk_id, cap_id)
                if nft_id not in self.listed:
                    raise MoveAbort("ENotListed")
                self.listed.discard(nft_id)
                return []

            if (module, function) == ("kiosk", "take"):
                kiosk_id, cap_id = self.__object(args[0], results), self.__object(args[1], results)
                nft_id = ObjectId(self.__value(args[2], results))
                self.__require_cap(sender, kiosk_id, cap_id)
                if nft_id not in self.kiosk_items[kiosk_id]:
                    raise MoveAbort("EItemNotFound")
                if nft_id in self.listed:
                    raise MoveAbort("EItemIsListed")
                self.kiosk_items[kiosk_id].discard(nft_id)
                self.objects[nft_id].owner = ObjectOwner.address_owner(sender)
                return [nft_id]

            if (module, function) == ("transfer", "public_transfer"):
                object_id = self.__object(args[0], results)
                recipient = Address(self.__value(args[1], results))
                self.__require_owner(object_id, sender)
                self.objects[object_id].owner = ObjectOwner.address_owner(recipient)
                return []

            if (module, function) == ("object", "delete"):
                object_id = self.__object(args[0], results)
                if object_id not in self.objects:
                    raise MoveAbort(f"object does not exist: {object_id}")
                del self.objects[object_id]
                return []

        raise MoveAbort(f"unknown function: {call.target}")

    def __resolve(self, arg: Any, results: list[list[Any]]) -> Any:
        if isinstance(arg, ResultArg):
            result = results[arg.command_index]
            return result if arg.result_index is None else result[arg.result_index]
        return arg

    def __object(self, arg: Any, results: list[list[Any]]) -> ObjectId:
        value = self.__resolve(arg, results)
        if isinstance(value, ObjectArg):
            value = value.object_id
        if not isinstance(value, str) or value not in self.objects:
            raise MoveAbort(f"object does not exist: {value}")
        return ObjectId(value)

    def __objects(self, arg: Any, results: list[list[Any]]) -> list[ObjectId]:
        value = self.__resolve(arg, results)
        if isinstance(value, list):
            return [ObjectId(object_id) for object_id in value]
        return [self.__object(value, results)]

    def __value(self, arg: Any, results: list[list[Any]]) -> Any:
        value = self.__resolve(arg, results)
        if not isinstance(value, PureArg):
            raise MoveAbort(f"expected a pure value: {value}")
        return value.value

    def __coin(self, arg: Any, results: list[list[Any]]) -> _Coin:
        value = self.__resolve(arg, results)
        if not isinstance(value, _Coin):
            raise MoveAbort(f"expected a coin: {value}")
        return value

    def __auction(self, auction_id: ObjectId) -> dict[str, Any]:
        obj = self.objects[auction_id]
        if not obj.type.is_struct(self.auction_type):
            raise MoveAbort(f"not an auction: {auction_id}")
        return obj.fields

    def __require_owner(self, object_id: ObjectId, owner: Address):
        obj = self.objects.get(object_id)
        if obj is None or not obj.owner.is_owned_by(owner):
            raise MoveAbort(f"object {object_id} is not owned by {owner}")

    def __require_cap(self, sender: Address, kiosk_id: ObjectId, cap_id: ObjectId):
        cap = self.objects.get(cap_id)
        if cap is None or not cap.type.is_struct(KIOSK_OWNER_CAP_TYPE):
            raise MoveAbort(f"not a kiosk owner cap: {cap_id}")
        if not cap.owner.is_owned_by(sender):
            raise MoveAbort(f"kiosk owner cap {cap_id} is not owned by {sender}")
        if ObjectId.normalize(cap.fields["for"]) != kiosk_id or kiosk_id not in self.kiosk_items:
            raise MoveAbort("EWrongKiosk")


class FakeSigner:
    """
    Builds and signs transactions for one address against the fake chain
    """

    def __init__(self, chain: FakeChain, address: Address):
        self._chain = chain
        self._address = Address(address)
        self.built: list[tuple[TransactionDraft, int | None]] = []

    @property
    def address(self) -> Address:
        return self._address

    async def build(self, draft: TransactionDraft, gas_budget: int | None) -> str:
        self.built.append((draft, gas_budget))
        return self._chain.register(draft)

    async def sign(self, tx_bytes: str) -> str:
        return FakeChain.signature(self._address, tx_bytes)

