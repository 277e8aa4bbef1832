"""
Programmable transaction drafts for the marketplace and kiosk Move calls

A `TransactionDraft` is the chain-agnostic description of what a transaction does. The `TransactionSigner` turns it
into transaction bytes and signs it. The drafts here are the only way the auction house talks to the marketplace
contract.
"""
from dataclasses import dataclass
from typing import Union

from kioskauction.chain.model import ObjectId, Address, MoveType, CLOCK_ID, SUI_FRAMEWORK
from kioskauction.errors import MissingFieldError, ValidationError


@dataclass(slots=True, frozen=True)
class ObjectArg:
    object_id: ObjectId


@dataclass(slots=True, frozen=True)
class PureArg:
    """
    :param value: int for u64, str for id and address
    :param type: Move type of the pure value, e.g., u64, id, address
    """

    value: int | str
    type: str


@dataclass(slots=True, frozen=True)
class GasCoinArg:
    """
    The coin paying for gas
    """


@dataclass(slots=True, frozen=True)
class ResultArg:
    """
    Refers to the result of an earlier command in the same transaction
    """

    command_index: int
    result_index: int | None = None


Argument = Union[ObjectArg, PureArg, GasCoinArg, ResultArg]


@dataclass(slots=True, frozen=True)
class MoveCall:
    target: str
    arguments: tuple[Argument, ...]
    type_arguments: tuple[str, ...] = ()

    @property
    def function(self) -> str:
        return self.target.split("::")[-1]


@dataclass(slots=True, frozen=True)
class SplitCoins:
    coin: Argument
    amounts: tuple[Argument, ...]


@dataclass(slots=True, frozen=True)
class TransferObjects:
    objects: tuple[Argument, ...]
    recipient: PureArg


TransactionCommand = Union[MoveCall, SplitCoins, TransferObjects]


@dataclass(slots=True, frozen=True)
class TransactionDraft:
    """
    :param description: short human readable description used for logging, e.g., 'list_nft'
    """

    sender: Address
    commands: tuple[TransactionCommand, ...]
    description: str

    def __post_init__(self):
        if len(self.commands) == 0:
            raise MissingFieldError("transaction draft has no commands")

    @property
    def move_calls(self) -> list[MoveCall]:
        return [cmd for cmd in self.commands if isinstance(cmd, MoveCall)]


def _u64(value: int) -> PureArg:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0 or value >= 2**64:
        raise ValidationError(f"invalid u64: {value!r}")
    return PureArg(value, "u64")


def _id(object_id: ObjectId) -> PureArg:
    return PureArg(str(ObjectId(object_id)), "id")


def _address(address: Address) -> PureArg:
    return PureArg(str(Address(address)), "address")


class MarketplaceTransactions:
    """
    Builds the transaction drafts for the marketplace package and the kiosk framework functions.

    All ids are validated when the draft is built, i.e., before any network call.
    """

    def __init__(self, package_id: ObjectId):
        self.package_id = ObjectId(package_id)

    @property
    def auction_type(self) -> MoveType:
        return MoveType.parse(f"{self.package_id}::marketplace::Auction")

    @property
    def bid_placed_event_type(self) -> MoveType:
        return MoveType.parse(f"{self.package_id}::marketplace::BidPlaced")

    def _marketplace(self, function: str) -> str:
        return f"{self.package_id}::marketplace::{function}"

    def place_nft(
        self,
        sender: Address,
        kiosk_id: ObjectId,
        cap_id: ObjectId,
        nft_id: ObjectId,
        collection_type: MoveType,
    ) -> TransactionDraft:
        """
        Places an NFT owned by the sender into the kiosk
        """
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=self._marketplace("place_nft"),
                    arguments=(
                        ObjectArg(ObjectId(kiosk_id)),
                        ObjectArg(ObjectId(cap_id)),
                        ObjectArg(ObjectId(nft_id)),
                    ),
                    type_arguments=(str(collection_type),),
                ),
            ),
            description="place_nft",
        )

    def list_nft(
        self,
        sender: Address,
        kiosk_id: ObjectId,
        cap_id: ObjectId,
        nft_id: ObjectId,
        collection_type: MoveType,
        starting_bid: int,
        duration_ms: int,
    ) -> TransactionDraft:
        """
        Creates the marketplace auction object for an NFT held in the kiosk
        """
        if duration_ms <= 0:
            raise ValidationError(f"auction duration must be positive: {duration_ms}")
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=self._marketplace("list_nft"),
                    arguments=(
                        ObjectArg(ObjectId(kiosk_id)),
                        ObjectArg(ObjectId(cap_id)),
                        _id(nft_id),
                        _u64(starting_bid),
                        _u64(duration_ms),
                        ObjectArg(CLOCK_ID),
                    ),
                    type_arguments=(str(collection_type),),
                ),
            ),
            description="list_nft",
        )

    def place_bid(
        self, sender: Address, auction_id: ObjectId, amount: int
    ) -> TransactionDraft:
        """
        Splits the bid amount from the gas coin and bids it
        """
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                SplitCoins(GasCoinArg(), (_u64(amount),)),
                MoveCall(
                    target=self._marketplace("place_bid"),
                    arguments=(
                        ObjectArg(ObjectId(auction_id)),
                        ResultArg(0, 0),
                        ObjectArg(CLOCK_ID),
                    ),
                ),
            ),
            description="place_bid",
        )

    def end_auction(self, sender: Address, auction_id: ObjectId) -> TransactionDraft:
        """
        Closes the auction. The NFT stays in the kiosk, it is released separately.
        """
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=self._marketplace("end_auction_no_transfer"),
                    arguments=(ObjectArg(ObjectId(auction_id)), ObjectArg(CLOCK_ID)),
                ),
            ),
            description="end_auction_no_transfer",
        )

    @staticmethod
    def kiosk_delist(
        sender: Address,
        kiosk_id: ObjectId,
        cap_id: ObjectId,
        nft_id: ObjectId,
        collection_type: MoveType,
    ) -> TransactionDraft:
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=f"{SUI_FRAMEWORK}::kiosk::delist",
                    arguments=(
                        ObjectArg(ObjectId(kiosk_id)),
                        ObjectArg(ObjectId(cap_id)),
                        _id(nft_id),
                    ),
                    type_arguments=(str(collection_type),),
                ),
            ),
            description="kiosk::delist",
        )

    @staticmethod
    def kiosk_take_and_transfer(
        sender: Address,
        kiosk_id: ObjectId,
        cap_id: ObjectId,
        nft_id: ObjectId,
        collection_type: MoveType,
        recipient: Address,
    ) -> TransactionDraft:
        """
        Takes the NFT out of the kiosk and transfers it to the recipient in one transaction
        """
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=f"{SUI_FRAMEWORK}::kiosk::take",
                    arguments=(
                        ObjectArg(ObjectId(kiosk_id)),
                        ObjectArg(ObjectId(cap_id)),
                        _id(nft_id),
                    ),
                    type_arguments=(str(collection_type),),
                ),
                TransferObjects((ResultArg(0),), _address(recipient)),
            ),
            description="kiosk::take",
        )

    @staticmethod
    def public_transfer(
        sender: Address,
        object_id: ObjectId,
        object_type: MoveType,
        recipient: Address,
    ) -> TransactionDraft:
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=f"{SUI_FRAMEWORK}::transfer::public_transfer",
                    arguments=(ObjectArg(ObjectId(object_id)), _address(recipient)),
                    type_arguments=(str(object_type),),
                ),
            ),
            description="transfer::public_transfer",
        )

    @staticmethod
    def delete_object(sender: Address, object_id: ObjectId) -> TransactionDraft:
        return TransactionDraft(
            sender=Address(sender),
            commands=(
                MoveCall(
                    target=f"{SUI_FRAMEWORK}::object::delete",
                    arguments=(ObjectArg(ObjectId(object_id)),),
                ),
            ),
            description="object::delete",
        )
