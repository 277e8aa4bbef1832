"""
Chain gateway and signer ports
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol

from kioskauction.chain.model import (
    Address,
    ChainEvent,
    ChainObject,
    MoveType,
    ObjectId,
    TransactionEffects,
)
from kioskauction.chain.transactions import TransactionDraft


@dataclass(slots=True, frozen=True)
class SignedTransaction:
    draft: TransactionDraft
    # base64 encoded BCS transaction bytes
    tx_bytes: str
    signatures: tuple[str, ...]
    gas_budget: int


class TransactionSigner(Protocol):
    """
    Wallet port.

    The signer serializes drafts into transaction bytes, which requires resolving object versions and gas coins, and
    signs them. Every state machine entry point receives the signer explicitly through its `Caller`.
    """

    @property
    def address(self) -> Address:
        ...

    async def build(self, draft: TransactionDraft, gas_budget: int | None) -> str:
        """
        :param gas_budget: None when building for a dry run
        :return: base64 encoded transaction bytes
        """
        ...

    async def sign(self, tx_bytes: str) -> str:
        """
        :return: base64 encoded signature
        """
        ...


class ChainGateway(ABC):
    """
    Read and write access to the chain.

    Reads return None or empty results for objects that do not exist. Transport level failures are raised as
    TransientError, node level errors as ChainRpcError.
    """

    @abstractmethod
    async def get_object(self, object_id: ObjectId) -> ChainObject | None:
        """
        :return: None if the object does not exist or was deleted
        """

    @abstractmethod
    async def get_dynamic_fields(self, parent_id: ObjectId) -> list[ObjectId]:
        """
        :return: object ids of all dynamic fields of the parent object, e.g., the items in a kiosk
        """

    @abstractmethod
    async def dry_run(self, tx_bytes: str) -> TransactionEffects:
        """
        Simulates the transaction without committing it
        """

    @abstractmethod
    async def submit(self, tx: SignedTransaction) -> TransactionEffects:
        """
        Executes the transaction and waits for local execution
        """

    @abstractmethod
    async def query_events(
        self, event_type: MoveType, limit: int = 100, descending: bool = True
    ) -> list[ChainEvent]:
        """
        Returns the most recent events of the specified type
        """

    @abstractmethod
    async def get_owned_objects(
        self, owner: Address, struct_type: MoveType
    ) -> list[ChainObject]:
        """
        Returns the objects of the specified struct type owned by the address
        """

    @abstractmethod
    async def get_balance(self, owner: Address) -> int:
        """
        :return: total SUI balance in MIST
        """

    @abstractmethod
    async def get_transaction_timestamp(self, digest: str) -> int | None:
        """
        :return: transaction checkpoint timestamp in epoch millis, None if not known
        """
