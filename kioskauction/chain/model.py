"""
Chain value types

Identifiers and type tags are validated once, when they enter the system, so that the rest of the code can rely on
their format. Malformed values raise InvalidObjectIdError before any network call is made.
"""
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from kioskauction.errors import InvalidObjectIdError, UnexpectedChainStateError

_OBJECT_ID_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
_SHORT_ID_PATTERN = re.compile(r"^0x[a-fA-F0-9]{1,64}$")
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ObjectId(str):
    """
    32-byte object id: `0x` followed by 64 hex characters.

    Instances are always lower-cased, which makes them safe to compare with ids returned by the chain.
    """

    def __new__(cls, value: str):
        if not isinstance(value, str) or not _OBJECT_ID_PATTERN.match(value):
            raise InvalidObjectIdError(f"invalid {cls.__name__}: {value!r}")
        return super().__new__(cls, value.lower())

    @classmethod
    def normalize(cls, value: str):
        """
        Accepts the short form used for system objects, e.g., `0x6`, and left pads it to 64 hex characters.
        """
        if isinstance(value, ObjectId):
            return cls(str(value))
        if not isinstance(value, str) or not _SHORT_ID_PATTERN.match(value):
            raise InvalidObjectIdError(f"invalid {cls.__name__}: {value!r}")
        return cls("0x" + value[2:].rjust(64, "0"))

    @property
    def is_zero(self) -> bool:
        return int(self, 16) == 0

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str.__repr__(self)})"


class Address(ObjectId):
    """
    Account address. Same format as ObjectId.
    """

    @classmethod
    def parse_optional(cls, value: str | None) -> "Address | None":
        """
        The chain uses the zero address, i.e., `0x0`, to mean "no address"

        :return: None for None or the zero address
        """
        if value is None:
            return None
        address = cls.normalize(value)
        return None if address.is_zero else address


# system objects
SUI_FRAMEWORK = "0x2"
CLOCK_ID = ObjectId.normalize("0x6")


@dataclass(slots=True, frozen=True)
class MoveType:
    """
    Parsed Move struct tag: `{address}::{module}::{name}<{type_params}>`
    """

    address: ObjectId
    module: str
    name: str
    type_params: tuple[str, ...] = ()

    @classmethod
    def parse(cls, value: str) -> "MoveType":
        if not isinstance(value, str):
            raise InvalidObjectIdError(f"invalid move type: {value!r}")

        value = value.strip()
        base, params = value, ""
        if "<" in value:
            if not value.endswith(">"):
                raise InvalidObjectIdError(f"invalid move type: {value!r}")
            base, params = value[: value.index("<")], value[value.index("<") + 1 : -1]

        parts = base.split("::")
        if len(parts) != 3:
            raise InvalidObjectIdError(f"invalid move type: {value!r}")
        address, module, name = parts
        if not _IDENTIFIER_PATTERN.match(module) or not _IDENTIFIER_PATTERN.match(name):
            raise InvalidObjectIdError(f"invalid move type: {value!r}")

        return cls(
            address=ObjectId.normalize(address),
            module=module,
            name=name,
            type_params=_split_type_params(params),
        )

    @property
    def struct(self) -> str:
        """
        Type without its type parameters
        """
        return f"{self.address}::{self.module}::{self.name}"

    def is_struct(self, other: "MoveType | str") -> bool:
        """
        :return: True if both refer to the same struct, ignoring type parameters
        """
        if isinstance(other, str):
            other = MoveType.parse(other)
        return self.struct == other.struct

    def __str__(self) -> str:
        if self.type_params:
            return f"{self.struct}<{', '.join(self.type_params)}>"
        return self.struct


def _split_type_params(params: str) -> tuple[str, ...]:
    if not params.strip():
        return ()
    result = []
    depth = 0
    current = ""
    for char in params:
        if char == "<":
            depth += 1
        elif char == ">":
            depth -= 1
        if char == "," and depth == 0:
            result.append(current.strip())
            current = ""
        else:
            current += char
    result.append(current.strip())
    return tuple(result)


KIOSK_TYPE = MoveType.parse("0x2::kiosk::Kiosk")
KIOSK_OWNER_CAP_TYPE = MoveType.parse("0x2::kiosk::KioskOwnerCap")


class OwnerKind(StrEnum):
    ADDRESS = "AddressOwner"
    OBJECT = "ObjectOwner"
    SHARED = "Shared"
    IMMUTABLE = "Immutable"


@dataclass(slots=True, frozen=True)
class ObjectOwner:
    """
    ADDRESS: owned by an account
    OBJECT: owned by another object, e.g., an item stored in a kiosk is owned by the kiosk's dynamic field
    """

    kind: OwnerKind
    owner_id: ObjectId | None = None

    @classmethod
    def address_owner(cls, address: str) -> "ObjectOwner":
        return cls(OwnerKind.ADDRESS, Address.normalize(address))

    @classmethod
    def object_owner(cls, object_id: str) -> "ObjectOwner":
        return cls(OwnerKind.OBJECT, ObjectId.normalize(object_id))

    @classmethod
    def shared(cls) -> "ObjectOwner":
        return cls(OwnerKind.SHARED)

    @classmethod
    def immutable(cls) -> "ObjectOwner":
        return cls(OwnerKind.IMMUTABLE)

    @property
    def is_shared(self) -> bool:
        return self.kind == OwnerKind.SHARED

    def is_owned_by(self, address: str) -> bool:
        return (
            self.kind == OwnerKind.ADDRESS
            and self.owner_id is not None
            and self.owner_id == Address.normalize(address)
        )

    def __str__(self) -> str:
        if self.owner_id:
            return f"{self.kind}({self.owner_id})"
        return str(self.kind)


@dataclass(slots=True, frozen=True)
class ChainObject:
    """
    Snapshot of an on-chain object
    """

    object_id: ObjectId
    type: MoveType
    owner: ObjectOwner
    fields: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def get_field(self, name: str) -> Any:
        """
        :raises UnexpectedChainStateError: if the object does not have the field
        """
        try:
            return self.fields[name]
        except KeyError as err:
            raise UnexpectedChainStateError(
                f"object {self.object_id} of type {self.type} has no field '{name}'"
            ) from err


@dataclass(slots=True, frozen=True)
class ChainEvent:
    tx_digest: str
    event_seq: int
    type: MoveType
    parsed_json: dict[str, Any]
    sender: Address | None = None
    timestamp_ms: int | None = None


@dataclass(slots=True, frozen=True)
class GasCost:
    computation: int = 0
    storage: int = 0
    rebate: int = 0

    @property
    def net(self) -> int:
        return self.computation + self.storage - self.rebate


@dataclass(slots=True, frozen=True)
class CreatedObject:
    object_id: ObjectId
    type: MoveType | None
    owner: ObjectOwner | None = None


@dataclass(slots=True, frozen=True)
class TransactionEffects:
    """
    Effects of an executed or simulated transaction.

    For dry runs, `digest` is None.
    """

    success: bool
    digest: str | None = None
    error: str | None = None
    gas: GasCost = GasCost()
    created: tuple[CreatedObject, ...] = ()

    def created_of_type(self, struct: MoveType | str) -> list[CreatedObject]:
        return [
            obj for obj in self.created if obj.type is not None and obj.type.is_struct(struct)
        ]
