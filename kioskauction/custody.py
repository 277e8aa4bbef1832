"""
On-chain custody verification

Every state changing action re-reads custody from the chain first. Cached or indexed ownership data is never
trusted.
"""
from dataclasses import dataclass
from enum import StrEnum

from kioskauction.chain.gateway import ChainGateway
from kioskauction.chain.model import (
    Address,
    ChainObject,
    KIOSK_OWNER_CAP_TYPE,
    KIOSK_TYPE,
    ObjectId,
    OwnerKind,
)
from kioskauction.config import AuctionHouseConfig
from kioskauction.core.logging import get_logger
from kioskauction.core.retry import RetryPolicy
from kioskauction.errors import CustodyError, InvalidObjectIdError


class NftLocationKind(StrEnum):
    # owned directly by an account
    ADDRESS = "address"
    # inside the kiosk that was checked
    KIOSK = "kiosk"
    # owned by some other object, e.g., a third party kiosk
    OTHER_CONTAINER = "other_container"
    # deleted or never existed
    MISSING = "missing"


@dataclass(slots=True, frozen=True)
class NftLocation:
    kind: NftLocationKind
    nft: ChainObject | None = None
    owner: Address | None = None

    def is_owned_by(self, address: Address) -> bool:
        return self.kind == NftLocationKind.ADDRESS and self.owner == address


class CustodyVerifier:
    """
    Fresh chain reads of NFT, kiosk and kiosk owner cap custody
    """

    def __init__(
        self,
        gateway: ChainGateway,
        config: AuctionHouseConfig,
        retry_policy: RetryPolicy,
    ):
        self._gateway = gateway
        self._config = config
        self._retry_policy = retry_policy
        self._logger = get_logger(self)

    async def get_object(self, object_id: ObjectId) -> ChainObject | None:
        object_id = ObjectId(object_id)
        return await self._retry_policy.run(
            lambda: self._gateway.get_object(object_id), f"get_object {object_id}"
        )

    async def verify_custody_container(self, kiosk_id: ObjectId, cap_id: ObjectId) -> None:
        """
        Checks that
        - the kiosk is a shared 0x2::kiosk::Kiosk
        - the kiosk owner cap is owned by the admin and is `for` the kiosk

        :raises CustodyError: if any check fails
        """
        kiosk_id, cap_id = ObjectId(kiosk_id), ObjectId(cap_id)

        kiosk = await self.get_object(kiosk_id)
        if kiosk is None:
            raise CustodyError(f"kiosk does not exist: {kiosk_id}")
        if not kiosk.type.is_struct(KIOSK_TYPE):
            raise CustodyError(f"object is not a kiosk: {kiosk_id} : {kiosk.type}")
        if not kiosk.owner.is_shared:
            raise CustodyError(f"kiosk is not shared: {kiosk_id} : {kiosk.owner}")

        cap = await self.get_object(cap_id)
        if cap is None:
            raise CustodyError(f"kiosk owner cap does not exist: {cap_id}")
        if not cap.type.is_struct(KIOSK_OWNER_CAP_TYPE):
            raise CustodyError(f"object is not a kiosk owner cap: {cap_id} : {cap.type}")
        if not _cap_is_for(cap, kiosk_id):
            raise CustodyError(f"kiosk owner cap {cap_id} is not for kiosk {kiosk_id}")
        if not cap.owner.is_owned_by(self._config.admin_address):
            raise CustodyError(f"kiosk owner cap {cap_id} is not owned by admin: {cap.owner}")

    async def is_in_custody(self, kiosk_id: ObjectId, nft_id: ObjectId) -> bool:
        """
        :return: True if the NFT is one of the kiosk's items
        """
        kiosk_id, nft_id = ObjectId(kiosk_id), ObjectId(nft_id)
        items = await self._retry_policy.run(
            lambda: self._gateway.get_dynamic_fields(kiosk_id),
            f"get_dynamic_fields {kiosk_id}",
        )
        return nft_id in items

    async def locate(self, nft_id: ObjectId, kiosk_id: ObjectId | None = None) -> NftLocation:
        """
        :param kiosk_id: kiosk to check when the NFT is owned by an object
        """
        nft = await self.get_object(nft_id)
        if nft is None:
            return NftLocation(NftLocationKind.MISSING)
        if nft.owner.kind == OwnerKind.ADDRESS:
            return NftLocation(NftLocationKind.ADDRESS, nft, Address(nft.owner.owner_id))
        if kiosk_id is not None and await self.is_in_custody(kiosk_id, nft_id):
            return NftLocation(NftLocationKind.KIOSK, nft)
        return NftLocation(NftLocationKind.OTHER_CONTAINER, nft)

    async def require_owned_by(self, nft_id: ObjectId, owner: Address) -> ChainObject:
        """
        :raises CustodyError: if the NFT is not directly owned by the address
        """
        location = await self.locate(nft_id)
        if not location.is_owned_by(owner):
            raise CustodyError(
                f"NFT {nft_id} is not owned by {owner}: {location.kind} {location.owner or ''}".strip()
            )
        assert location.nft is not None
        return location.nft

    async def find_owner_cap(self, owner: Address, kiosk_id: ObjectId) -> ChainObject | None:
        """
        :return: the kiosk owner cap owned by the address that is `for` the kiosk
        """
        owner, kiosk_id = Address(owner), ObjectId(kiosk_id)
        caps = await self._retry_policy.run(
            lambda: self._gateway.get_owned_objects(owner, KIOSK_OWNER_CAP_TYPE),
            f"get_owned_objects {owner}",
        )
        for cap in caps:
            if _cap_is_for(cap, kiosk_id):
                return cap
        return None


def _cap_is_for(cap: ChainObject, kiosk_id: ObjectId) -> bool:
    try:
        return ObjectId.normalize(cap.fields.get("for", "")) == kiosk_id
    except InvalidObjectIdError:
        return False
