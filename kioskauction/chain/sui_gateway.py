"""
Sui JSON-RPC 2.0 chain gateway
"""
import itertools
from typing import Any

import httpx

from kioskauction.chain.gateway import ChainGateway, SignedTransaction
from kioskauction.chain.model import (
    Address,
    ChainEvent,
    ChainObject,
    CreatedObject,
    GasCost,
    MoveType,
    ObjectId,
    ObjectOwner,
    TransactionEffects,
)
from kioskauction.core.logging import get_logger
from kioskauction.errors import (
    ChainConnectionError,
    ChainRpcError,
    ChainTimeoutError,
    UnexpectedChainStateError,
)

_OBJECT_OPTIONS = {"showType": True, "showOwner": True, "showContent": True}

_PAGE_LIMIT = 50


def parse_owner(owner: Any) -> ObjectOwner:
    """
    Owner formats:
    - {"AddressOwner": "0x..."}
    - {"ObjectOwner": "0x..."}
    - {"Shared": {"initial_shared_version": 1}}
    - "Immutable"
    """
    if owner == "Immutable":
        return ObjectOwner.immutable()
    if isinstance(owner, dict):
        if "AddressOwner" in owner:
            return ObjectOwner.address_owner(owner["AddressOwner"])
        if "ObjectOwner" in owner:
            return ObjectOwner.object_owner(owner["ObjectOwner"])
        if "Shared" in owner:
            return ObjectOwner.shared()
    raise UnexpectedChainStateError(f"unsupported object owner: {owner}")


def parse_object(data: dict[str, Any]) -> ChainObject:
    content = data.get("content") or {}
    return ChainObject(
        object_id=ObjectId.normalize(data["objectId"]),
        type=MoveType.parse(data.get("type") or content["type"]),
        owner=parse_owner(data.get("owner")),
        fields=content.get("fields", {}),
        version=int(data.get("version", 0)),
    )


def parse_effects(
    effects: dict[str, Any],
    digest: str | None = None,
    object_changes: list[dict[str, Any]] | None = None,
) -> TransactionEffects:
    status = effects.get("status", {})
    gas_used = effects.get("gasUsed", {})
    created = tuple(
        CreatedObject(
            object_id=ObjectId.normalize(change["objectId"]),
            type=MoveType.parse(change["objectType"]) if change.get("objectType") else None,
            owner=parse_owner(change["owner"]) if change.get("owner") else None,
        )
        for change in (object_changes or [])
        if change.get("type") == "created"
    )
    return TransactionEffects(
        success=status.get("status") == "success",
        digest=digest or effects.get("transactionDigest"),
        error=status.get("error"),
        gas=GasCost(
            computation=int(gas_used.get("computationCost", 0)),
            storage=int(gas_used.get("storageCost", 0)),
            rebate=int(gas_used.get("storageRebate", 0)),
        ),
        created=created,
    )


def parse_event(event: dict[str, Any]) -> ChainEvent:
    event_id = event.get("id", {})
    timestamp = event.get("timestampMs")
    return ChainEvent(
        tx_digest=event_id.get("txDigest", ""),
        event_seq=int(event_id.get("eventSeq", 0)),
        type=MoveType.parse(event["type"]),
        parsed_json=event.get("parsedJson") or {},
        sender=Address.parse_optional(event.get("sender")),
        timestamp_ms=int(timestamp) if timestamp is not None else None,
    )


class SuiJsonRpcGateway(ChainGateway):
    """
    ChainGateway backed by a Sui full node JSON-RPC endpoint

    Transport errors are mapped to TransientError subclasses. 5xx and 429 responses are treated as transient.
    JSON-RPC error responses are raised as ChainRpcError.

    Usage:
        async with SuiJsonRpcGateway("https://fullnode.mainnet.sui.io:443") as gateway:
            kiosk = await gateway.get_object(kiosk_id)
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url
        self._client = client if client else httpx.AsyncClient(timeout=timeout)
        self._request_ids = itertools.count(1)
        self._logger = get_logger(self)

    async def __aenter__(self) -> "SuiJsonRpcGateway":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as err:
            raise ChainTimeoutError(f"{method} timed out") from err
        except httpx.TransportError as err:
            raise ChainConnectionError(f"{method} failed: {err}") from err

        if response.status_code == 429 or response.status_code >= 500:
            raise ChainConnectionError(f"{method} failed: HTTP {response.status_code}")
        if response.is_error:
            raise ChainRpcError(method, response.status_code, response.text)

        body = response.json()
        if "error" in body:
            error = body["error"]
            raise ChainRpcError(method, error.get("code"), error.get("message", str(error)))
        return body.get("result")

    async def get_object(self, object_id: ObjectId) -> ChainObject | None:
        result = await self._call("sui_getObject", [str(ObjectId(object_id)), _OBJECT_OPTIONS])
        if not result or "data" not in result or result["data"] is None:
            self._logger.debug("object not found: %s : %s", object_id, (result or {}).get("error"))
            return None
        return parse_object(result["data"])

    async def get_dynamic_fields(self, parent_id: ObjectId) -> list[ObjectId]:
        parent_id = ObjectId(parent_id)
        object_ids: list[ObjectId] = []
        cursor = None
        while True:
            page = await self._call(
                "suix_getDynamicFields", [str(parent_id), cursor, _PAGE_LIMIT]
            )
            object_ids.extend(ObjectId.normalize(item["objectId"]) for item in page.get("data", []))
            if not page.get("hasNextPage"):
                return object_ids
            cursor = page.get("nextCursor")

    async def dry_run(self, tx_bytes: str) -> TransactionEffects:
        result = await self._call("sui_dryRunTransactionBlock", [tx_bytes])
        return parse_effects(result["effects"])

    async def submit(self, tx: SignedTransaction) -> TransactionEffects:
        result = await self._call(
            "sui_executeTransactionBlock",
            [
                tx.tx_bytes,
                list(tx.signatures),
                {"showEffects": True, "showObjectChanges": True},
                "WaitForLocalExecution",
            ],
        )
        if result.get("errors"):
            return TransactionEffects(
                success=False,
                digest=result.get("digest"),
                error="; ".join(str(err) for err in result["errors"]),
            )
        return parse_effects(
            result.get("effects", {}),
            digest=result.get("digest"),
            object_changes=result.get("objectChanges"),
        )

    async def query_events(
        self, event_type: MoveType, limit: int = 100, descending: bool = True
    ) -> list[ChainEvent]:
        result = await self._call(
            "suix_queryEvents",
            [{"MoveEventType": str(event_type)}, None, limit, descending],
        )
        return [parse_event(event) for event in result.get("data", [])]

    async def get_owned_objects(
        self, owner: Address, struct_type: MoveType
    ) -> list[ChainObject]:
        owner = Address(owner)
        objects: list[ChainObject] = []
        cursor = None
        while True:
            page = await self._call(
                "suix_getOwnedObjects",
                [
                    str(owner),
                    {"filter": {"StructType": str(struct_type)}, "options": _OBJECT_OPTIONS},
                    cursor,
                    _PAGE_LIMIT,
                ],
            )
            objects.extend(
                parse_object(item["data"]) for item in page.get("data", []) if item.get("data")
            )
            if not page.get("hasNextPage"):
                return objects
            cursor = page.get("nextCursor")

    async def get_balance(self, owner: Address) -> int:
        result = await self._call("suix_getBalance", [str(Address(owner))])
        return int(result.get("totalBalance", 0))

    async def get_transaction_timestamp(self, digest: str) -> int | None:
        result = await self._call("sui_getTransactionBlock", [digest, {}])
        timestamp = (result or {}).get("timestampMs")
        return int(timestamp) if timestamp is not None else None
