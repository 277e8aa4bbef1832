"""
Auction house configuration

Defaults match the mainnet deployment of the marketplace package.
"""
import os
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from typing import Mapping

from kioskauction.chain.model import Address, ObjectId
from kioskauction.errors import ValidationError

ENV_PREFIX = "KIOSK_AUCTION_"

MIST_PER_SUI = 1_000_000_000


@dataclass(frozen=True)
class AuctionHouseConfig:
    """Auction house configuration parameters"""

    # pylint: disable=too-many-instance-attributes

    # Identities
    admin_address: Address = Address(
        "0x3a74d8e94bf49bb738a3f1dedcc962ed01c89f78d21c01d87ee5e6980f0750e9"
    )
    package_id: ObjectId = ObjectId(
        "0xe698a87c127715a2a7606fcc7550d96daf082ccb398c95fb1f4d73104aefb6c8"
    )
    shared_kiosk_id: ObjectId = ObjectId(
        "0x88411ccf93211de8e5f2a6416e4db21de4a0d69fc308a2a72e970ff05758a083"
    )
    kiosk_owner_cap_id: ObjectId = ObjectId(
        "0x5c04a377c1e8c8c54c200db56083cc93eb46243ad4c2cf5b90c4aaef8500cfee"
    )
    fee_address: Address = Address(
        "0x8cfed3962605beacf459a4bab2830a7c8e95bab8e60c228e65b2837565bd5fb8"
    )

    # Economics (amounts in MIST)
    fee_bps: int = 750  # 7.5% marketplace fee
    min_bid_increment: int = MIST_PER_SUI // 10
    cooldown: timedelta = timedelta(minutes=60)

    # Gas
    min_gas_budget: int = 100_000_000
    fallback_gas_budget: int = 150_000_000
    gas_budget_multiplier: float = 1.5

    # Submission retries, applied only after a fresh state re-check
    submission_retries: int = 1
    submission_retry_backoff: timedelta = timedelta(seconds=5)

    # Chain reads and record store calls
    rpc_url: str = "https://fullnode.mainnet.sui.io:443"
    rpc_timeout: timedelta = timedelta(seconds=20)
    retry_max_attempts: int = 3
    retry_backoff_step: timedelta = timedelta(seconds=2)

    # Projection
    queue_preview_size: int = 5
    bid_event_query_limit: int = 100

    # Scheduler
    scheduler_poll_interval: timedelta = timedelta(seconds=30)

    def __post_init__(self):
        for name in ("admin_address", "fee_address"):
            object.__setattr__(self, name, Address(getattr(self, name)))
        for name in ("package_id", "shared_kiosk_id", "kiosk_owner_cap_id"):
            object.__setattr__(self, name, ObjectId(getattr(self, name)))
        if not 0 <= self.fee_bps <= 10_000:
            raise ValidationError(f"fee_bps must be in [0, 10000]: {self.fee_bps}")
        if self.min_bid_increment < 0:
            raise ValidationError(f"min_bid_increment must not be negative: {self.min_bid_increment}")
        if self.min_gas_budget <= 0 or self.fallback_gas_budget <= 0:
            raise ValidationError("gas budgets must be positive")
        if self.submission_retries < 0:
            raise ValidationError(f"submission_retries must not be negative: {self.submission_retries}")
        if self.retry_max_attempts < 1:
            raise ValidationError(f"retry_max_attempts must be at least 1: {self.retry_max_attempts}")

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, prefix: str = ENV_PREFIX
    ) -> "AuctionHouseConfig":
        """
        Overrides defaults from environment variables named `{prefix}{FIELD_NAME}`, e.g., KIOSK_AUCTION_ADMIN_ADDRESS.

        timedelta fields are read as seconds.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for config_field in fields(cls):
            value = environ.get(f"{prefix}{config_field.name.upper()}")
            if value is None:
                continue
            overrides[config_field.name] = _parse(config_field.name, config_field.type, value)
        return replace(cls(), **overrides)


def _parse(name: str, field_type, value: str):
    try:
        if field_type in (timedelta, "timedelta"):
            return timedelta(seconds=float(value))
        if field_type in (int, "int"):
            return int(value)
        if field_type in (float, "float"):
            return float(value)
        if field_type in (Address, "Address"):
            return Address(value)
        if field_type in (ObjectId, "ObjectId"):
            return ObjectId(value)
    except ValueError as err:
        raise ValidationError(f"invalid value for {name}: {value!r}") from err
    return value
