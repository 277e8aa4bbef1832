"""
Transaction orchestrator

Estimates the gas budget with a dry run, checks the signer can pay, signs, submits and reports structured effects.
The orchestrator never touches the record store. Callers in the state machine own the bookkeeping.
"""
import math
from dataclasses import dataclass

from kioskauction.chain.gateway import ChainGateway, SignedTransaction, TransactionSigner
from kioskauction.chain.model import CreatedObject, MoveType, TransactionEffects
from kioskauction.chain.transactions import TransactionDraft
from kioskauction.config import AuctionHouseConfig
from kioskauction.core.logging import get_logger
from kioskauction.core.retry import RetryPolicy
from kioskauction.errors import (
    ChainRpcError,
    InsufficientBalanceError,
    TransactionFailedError,
    TransientError,
    UnauthorizedError,
)


@dataclass(slots=True, frozen=True)
class TransactionResult:
    success: bool
    digest: str | None
    effects: TransactionEffects | None
    created_objects: tuple[CreatedObject, ...] = ()
    error: str | None = None

    def created_of_type(self, struct: MoveType | str) -> list[CreatedObject]:
        if self.effects is None:
            return []
        return self.effects.created_of_type(struct)


class TransactionOrchestrator:
    """
    Budget estimation, balance pre-check, submission and success verification.

    Reads (dry run, balance) go through the retry policy. Submissions are never retried here: whether a failed
    submission may be retried is decided by the caller after re-checking chain state.
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

    async def estimate_budget(self, draft: TransactionDraft, signer: TransactionSigner) -> int:
        """
        Budget = max(ceil(net gas * multiplier), min budget)

        Never fails the caller: if the simulation fails or the node cannot be reached, the fallback budget is returned.
        """
        _check_signer(draft, signer)
        try:
            tx_bytes = await signer.build(draft, None)
            effects = await self._retry_policy.run(
                lambda: self._gateway.dry_run(tx_bytes),
                f"dry run {draft.description}",
            )
        except (TransientError, ChainRpcError) as err:
            self._logger.warning(
                "dry run failed for %s, using fallback budget: %s", draft.description, err
            )
            return self._config.fallback_gas_budget

        if not effects.success:
            self._logger.warning(
                "dry run of %s reported failure, using fallback budget: %s",
                draft.description,
                effects.error,
            )
            return self._config.fallback_gas_budget

        return max(
            math.ceil(effects.gas.net * self._config.gas_budget_multiplier),
            self._config.min_gas_budget,
        )

    async def check_balance(self, signer: TransactionSigner, budget: int, spend: int = 0) -> int:
        """
        :param spend: amount transferred out of the gas coin by the transaction, e.g., a bid
        :return: balance
        :raises InsufficientBalanceError: if balance < budget + spend
        """
        balance = await self._retry_policy.run(
            lambda: self._gateway.get_balance(signer.address),
            f"balance {signer.address}",
        )
        if balance < budget + spend:
            raise InsufficientBalanceError(signer.address, balance, budget + spend)
        return balance

    async def submit(
        self, draft: TransactionDraft, signer: TransactionSigner, budget: int
    ) -> TransactionResult:
        """
        Signs and executes the transaction, waiting for local execution.

        Node errors during execution, e.g., the transaction was rejected before it ran, are reported as a failed
        result. Timeouts propagate: the outcome is unknown and must be resolved by re-reading chain state.
        """
        _check_signer(draft, signer)
        tx_bytes = await signer.build(draft, budget)
        signature = await signer.sign(tx_bytes)
        signed = SignedTransaction(
            draft=draft, tx_bytes=tx_bytes, signatures=(signature,), gas_budget=budget
        )

        self._logger.info(
            "submitting %s: sender=%s budget=%s", draft.description, draft.sender, budget
        )
        try:
            effects = await self._retry_policy.with_max_attempts(1).run(
                lambda: self._gateway.submit(signed),
                f"submit {draft.description}",
            )
        except ChainRpcError as err:
            self._logger.error("%s was rejected: %s", draft.description, err)
            return TransactionResult(success=False, digest=None, effects=None, error=str(err))

        if not effects.success:
            self._logger.error(
                "%s failed: digest=%s error=%s", draft.description, effects.digest, effects.error
            )
        else:
            self._logger.info("%s succeeded: digest=%s", draft.description, effects.digest)

        return TransactionResult(
            success=effects.success,
            digest=effects.digest,
            effects=effects,
            created_objects=effects.created,
            error=effects.error,
        )

    async def execute(
        self, draft: TransactionDraft, signer: TransactionSigner, spend: int = 0
    ) -> TransactionResult:
        """
        estimate budget -> balance check -> submit

        :raises InsufficientBalanceError: before anything is submitted
        :raises TransactionFailedError: if the transaction reports a failed status
        """
        budget = await self.estimate_budget(draft, signer)
        await self.check_balance(signer, budget, spend)
        result = await self.submit(draft, signer, budget)
        if not result.success:
            raise TransactionFailedError(draft.description, result.digest, result.error)
        return result


def _check_signer(draft: TransactionDraft, signer: TransactionSigner):
    if draft.sender != signer.address:
        raise UnauthorizedError(
            f"signer {signer.address} cannot sign for sender {draft.sender}"
        )
