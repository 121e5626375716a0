"""
Batch Redemption Executor

Turns every admitted follower copy for one leader trade into a single
delegation-redemption call, wrapped in a single ERC-4337 user operation.
The batch lands or reverts as a whole; there is no partial execution.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass, replace
from typing import Dict, Optional, Sequence
import logging

from redis.asyncio import Redis

from copytrade.core.config import settings
from copytrade.core.exceptions import BatchExecutionFailure, RelayError
from copytrade.core.redis import get_redis_client
from copytrade.services.bundler_client import BundlerClient, UserOpReceipt
from copytrade.services.chain_client import ChainClient
from copytrade.services.sizing import SizedTrade
from copytrade.services.user_operation import (
    DUMMY_SIGNATURE,
    Execution,
    RelayerAccount,
    UserOperation,
    encode_execute,
    encode_redeem_delegations,
    permission_contexts,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionBatch:
    """Every admitted copy of one leader trade within one match"""
    match_id: str
    leader: str
    items: Sequence[SizedTrade]
    target: str
    call_data: str = "0x"
    source_ref: Optional[str] = None  # identity of the leader trade, when known

    @property
    def executions(self) -> list[Execution]:
        return [
            Execution(target=self.target, value=item.copy_amount, call_data=self.call_data)
            for item in self.items
        ]

    @property
    def batch_key(self) -> Optional[str]:
        """
        Stable identity of this batch, used to refuse double submission.

        None when the leader trade carries no identity of its own: two
        identical trades are then two real trades and both must be copied.
        """
        if not self.source_ref:
            return None
        canonical = json.dumps(
            {
                "match": self.match_id,
                "leader": self.leader.lower(),
                "source": self.source_ref,
                "target": self.target.lower(),
                "data": self.call_data.lower(),
                "items": sorted(
                    [i.delegation.delegation_hash, str(i.copy_amount)] for i in self.items
                ),
            },
            sort_keys=True,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class BatchReceipt:
    batch_key: Optional[str]
    user_op_hash: str
    block_number: int
    transaction_hash: str
    item_count: int
    duplicate: bool = False  # resolved to an op submitted by an earlier wave


class BatchKeyStore:
    """
    Maps batch keys to submitted user-op hashes.
    Backed by Redis when available, otherwise by process memory.
    """

    PREFIX = "copybatch:"

    def __init__(self, redis: Optional[Redis] = None, ttl_seconds: int = 86400):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self._local: Dict[str, str] = {}

    async def lookup(self, batch_key: str) -> Optional[str]:
        if self.redis is not None:
            value = await self.redis.get(self.PREFIX + batch_key)
            if value is None:
                return None
            return value.decode("utf-8") if isinstance(value, bytes) else value
        return self._local.get(batch_key)

    async def remember(self, batch_key: str, user_op_hash: str) -> Optional[str]:
        """Record a submission. Returns the existing hash if another won the race."""
        if self.redis is not None:
            stored = await self.redis.set(
                self.PREFIX + batch_key, user_op_hash, nx=True, ex=self.ttl_seconds
            )
            return None if stored else await self.lookup(batch_key)

        existing = self._local.get(batch_key)
        if existing is None:
            self._local[batch_key] = user_op_hash
        return existing

    async def forget(self, batch_key: str) -> None:
        if self.redis is not None:
            await self.redis.delete(self.PREFIX + batch_key)
        else:
            self._local.pop(batch_key, None)


class BatchRedemptionExecutor:
    """
    Submits redemption batches through the bundler relay.

    The relayer account is a single-owner resource: callers hold ``lock``
    for the whole admission-to-reconciliation wave so two waves never race
    for the same EntryPoint nonce.
    """

    def __init__(
        self,
        bundler: BundlerClient,
        chain: ChainClient,
        relayer: RelayerAccount,
        delegation_manager: str,
        entrypoint: str,
        chain_id: int,
        key_store: Optional[BatchKeyStore] = None,
        receipt_timeout: float = 60.0,
        poll_interval: float = 1.0,
        submit_retries: int = 1,
    ):
        self.bundler = bundler
        self.chain = chain
        self.relayer = relayer
        self.delegation_manager = delegation_manager
        self.entrypoint = entrypoint
        self.chain_id = chain_id
        self.key_store = key_store or BatchKeyStore()
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.submit_retries = max(0, submit_retries)
        self.lock = asyncio.Lock()

    # ------------------------------------------------------------------ build

    def build_call_data(self, batch: RedemptionBatch) -> bytes:
        contexts = permission_contexts(
            [item.delegation.signed_delegation for item in batch.items]
        )
        redeem = encode_redeem_delegations(contexts, batch.executions)
        return encode_execute(self.delegation_manager, 0, redeem)

    async def build_user_operation(self, batch: RedemptionBatch) -> UserOperation:
        nonce = await self.chain.get_nonce(self.relayer.address)
        fees = await self.chain.get_fee_data()

        draft = UserOperation(
            sender=self.relayer.address,
            nonce=nonce,
            call_data=self.build_call_data(batch),
            max_fee_per_gas=fees.max_fee_per_gas,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
            signature=DUMMY_SIGNATURE,
        )
        estimate = await self.bundler.estimate_user_operation_gas(draft.to_rpc())
        op = draft.with_gas(estimate)

        op_hash = op.hash(self.entrypoint, self.chain_id)
        return replace(op, signature=self.relayer.sign(op_hash))

    # ---------------------------------------------------------------- execute

    async def execute(self, batch: RedemptionBatch) -> BatchReceipt:
        if not batch.items:
            raise ValueError("Refusing to submit an empty batch")

        batch_key = batch.batch_key
        if batch_key is None:
            logger.debug(f"Leader trade for match {batch.match_id} has no identity, not deduplicated")
        else:
            existing = await self.key_store.lookup(batch_key)
            if existing:
                logger.warning(
                    f"Batch {batch_key[:12]} for match {batch.match_id} already submitted "
                    f"as {existing}; awaiting its receipt instead of resubmitting"
                )
                return await self._await_receipt(batch, existing, duplicate=True)

        try:
            op = await self.build_user_operation(batch)
        except BatchExecutionFailure:
            raise
        except Exception as e:
            raise BatchExecutionFailure(f"Could not build user operation: {e}")

        user_op_hash = await self._submit(op)

        if batch_key is not None:
            raced = await self.key_store.remember(batch_key, user_op_hash)
            if raced and raced != user_op_hash:
                logger.error(f"Batch {batch_key[:12]} was claimed concurrently by {raced}")

        logger.info(
            f"Submitted batch of {len(batch.items)} copy trade(s) for match "
            f"{batch.match_id}: userOp {user_op_hash}"
        )
        return await self._await_receipt(batch, user_op_hash)

    async def _submit(self, op: UserOperation) -> str:
        local_hash = "0x" + op.hash(self.entrypoint, self.chain_id).hex()
        attempts = 1 + self.submit_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return await self.bundler.send_user_operation(op.to_rpc())
            except RelayError as e:
                last_error = e
                logger.warning(f"eth_sendUserOperation attempt {attempt}/{attempts} failed: {e}")

            # The same signed op may have reached the relay despite the error
            try:
                if await self.bundler.get_user_operation_by_hash(local_hash):
                    logger.info(f"Relay already holds userOp {local_hash}")
                    return local_hash
            except RelayError as e:
                logger.debug(f"eth_getUserOperationByHash failed: {e}")

        raise BatchExecutionFailure(f"Relay rejected batch: {last_error}", user_op_hash=local_hash)

    async def _await_receipt(
        self, batch: RedemptionBatch, user_op_hash: str, duplicate: bool = False
    ) -> BatchReceipt:
        try:
            receipt: UserOpReceipt = await self.bundler.wait_for_receipt(
                user_op_hash, timeout=self.receipt_timeout, poll_interval=self.poll_interval
            )
        except asyncio.TimeoutError:
            # Key stays claimed: the op may still land, and a duplicate event
            # must re-observe it rather than submit again.
            raise BatchExecutionFailure(
                f"No receipt for userOp {user_op_hash} within {self.receipt_timeout}s",
                user_op_hash=user_op_hash,
            )
        except RelayError as e:
            raise BatchExecutionFailure(f"Receipt lookup failed: {e}", user_op_hash=user_op_hash)

        if not receipt.success:
            if batch.batch_key is not None:
                await self.key_store.forget(batch.batch_key)
            raise BatchExecutionFailure(
                f"userOp {user_op_hash} reverted: {receipt.reason or 'no reason'}",
                user_op_hash=user_op_hash,
            )

        return BatchReceipt(
            batch_key=batch.batch_key,
            user_op_hash=user_op_hash,
            block_number=receipt.block_number,
            transaction_hash=receipt.transaction_hash,
            item_count=len(batch.items),
            duplicate=duplicate,
        )


def build_chain_client() -> ChainClient:
    return ChainClient(
        rpc_url=settings.RPC_URL,
        delegation_manager_address=settings.DELEGATION_MANAGER_ADDRESS,
        entrypoint_address=settings.ENTRYPOINT_ADDRESS,
        fallback_max_fee=settings.FALLBACK_MAX_FEE_PER_GAS,
        fallback_priority_fee=settings.FALLBACK_MAX_PRIORITY_FEE_PER_GAS,
    )


def build_batch_executor(chain: Optional[ChainClient] = None) -> BatchRedemptionExecutor:
    """Wire an executor from application settings."""
    if not settings.RELAYER_PRIVATE_KEY or not settings.RELAYER_SMART_ACCOUNT_ADDRESS:
        raise RuntimeError("RELAYER_PRIVATE_KEY and RELAYER_SMART_ACCOUNT_ADDRESS must be set")

    return BatchRedemptionExecutor(
        bundler=BundlerClient(settings.BUNDLER_URL, settings.ENTRYPOINT_ADDRESS),
        chain=chain or build_chain_client(),
        relayer=RelayerAccount(settings.RELAYER_SMART_ACCOUNT_ADDRESS, settings.RELAYER_PRIVATE_KEY),
        delegation_manager=settings.DELEGATION_MANAGER_ADDRESS,
        entrypoint=settings.ENTRYPOINT_ADDRESS,
        chain_id=settings.CHAIN_ID,
        key_store=BatchKeyStore(get_redis_client(), settings.BATCH_KEY_TTL_SECONDS),
        receipt_timeout=settings.BATCH_RECEIPT_TIMEOUT_SECONDS,
        poll_interval=settings.BATCH_RECEIPT_POLL_INTERVAL_SECONDS,
        submit_retries=settings.BATCH_SUBMIT_RETRIES,
    )
