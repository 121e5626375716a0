"""
Read-only chain access: delegation liveness, EntryPoint nonces and fee data.
"""

from dataclasses import dataclass
import logging

from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3

logger = logging.getLogger(__name__)

DELEGATION_MANAGER_ABI = [
    {
        "name": "getDelegatorAddress",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

DELEGATOR_ABI = [
    {
        "name": "delegations",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [
            {"name": "delegate", "type": "address"},
            {"name": "delegator", "type": "address"},
            {"name": "enabled", "type": "bool"},
        ],
    },
]

ENTRYPOINT_ABI = [
    {
        "name": "getNonce",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "sender", "type": "address"},
            {"name": "key", "type": "uint192"},
        ],
        "outputs": [{"name": "nonce", "type": "uint256"}],
    },
]


@dataclass(frozen=True)
class FeeData:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


class ChainClient:
    """
    Thin wrapper over AsyncWeb3 for the handful of view calls the engine needs.

    Errors propagate to the caller; deciding what a failed read means is the
    caller's job.
    """

    def __init__(
        self,
        rpc_url: str,
        delegation_manager_address: str,
        entrypoint_address: str,
        fallback_max_fee: int,
        fallback_priority_fee: int,
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.delegation_manager = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(delegation_manager_address),
            abi=DELEGATION_MANAGER_ABI,
        )
        self.entrypoint = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(entrypoint_address),
            abi=ENTRYPOINT_ABI,
        )
        self.fallback_max_fee = fallback_max_fee
        self.fallback_priority_fee = fallback_priority_fee

    async def get_delegator_address(self, user: str) -> str:
        return await self.delegation_manager.functions.getDelegatorAddress(
            AsyncWeb3.to_checksum_address(user)
        ).call()

    async def is_delegation_enabled(self, delegation_hash: str, delegator: str) -> bool:
        """Ask the delegator smart account whether the delegation is still enabled."""
        account = await self.get_delegator_address(delegator)
        contract = self.w3.eth.contract(address=account, abi=DELEGATOR_ABI)
        _delegate, _delegator, enabled = await contract.functions.delegations(
            HexBytes(delegation_hash)
        ).call()
        return bool(enabled)

    async def get_nonce(self, sender: str, key: int = 0) -> int:
        return await self.entrypoint.functions.getNonce(
            AsyncWeb3.to_checksum_address(sender), key
        ).call()

    async def get_fee_data(self) -> FeeData:
        try:
            priority = await self.w3.eth.max_priority_fee
            block = await self.w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
        except Exception as e:
            logger.warning(f"Fee data unavailable, using fallbacks: {e}")
            return FeeData(self.fallback_max_fee, self.fallback_priority_fee)

        if base_fee is None:
            return FeeData(self.fallback_max_fee, priority or self.fallback_priority_fee)
        return FeeData(max_fee_per_gas=2 * base_fee + priority, max_priority_fee_per_gas=priority)
