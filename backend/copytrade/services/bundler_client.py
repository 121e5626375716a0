"""
JSON-RPC client for an ERC-4337 bundler relay
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

import httpx

from copytrade.core.exceptions import RelayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserOpReceipt:
    user_op_hash: str
    success: bool
    block_number: int
    transaction_hash: str
    reason: Optional[str] = None

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "UserOpReceipt":
        receipt = data.get("receipt") or {}
        block = receipt.get("blockNumber", 0)
        if isinstance(block, str):
            block = int(block, 16) if block.startswith("0x") else int(block)
        return cls(
            user_op_hash=data.get("userOpHash", ""),
            success=bool(data.get("success")),
            block_number=block,
            transaction_hash=receipt.get("transactionHash", ""),
            reason=data.get("reason") or None,
        )


class BundlerClient:
    def __init__(
        self,
        url: str,
        entrypoint: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.entrypoint = entrypoint
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: list) -> Any:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self.url, json=request)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise RelayError(f"{method} transport failure: {e}")
        except ValueError as e:
            raise RelayError(f"{method} returned invalid JSON: {e}")

        if body.get("error"):
            error = body["error"]
            raise RelayError(
                f"{method} failed: {error.get('message', error)}",
                code=error.get("code"),
            )
        return body.get("result")

    async def estimate_user_operation_gas(self, user_op: Dict[str, Any]) -> Dict[str, Any]:
        return await self._rpc("eth_estimateUserOperationGas", [user_op, self.entrypoint])

    async def send_user_operation(self, user_op: Dict[str, Any]) -> str:
        return await self._rpc("eth_sendUserOperation", [user_op, self.entrypoint])

    async def get_user_operation_by_hash(self, user_op_hash: str) -> Optional[Dict[str, Any]]:
        return await self._rpc("eth_getUserOperationByHash", [user_op_hash])

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[UserOpReceipt]:
        result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        if not result:
            return None
        return UserOpReceipt.from_rpc(result)

    async def wait_for_receipt(
        self, user_op_hash: str, timeout: float, poll_interval: float = 1.0
    ) -> UserOpReceipt:
        """Poll until the operation is mined. Raises asyncio.TimeoutError."""
        async def poll() -> UserOpReceipt:
            while True:
                receipt = await self.get_user_operation_receipt(user_op_hash)
                if receipt is not None:
                    return receipt
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(poll(), timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()
