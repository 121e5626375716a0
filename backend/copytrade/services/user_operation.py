"""
ERC-4337 (EntryPoint v0.7) user operations and delegation redemption encoding

The relayer's smart account submits one user operation per batch. Its call
data is ``execute(DelegationManager, 0, redeemDelegations(...))`` where each
redemption pairs one follower's opaque permission context with one
ERC-7579 single-call execution.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address

REDEEM_DELEGATIONS_SELECTOR = function_signature_to_4byte_selector(
    "redeemDelegations(bytes[],bytes32[],bytes[])"
)
EXECUTE_SELECTOR = function_signature_to_4byte_selector("execute(address,uint256,bytes)")

# ERC-7579 mode: single call, revert on failure, no selector, no payload
SINGLE_DEFAULT_MODE = b"\x00" * 32

# Well-formed but meaningless signature used only for gas estimation
DUMMY_SIGNATURE = bytes.fromhex("ff" * 64 + "1c")


def hex_bytes(value: str) -> bytes:
    return to_bytes(hexstr=value) if value and value != "0x" else b""


@dataclass(frozen=True)
class Execution:
    """One call the follower's account will make: opaque, venue-agnostic."""
    target: str
    value: int
    call_data: str = "0x"

    def encode_single(self) -> bytes:
        # abi.encodePacked(address target, uint256 value, bytes callData)
        return (
            to_bytes(hexstr=self.target)
            + self.value.to_bytes(32, "big")
            + hex_bytes(self.call_data)
        )


def encode_redeem_delegations(
    permission_contexts: Sequence[bytes], executions: Sequence[Execution]
) -> bytes:
    if len(permission_contexts) != len(executions):
        raise ValueError("Each permission context needs exactly one execution")

    modes = [SINGLE_DEFAULT_MODE] * len(executions)
    encoded = [e.encode_single() for e in executions]
    return REDEEM_DELEGATIONS_SELECTOR + encode(
        ["bytes[]", "bytes32[]", "bytes[]"],
        [list(permission_contexts), modes, encoded],
    )


def encode_execute(target: str, value: int, data: bytes) -> bytes:
    return EXECUTE_SELECTOR + encode(
        ["address", "uint256", "bytes"],
        [to_checksum_address(target), value, data],
    )


def _quantity(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class UserOperation:
    sender: str
    nonce: int
    call_data: bytes
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    signature: bytes = b""
    factory: Optional[str] = None
    factory_data: bytes = field(default=b"")

    @property
    def init_code(self) -> bytes:
        if not self.factory:
            return b""
        return to_bytes(hexstr=self.factory) + self.factory_data

    def with_gas(self, estimate: Dict[str, Any]) -> "UserOperation":
        return replace(
            self,
            call_gas_limit=_quantity(estimate["callGasLimit"]),
            verification_gas_limit=_quantity(estimate["verificationGasLimit"]),
            pre_verification_gas=_quantity(estimate["preVerificationGas"]),
        )

    def packed(self) -> bytes:
        account_gas_limits = (
            (self.verification_gas_limit << 128) | self.call_gas_limit
        ).to_bytes(32, "big")
        gas_fees = (
            (self.max_priority_fee_per_gas << 128) | self.max_fee_per_gas
        ).to_bytes(32, "big")

        return encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                to_checksum_address(self.sender),
                self.nonce,
                keccak(self.init_code),
                keccak(self.call_data),
                account_gas_limits,
                self.pre_verification_gas,
                gas_fees,
                keccak(b""),  # no paymaster
            ],
        )

    def hash(self, entrypoint: str, chain_id: int) -> bytes:
        return keccak(encode(
            ["bytes32", "address", "uint256"],
            [keccak(self.packed()), to_checksum_address(entrypoint), chain_id],
        ))

    def to_rpc(self) -> Dict[str, Any]:
        op = {
            "sender": to_checksum_address(self.sender),
            "nonce": hex(self.nonce),
            "callData": "0x" + self.call_data.hex(),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "signature": "0x" + self.signature.hex(),
        }
        if self.factory:
            op["factory"] = to_checksum_address(self.factory)
            op["factoryData"] = "0x" + self.factory_data.hex()
        return op


class RelayerAccount:
    """The single on-chain identity that submits every redemption batch."""

    def __init__(self, smart_account_address: str, private_key: str):
        self.address = to_checksum_address(smart_account_address)
        self._signer = Account.from_key(private_key)

    @property
    def owner(self) -> str:
        return self._signer.address

    def sign(self, user_op_hash: bytes) -> bytes:
        signed = self._signer.sign_message(encode_defunct(primitive=user_op_hash))
        return bytes(signed.signature)


def permission_contexts(payloads: List[str]) -> List[bytes]:
    return [hex_bytes(p) for p in payloads]
