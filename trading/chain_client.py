"""On-chain client for one signing account: reads, fee-capped submissions, swaps."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

import config
from trading.errors import TransientError, TxFailed

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

WRAPPED_NATIVE_ABI: list[dict[str, Any]] = [
    {
        "name": "deposit",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [],
        "outputs": [],
    },
]

ERC721_ABI: list[dict[str, Any]] = [
    {
        "name": "ownerOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactTokensForTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]


def native_to_wei(amount: float | str | Decimal) -> int:
    return int(Web3.to_wei(Decimal(str(amount)), "ether"))


def format_native(amount_wei: int) -> str:
    return f"{Decimal(int(amount_wei)) / Decimal(10**18):.6f}"


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    gas_used: int


class ChainClient:
    def __init__(
        self,
        private_key: str,
        wallet_address: str,
        *,
        rpc_url: str | None = None,
        label: str = "wallet",
    ) -> None:
        if not private_key:
            raise ValueError(f"{label}: private key is empty")
        if not wallet_address:
            raise ValueError(f"{label}: wallet address is empty")
        rpc = (rpc_url if rpc_url is not None else config.RPC_URL).strip()
        if not rpc:
            raise ValueError("RPC_URL is empty")

        self.label = label
        self.w3 = Web3(HTTPProvider(rpc, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))
        if not self.w3.is_connected():
            raise ValueError("Web3 not connected")

        self.account = Account.from_key(private_key)
        self.address = self.w3.to_checksum_address(wallet_address)
        if self.account.address.lower() != self.address.lower():
            raise ValueError(f"{label}: wallet address does not match private key")

    def _read(self, op: str, fn: Callable[[], Any]) -> Any:
        attempts = max(1, int(config.RPC_READ_RETRIES))
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ContractLogicError:
                raise
            except (OSError, TimeoutError, Web3Exception) as exc:
                if attempt >= attempts:
                    raise TransientError(f"rpc_read_failed op={op} attempts={attempts}: {exc}") from exc
                logger.debug("RPC_READ_RETRY op=%s attempt=%s/%s err=%s", op, attempt, attempts, exc)
                time.sleep(float(config.RPC_READ_RETRY_DELAY_SECONDS))
        raise TransientError(f"rpc_read_exhausted op={op}")

    def _preflight_read(self, op: str, fn: Callable[[], Any]) -> Any:
        # Nothing has been broadcast yet, so a failed read means nothing was paid.
        try:
            return self._read(op, fn)
        except TransientError as exc:
            raise TxFailed(f"preflight_read_failed: {exc}") from exc

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Contract:
        return self.w3.eth.contract(address=self.w3.to_checksum_address(address), abi=abi)

    def native_balance_wei(self, address: str | None = None) -> int:
        target = self.w3.to_checksum_address(address) if address else self.address
        return int(self._read("get_balance", lambda: self.w3.eth.get_balance(target)))

    def token_balance_wei(self, token: str, owner: str | None = None) -> int:
        contract = self._contract(token, ERC20_ABI)
        holder = self.w3.to_checksum_address(owner) if owner else self.address
        return int(self._read("balanceOf", lambda: contract.functions.balanceOf(holder).call()))

    def owner_of(self, collection: str, token_id: str | int) -> str:
        """Current owner of an ERC721 token, or "" if the token has no owner."""
        contract = self._contract(collection, ERC721_ABI)
        try:
            return str(self._read("ownerOf", lambda: contract.functions.ownerOf(int(token_id)).call()))
        except ContractLogicError:
            return ""

    def quote_amount_out(self, router: str, amount_in: int, path: list[str]) -> int:
        contract = self._contract(router, ROUTER_ABI)
        checksum_path = [self.w3.to_checksum_address(p) for p in path]
        try:
            amounts = self._read(
                "getAmountsOut", lambda: contract.functions.getAmountsOut(int(amount_in), checksum_path).call()
            )
        except ContractLogicError:
            return 0
        if not isinstance(amounts, (list, tuple)) or len(amounts) < 2:
            return 0
        return max(0, int(amounts[-1]))

    def submit_call(self, to: str, data: str, value_wei: int = 0) -> TxReceipt:
        tx = self._tx_params(value_wei=value_wei)
        tx["to"] = self.w3.to_checksum_address(to)
        tx["data"] = data
        return self._send_and_wait(tx)

    def send_native(self, to: str, value_wei: int) -> TxReceipt:
        tx = self._tx_params(value_wei=value_wei)
        tx["to"] = self.w3.to_checksum_address(to)
        return self._send_and_wait(tx)

    def transfer_token(self, token: str, to: str, amount_wei: int) -> TxReceipt:
        contract = self._contract(token, ERC20_ABI)
        tx = contract.functions.transfer(self.w3.to_checksum_address(to), int(amount_wei)).build_transaction(
            self._tx_params()
        )
        return self._send_and_wait(tx)

    def wrap_native(self, wrapped: str, amount_wei: int) -> TxReceipt:
        contract = self._contract(wrapped, WRAPPED_NATIVE_ABI)
        tx = contract.functions.deposit().build_transaction(self._tx_params(value_wei=amount_wei))
        return self._send_and_wait(tx)

    def ensure_allowance(self, token: str, spender: str, amount_wei: int) -> TxReceipt | None:
        contract = self._contract(token, ERC20_ABI)
        spender_cs = self.w3.to_checksum_address(spender)
        allowance = int(self._read("allowance", lambda: contract.functions.allowance(self.address, spender_cs).call()))
        if allowance >= int(amount_wei):
            return None
        tx = contract.functions.approve(spender_cs, int(amount_wei)).build_transaction(self._tx_params())
        return self._send_and_wait(tx)

    def swap_exact_tokens_for_tokens(
        self, router: str, amount_in: int, min_out: int, path: list[str], recipient: str
    ) -> TxReceipt:
        contract = self._contract(router, ROUTER_ABI)
        tx = contract.functions.swapExactTokensForTokens(
            int(amount_in),
            int(min_out),
            [self.w3.to_checksum_address(p) for p in path],
            self.w3.to_checksum_address(recipient),
            self._deadline(),
        ).build_transaction(self._tx_params())
        return self._send_and_wait(tx)

    def swap_exact_native_for_tokens(
        self, router: str, amount_in: int, min_out: int, path: list[str], recipient: str
    ) -> TxReceipt:
        contract = self._contract(router, ROUTER_ABI)
        tx = contract.functions.swapExactETHForTokens(
            int(min_out),
            [self.w3.to_checksum_address(p) for p in path],
            self.w3.to_checksum_address(recipient),
            self._deadline(),
        ).build_transaction(self._tx_params(value_wei=amount_in))
        return self._send_and_wait(tx)

    def sign_typed_data(self, domain: dict[str, Any], types: dict[str, Any], message: dict[str, Any]) -> str:
        """EIP-712 signature for off-chain marketplace orders."""
        message_types = {k: v for k, v in types.items() if k != "EIP712Domain"}
        signable = encode_typed_data(domain_data=domain, message_types=message_types, message_data=message)
        signed = self.account.sign_message(signable)
        return "0x" + bytes(signed.signature).hex()

    @staticmethod
    def _deadline() -> int:
        return int(time.time()) + int(config.SWAP_DEADLINE_SECONDS)

    def _tx_params(self, value_wei: int = 0) -> dict[str, Any]:
        pending_nonce = self._preflight_read("nonce", lambda: self.w3.eth.get_transaction_count(self.address, "pending"))
        latest = self._preflight_read("latest_block", lambda: self.w3.eth.get_block("latest"))
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.w3.to_wei(max(0.0, float(config.MAX_PRIORITY_FEE_GWEI)), "gwei"))
        cap = int(self.w3.to_wei(max(0.0, float(config.MAX_FEE_GWEI)), "gwei"))
        if cap <= 0:
            # Never send with an unbounded fee cap.
            cap = int(self.w3.to_wei(1, "gwei"))

        observed_gas_price = int(self._preflight_read("gas_price", lambda: self.w3.eth.gas_price) or 0)
        if observed_gas_price > cap:
            obs_gwei = float(self.w3.from_wei(observed_gas_price, "gwei"))
            cap_gwei = float(self.w3.from_wei(cap, "gwei"))
            raise TxFailed(f"gas_price_too_high observed_gwei={obs_gwei:.3f} cap_gwei={cap_gwei:.3f}")

        # EIP-1559: max fee stays <= cap but >= observed so the tx isn't underpriced.
        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        if max_fee <= 0:
            max_fee = min(cap, int(self.w3.to_wei(1, "gwei")))

        return {
            "from": self.address,
            "chainId": int(config.CHAIN_ID),
            "nonce": pending_nonce,
            "value": int(value_wei),
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _send_and_wait(self, tx: dict[str, Any]) -> TxReceipt:
        try:
            gas = int(self.w3.eth.estimate_gas(tx))
        except (ContractLogicError, ValueError, OSError, Web3Exception) as exc:
            raise TxFailed(f"gas_estimate_failed: {exc}") from exc
        gas_limit = int(gas * float(config.GAS_LIMIT_MULTIPLIER))
        if gas_limit > int(config.MAX_TX_GAS):
            raise TxFailed(f"gas_estimate_too_high gas={gas_limit} cap={config.MAX_TX_GAS}")
        tx["gas"] = gas_limit

        # Worst case cost must be covered, otherwise the node rejects the tx anyway.
        bal = int(self._preflight_read("get_balance", lambda: self.w3.eth.get_balance(self.address)))
        worst_cost = (gas_limit * int(tx.get("maxFeePerGas") or 0)) + int(tx.get("value") or 0)
        if worst_cost > bal:
            raise TxFailed(
                f"insufficient_balance_for_tx have={format_native(bal)} want={format_native(worst_cost)} "
                f"gas={gas_limit} value_wei={int(tx.get('value') or 0)}"
            )

        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise TxFailed("signed_tx_missing_raw_bytes")
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        except (ValueError, OSError, Web3Exception) as exc:
            raise TxFailed(f"send_failed: {exc}") from exc
        hash_hex = Web3.to_hex(tx_hash)
        logger.info("TX_SENT account=%s hash=%s gas=%s value_wei=%s", self.label, hash_hex, gas_limit, tx.get("value"))

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=int(config.TX_CONFIRM_TIMEOUT_SECONDS))
        except TimeExhausted as exc:
            raise TxFailed(f"tx_timeout hash={hash_hex}", stage="timeout", tx_hash=hash_hex) from exc
        except (OSError, Web3Exception) as exc:
            raise TxFailed(f"tx_receipt_unavailable hash={hash_hex}: {exc}", stage="timeout", tx_hash=hash_hex) from exc
        if int(receipt.status) != 1:
            raise TxFailed(f"tx_reverted hash={hash_hex}", stage="reverted", tx_hash=hash_hex)
        return TxReceipt(tx_hash=hash_hex, block_number=int(receipt.blockNumber), gas_used=int(receipt.gasUsed))
