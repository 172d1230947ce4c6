"""Transaction signing, submission and ERC-20 approvals.

At most one transaction per signer is in flight at any time: signing,
broadcast and the receipt wait all happen under a per-address lock, so
nonces are never handed out twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from limit_order_agent.chain.abi import ERC20_APPROVE, MAX_UINT256, checksum
from limit_order_agent.chain.client import ChainClientError, ReceiptTimeoutError

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from limit_order_agent.chain.client import ChainClient
    from limit_order_agent.execution.tx_builder import UnsignedTx

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT_SECONDS = 60.0
DEFAULT_GAS_LIMIT_MULTIPLIER = 1.2


@dataclass(frozen=True)
class TxResult:
    """Outcome of a swap submission.

    ``success`` with ``confirmed=False`` means the network accepted the
    transaction but no receipt was observed within the timeout: sent,
    unconfirmed.
    """

    tx_hash: str | None
    success: bool
    error: str | None = None
    confirmed: bool = False


@dataclass(frozen=True)
class ApprovalResult:
    approved: bool
    tx_hash: str | None = None
    error: str | None = None


class TransactionExecutor:
    """Signs and submits transactions for agent accounts.

    Args:
        client: Chain client for nonce, gas, broadcast and receipts.
        chain_id: Chain ID embedded in every signature.
        receipt_timeout_seconds: Bound on receipt waits.
        gas_limit_multiplier: Headroom applied to gas estimates.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        chain_id: int,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
        gas_limit_multiplier: float = DEFAULT_GAS_LIMIT_MULTIPLIER,
    ) -> None:
        self._client = client
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout_seconds
        self._gas_multiplier = gas_limit_multiplier
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, address: str) -> asyncio.Lock:
        key = address.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _sign_and_send(self, account: LocalAccount, *, to: str, data: str, value: int) -> str:
        call: dict[str, Any] = {"from": account.address, "to": checksum(to), "data": data, "value": value}
        gas = await self._client.estimate_gas(call)
        nonce = await self._client.get_transaction_count(account.address)
        gas_price = await self._client.get_gas_price()

        tx = {
            "to": call["to"],
            "data": data,
            "value": value,
            "nonce": nonce,
            "gas": int(gas * self._gas_multiplier),
            "gasPrice": gas_price,
            "chainId": self._chain_id,
        }
        signed = account.sign_transaction(tx)
        tx_hash = await self._client.send_raw_transaction(signed.raw_transaction)
        logger.info("Sent tx %s from %s (nonce=%d)", tx_hash, account.address, nonce)
        return tx_hash

    async def execute_transaction(self, account: LocalAccount, tx: UnsignedTx) -> TxResult:
        """Sign, broadcast and await a swap transaction.

        Never raises for chain failures; they are reported in the result.
        """
        async with self._lock_for(account.address):
            try:
                tx_hash = await self._sign_and_send(account, to=tx.to, data=tx.data, value=tx.value)
            except (ChainClientError, ValueError) as e:
                logger.warning("Transaction submission failed for %s: %s", account.address, e)
                return TxResult(tx_hash=None, success=False, error=str(e) or "Transaction failed")

            try:
                receipt = await self._client.wait_for_receipt(tx_hash, timeout=self._receipt_timeout)
            except ChainClientError as e:
                logger.warning("Transaction %s sent but unconfirmed: %s", tx_hash, e)
                return TxResult(tx_hash=tx_hash, success=True, confirmed=False)

        if receipt.get("status") == 1:
            return TxResult(tx_hash=tx_hash, success=True, confirmed=True)
        return TxResult(tx_hash=tx_hash, success=False, error="Transaction reverted", confirmed=True)

    async def ensure_approval(
        self,
        account: LocalAccount,
        token: str,
        spender: str,
        required_amount: int,
    ) -> ApprovalResult:
        """Make sure ``spender`` may move ``required_amount`` of ``token``.

        When the allowance is short, a max-uint256 approval is sent so later
        sells of the same token skip this step. Unlike swaps, an approval
        must be confirmed: a timeout counts as not approved.
        """
        async with self._lock_for(account.address):
            try:
                allowance = await self._client.get_allowance(token, account.address, spender)
            except ChainClientError as e:
                return ApprovalResult(approved=False, error=f"Allowance check failed: {e}")
            if allowance >= required_amount:
                return ApprovalResult(approved=True)

            logger.info("Approving %s to spend %s for %s", spender, token, account.address)
            data = "0x" + ERC20_APPROVE.encode(checksum(spender), MAX_UINT256).hex()
            try:
                tx_hash = await self._sign_and_send(account, to=token, data=data, value=0)
            except (ChainClientError, ValueError) as e:
                return ApprovalResult(approved=False, error=str(e) or "Approval failed")

            try:
                receipt = await self._client.wait_for_receipt(tx_hash, timeout=self._receipt_timeout)
            except ReceiptTimeoutError:
                return ApprovalResult(approved=False, tx_hash=tx_hash, error="Approval not confirmed in time")
            except ChainClientError as e:
                return ApprovalResult(approved=False, tx_hash=tx_hash, error=str(e))

        if receipt.get("status") == 1:
            logger.info("Approval confirmed: %s", tx_hash)
            return ApprovalResult(approved=True, tx_hash=tx_hash)
        return ApprovalResult(approved=False, tx_hash=tx_hash, error="Approval transaction reverted")

    async def get_token_balance(self, token: str, holder: str) -> int:
        """Token balance of ``holder``.

        Raises:
            ChainClientError: If the balance cannot be read. A failed read
                is not treated as a zero balance.
        """
        return await self._client.get_token_balance(token, holder)
