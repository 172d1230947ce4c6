"""Tests for transaction signing, submission and approvals."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from eth_account import Account

from limit_order_agent.chain.abi import ERC20_APPROVE, MAX_UINT256
from limit_order_agent.chain.client import ReceiptTimeoutError, RPCError
from limit_order_agent.execution.tx_builder import UnsignedTx
from limit_order_agent.execution.tx_executor import TransactionExecutor

TOKEN = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
SPENDER = "0x6f6b8f1a20703309951a5127c45b49b1cd981a22"
TX_HASH = "0x" + "ab" * 32


@pytest.fixture
def account():
    return Account.create()


@pytest.fixture
def mock_client() -> AsyncMock:
    client = AsyncMock()
    client.estimate_gas = AsyncMock(return_value=100_000)
    client.get_transaction_count = AsyncMock(return_value=7)
    client.get_gas_price = AsyncMock(return_value=50 * 10**9)
    client.send_raw_transaction = AsyncMock(return_value=TX_HASH)
    client.wait_for_receipt = AsyncMock(return_value={"status": 1})
    client.get_allowance = AsyncMock(return_value=0)
    client.get_token_balance = AsyncMock(return_value=10**18)
    return client


@pytest.fixture
def executor(mock_client: AsyncMock) -> TransactionExecutor:
    return TransactionExecutor(mock_client, chain_id=143, receipt_timeout_seconds=5.0)


@pytest.fixture
def unsigned_tx() -> UnsignedTx:
    return UnsignedTx(to=SPENDER, data="0x1234", value=10**17, chain_id=143)


class TestExecuteTransaction:
    @pytest.mark.asyncio
    async def test_confirmed_success(self, executor, mock_client, account, unsigned_tx) -> None:
        result = await executor.execute_transaction(account, unsigned_tx)

        assert result.success is True
        assert result.confirmed is True
        assert result.tx_hash == TX_HASH
        mock_client.send_raw_transaction.assert_awaited_once()
        mock_client.wait_for_receipt.assert_awaited_once_with(TX_HASH, timeout=5.0)

    @pytest.mark.asyncio
    async def test_signs_with_agent_key(self, executor, mock_client, account, unsigned_tx) -> None:
        await executor.execute_transaction(account, unsigned_tx)

        raw = mock_client.send_raw_transaction.await_args.args[0]
        decoded = Account.recover_transaction(raw)
        assert decoded == account.address

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_sent_unconfirmed(self, executor, mock_client, account, unsigned_tx) -> None:
        mock_client.wait_for_receipt.side_effect = ReceiptTimeoutError(TX_HASH, 5.0)

        result = await executor.execute_transaction(account, unsigned_tx)

        assert result.success is True
        assert result.confirmed is False
        assert result.tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_reverted_receipt_fails(self, executor, mock_client, account, unsigned_tx) -> None:
        mock_client.wait_for_receipt.return_value = {"status": 0}

        result = await executor.execute_transaction(account, unsigned_tx)

        assert result.success is False
        assert result.error == "Transaction reverted"
        assert result.tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_broadcast_failure_has_no_hash(self, executor, mock_client, account, unsigned_tx) -> None:
        mock_client.send_raw_transaction.side_effect = RPCError("Broadcast failed: nonce too low")

        result = await executor.execute_transaction(account, unsigned_tx)

        assert result.success is False
        assert result.tx_hash is None
        assert "nonce too low" in (result.error or "")
        mock_client.wait_for_receipt.assert_not_called()


class TestPerWalletSerialization:
    @pytest.fixture
    def timeline(self, mock_client: AsyncMock) -> list[str]:
        """Record broadcast and receipt boundaries, holding each receipt open briefly."""
        events: list[str] = []

        async def send(raw: bytes) -> str:
            sender = Account.recover_transaction(raw)
            events.append(f"send:{sender}")
            return TX_HASH

        async def wait(tx_hash: str, *, timeout: float) -> dict:
            events.append("receipt:start")
            await asyncio.sleep(0.01)
            events.append("receipt:end")
            return {"status": 1}

        mock_client.send_raw_transaction.side_effect = send
        mock_client.wait_for_receipt.side_effect = wait
        return events

    @pytest.mark.asyncio
    async def test_same_wallet_transactions_do_not_overlap(
        self, executor, account, unsigned_tx, timeline: list[str]
    ) -> None:
        results = await asyncio.gather(
            executor.execute_transaction(account, unsigned_tx),
            executor.execute_transaction(account, unsigned_tx),
        )

        assert all(r.success for r in results)
        send = f"send:{account.address}"
        assert timeline == [send, "receipt:start", "receipt:end", send, "receipt:start", "receipt:end"]

    @pytest.mark.asyncio
    async def test_different_wallets_run_concurrently(self, executor, account, unsigned_tx, timeline: list[str]) -> None:
        other = Account.create()

        await asyncio.gather(
            executor.execute_transaction(account, unsigned_tx),
            executor.execute_transaction(other, unsigned_tx),
        )

        second_send = max(i for i, e in enumerate(timeline) if e.startswith("send:"))
        first_receipt_end = timeline.index("receipt:end")
        assert second_send < first_receipt_end

    @pytest.mark.asyncio
    async def test_lock_is_keyed_case_insensitively(self, executor) -> None:
        address = "0x" + "aB" * 20
        assert executor._lock_for(address) is executor._lock_for(address.lower())


class TestEnsureApproval:
    @pytest.mark.asyncio
    async def test_sufficient_allowance_skips_approval(self, executor, mock_client, account) -> None:
        mock_client.get_allowance.return_value = 10**18

        result = await executor.ensure_approval(account, TOKEN, SPENDER, 10**18)

        assert result.approved is True
        assert result.tx_hash is None
        mock_client.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_insufficient_allowance_sends_max_approval(self, executor, mock_client, account) -> None:
        result = await executor.ensure_approval(account, TOKEN, SPENDER, 10**18)

        assert result.approved is True
        assert result.tx_hash == TX_HASH
        estimate_call = mock_client.estimate_gas.await_args.args[0]
        assert estimate_call["value"] == 0
        assert estimate_call["to"].lower() == TOKEN
        spender, amount = ERC20_APPROVE.decode_input(bytes.fromhex(estimate_call["data"][2:]))
        assert spender.lower() == SPENDER
        assert amount == MAX_UINT256

    @pytest.mark.asyncio
    async def test_unconfirmed_approval_is_not_approved(self, executor, mock_client, account) -> None:
        mock_client.wait_for_receipt.side_effect = ReceiptTimeoutError(TX_HASH, 5.0)

        result = await executor.ensure_approval(account, TOKEN, SPENDER, 1)

        assert result.approved is False
        assert result.tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_allowance_read_failure(self, executor, mock_client, account) -> None:
        mock_client.get_allowance.side_effect = RPCError("boom")

        result = await executor.ensure_approval(account, TOKEN, SPENDER, 1)

        assert result.approved is False
        assert "Allowance check failed" in (result.error or "")


@pytest.mark.asyncio
async def test_token_balance_read_errors_propagate(executor, mock_client) -> None:
    mock_client.get_token_balance.side_effect = RPCError("unreachable")
    with pytest.raises(RPCError):
        await executor.get_token_balance(TOKEN, SPENDER)
