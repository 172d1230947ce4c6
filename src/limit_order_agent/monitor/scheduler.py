"""Monitor scheduler: the polling loop that evaluates and executes orders.

One tick loads every ACTIVE order, snapshots the distinct tokens, and
walks each order through expiry, evaluation and (when triggered) the
execution pipeline:

    balance clamp (SELL) → fresh quote → router → slippage → risk check
    → approval (SELL) → TRIGGERED → sign/broadcast → EXECUTED | FAILED

Orders of different wallets run concurrently; orders of one wallet run
one after another. Every status change, audit entry and peak ratchet is
committed in its own session, so a failure later in the pipeline never
rolls back a transition that already happened.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from limit_order_agent.advisory.models import NO_PROVIDER, PLACEHOLDER_EXPLANATION, Explanation, RiskCheckContext
from limit_order_agent.advisory.prompts import ExplanationContext, build_explanation_prompt
from limit_order_agent.events import EventType, OrderEvent
from limit_order_agent.execution.router_selector import RouterType
from limit_order_agent.execution.slippage import validate_slippage
from limit_order_agent.execution.tx_executor import TxResult
from limit_order_agent.monitor.evaluator import evaluate
from limit_order_agent.monitor.models import Direction, EvalResult, OrderStatus, TokenChainState, TriggerType
from limit_order_agent.pricing import current_price, format_ether, format_progress, scale_amount
from limit_order_agent.storage.repos import (
    ExecutionLogDTO,
    ExecutionLogRepository,
    LogAction,
    OrderDTO,
    OrderRepository,
)

if TYPE_CHECKING:
    from limit_order_agent.advisory.fallback import ProviderChain
    from limit_order_agent.advisory.risk_check import RiskChecker
    from limit_order_agent.custody.wallets import AgentSigner, SignerResolver
    from limit_order_agent.events import EventBus
    from limit_order_agent.execution.router_selector import RouterSelector
    from limit_order_agent.execution.tx_builder import TransactionBuilder, UnsignedTx
    from limit_order_agent.execution.tx_executor import TransactionExecutor
    from limit_order_agent.monitor.quote_fetcher import QuoteFetcher
    from limit_order_agent.monitor.state_fetcher import StateFetcher
    from limit_order_agent.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_RISK_CHECK_TIMEOUT_SECONDS = 10.0
DEFAULT_EXPLANATION_TIMEOUT_SECONDS = 15.0

REASON_EXPIRED = "Order expired"
REASON_ZERO_BALANCE = "Agent wallet has 0 token balance, nothing to sell"
REASON_ZERO_QUOTE = "Fresh quote returned 0 amountOut, token state may be invalid"
REASON_NOTIFY_ONLY = "No agent signer available, manual execution required"
REASON_TX_FAILED = "Transaction execution failed"
UNCONFIRMED_PREFIX = "sent, unconfirmed"


class SchedulerState(str, Enum):
    """Scheduler lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Counters for the monitor loop."""

    started_at: datetime | None = None
    ticks: int = 0
    ticks_skipped: int = 0
    orders_evaluated: int = 0
    orders_triggered: int = 0
    orders_executed: int = 0
    orders_failed: int = 0
    orders_expired: int = 0
    orders_aborted: int = 0
    errors: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None


def _ether(wei: int) -> str:
    return f"{format_ether(wei):f}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MonitorScheduler:
    """Polls active orders and drives them through execution.

    Args:
        db: Database manager; each side effect gets its own session.
        state_fetcher: Batched per-token snapshots.
        quote_fetcher: Execution-time quotes at the real trade size.
        router_selector: Classifies the quoted router.
        tx_builder: Encodes the swap.
        executor: Signs, approves and submits.
        signers: Resolves an owner wallet to its agent signer. ``None``
            means notify-only for that wallet.
        events: Event bus for order lifecycle events.
        advisory: Optional provider chain for execution explanations.
        risk_checker: Optional pre-execution risk check, used only for
            accounts that opted in.
        interval_seconds: Tick interval.
        risk_check_timeout_seconds: Bound on the risk check; a timeout
            lets execution proceed.
        clock: Source of "now" (UTC).

    Example:
        ```python
        scheduler = MonitorScheduler(db, state_fetcher, quote_fetcher, ...)
        async with scheduler:
            await asyncio.sleep(60)
        print(scheduler.stats.orders_executed)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        state_fetcher: StateFetcher,
        quote_fetcher: QuoteFetcher,
        router_selector: RouterSelector,
        tx_builder: TransactionBuilder,
        executor: TransactionExecutor,
        signers: SignerResolver,
        events: EventBus,
        *,
        advisory: ProviderChain | None = None,
        risk_checker: RiskChecker | None = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        risk_check_timeout_seconds: float = DEFAULT_RISK_CHECK_TIMEOUT_SECONDS,
        explanation_timeout_seconds: float = DEFAULT_EXPLANATION_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._state_fetcher = state_fetcher
        self._quote_fetcher = quote_fetcher
        self._router_selector = router_selector
        self._tx_builder = tx_builder
        self._executor = executor
        self._signers = signers
        self._events = events
        self._advisory = advisory
        self._risk_checker = risk_checker
        self._interval = interval_seconds
        self._risk_timeout = risk_check_timeout_seconds
        self._explanation_timeout = explanation_timeout_seconds
        self._clock = clock

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()
        self._ticking = False

        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[bool] | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the polling loop.

        Raises:
            RuntimeError: If the scheduler is not stopped.
        """
        if self._state != SchedulerState.STOPPED:
            raise RuntimeError(f"Cannot start scheduler in state {self._state}")

        self._state = SchedulerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting monitor loop (interval: %.1fs)", self._interval)
        self._stats.started_at = datetime.now(UTC)
        self._loop_task = asyncio.create_task(self._run_loop())
        self._state = SchedulerState.RUNNING

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight tick to finish.

        An in-flight tick is awaited rather than cancelled: it may be
        between broadcasting a transaction and recording its outcome.
        """
        if self._state == SchedulerState.STOPPED:
            return

        self._state = SchedulerState.STOPPING
        logger.info("Stopping monitor loop...")
        if self._stop_event:
            self._stop_event.set()

        if self._loop_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if self._tick_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None

        self._state = SchedulerState.STOPPED
        logger.info("Monitor loop stopped")

    async def run(self) -> None:
        """Start and block until :meth:`stop` is called or the task is cancelled."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> MonitorScheduler:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def _run_loop(self) -> None:
        if not self._stop_event:
            return

        while not self._stop_event.is_set():
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self.tick())
            else:
                self._stats.ticks_skipped += 1
                logger.debug("Previous tick still running, skipping")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Run one polling pass.

        Returns:
            False if another tick was already running and this one was
            skipped, True otherwise.
        """
        if self._ticking:
            self._stats.ticks_skipped += 1
            return False

        self._ticking = True
        try:
            await self._process_active_orders()
            self._stats.ticks += 1
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception("Monitor tick failed")
        finally:
            self._stats.last_tick_at = datetime.now(UTC)
            self._ticking = False
        return True

    async def _process_active_orders(self) -> None:
        async with self._db.get_async_session() as session:
            orders = await OrderRepository(session).list_active()
        if not orders:
            return

        states = await self._state_fetcher.fetch_batch_token_states(o.token_address for o in orders)

        by_wallet: dict[str, list[OrderDTO]] = {}
        for order in orders:
            by_wallet.setdefault(order.wallet_address.lower(), []).append(order)

        await asyncio.gather(
            *(self._process_wallet_orders(wallet_orders, states) for wallet_orders in by_wallet.values())
        )

    async def _process_wallet_orders(self, orders: list[OrderDTO], states: dict[str, TokenChainState]) -> None:
        for order in orders:
            try:
                await self.process_order(order, states.get(order.token_address.lower()))
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = f"Order {order.id}: {e}"
                logger.exception("Error processing order %s", order.id)

    async def process_order(self, order: OrderDTO, state: TokenChainState | None) -> None:
        """Advance one ACTIVE order by one step.

        Raises:
            Exception: Anything unexpected; the tick isolates it per order.
        """
        now = self._clock()

        if now >= order.expires_at:
            await self._expire(order)
            return

        if state is None:
            logger.warning("No state for token %s, skipping order %s", order.token_address, order.id)
            return

        result = evaluate(order, state, now=now)
        self._stats.orders_evaluated += 1

        if result.abort:
            reason = result.abort_reason or result.reason
            await self._append_log(self._snapshot_entry(order, LogAction.ABORT, state, reason=reason))
            await self._emit(EventType.ABORTED, order, reason=reason)
            self._stats.orders_aborted += 1
            logger.info("Order %s aborted this cycle: %s", order.id, reason)
            return

        if not result.triggered:
            logger.debug("Order %s: %s", order.id, result.reason)
            await self._maybe_ratchet_peak(order, state)
            return

        logger.info("Order %s triggered: %s", order.id, result.reason)
        await self._execute(order, state, result, now)

    async def _expire(self, order: OrderDTO) -> None:
        await self._transition(order.id, OrderStatus.EXPIRED)
        await self._append_log(ExecutionLogDTO(order_id=order.id, action=LogAction.EXPIRE, reason=REASON_EXPIRED))
        await self._emit(EventType.EXPIRED, order)
        self._stats.orders_expired += 1

    async def _maybe_ratchet_peak(self, order: OrderDTO, state: TokenChainState) -> None:
        if order.trigger_type != TriggerType.TRAILING_STOP.value or state.looks_unavailable:
            return
        price = current_price(order.direction, state)
        if price <= 0 or (order.peak_price is not None and price <= order.peak_price):
            return
        async with self._db.get_async_session() as session:
            updated = await OrderRepository(session).ratchet_peak_price(order.id, price)
        if updated:
            logger.debug("Order %s peak price raised to %d", order.id, price)

    # ------------------------------------------------------------------
    # Execution pipeline
    # ------------------------------------------------------------------

    async def _execute(self, order: OrderDTO, state: TokenChainState, result: EvalResult, now: datetime) -> None:
        is_buy = order.direction == Direction.BUY
        price = current_price(order.direction, state)
        signer = await self._signers.resolve(order.wallet_address)

        input_amount = order.input_amount
        if not is_buy and signer is not None:
            balance = await self._executor.get_token_balance(order.token_address, signer.agent_address)
            if balance == 0:
                await self._fail(order, REASON_ZERO_BALANCE, log_action=LogAction.ABORT)
                return
            if balance < input_amount:
                logger.info(
                    "Order %s: balance %d < order amount %d, selling available balance",
                    order.id,
                    balance,
                    input_amount,
                )
                input_amount = balance

        quote = await self._quote_fetcher.fetch_fresh_quote(order.token_address, input_amount, is_buy=is_buy)
        if quote.amount_out == 0:
            await self._append_log(
                self._snapshot_entry(
                    order, LogAction.ABORT, state, reason=REASON_ZERO_QUOTE, router_address=quote.router
                )
            )
            await self._emit(EventType.ABORTED, order, reason=REASON_ZERO_QUOTE)
            self._stats.orders_aborted += 1
            logger.warning("Order %s: %s", order.id, REASON_ZERO_QUOTE)
            return

        selection = self._router_selector.select(quote.router)

        unit_out = state.buy_amount_out if is_buy else state.sell_amount_out
        expected = scale_amount(unit_out, input_amount) if unit_out > 0 else quote.amount_out
        slippage = validate_slippage(expected, quote.amount_out, order.max_slippage_bps)
        if not slippage.acceptable:
            reason = (
                f"Slippage too high: {slippage.actual_slippage_bps / 100:g}% > "
                f"max {order.max_slippage_bps / 100:g}%"
            )
            await self._append_log(
                self._snapshot_entry(order, LogAction.ABORT, state, reason=reason, router_address=quote.router)
            )
            logger.info("Order %s: %s, retrying next tick", order.id, reason)
            return

        if signer is not None and await self._risk_check_blocks(
            order, state, signer, input_amount, quote.amount_out, price
        ):
            return

        recipient = signer.agent_address if signer is not None else order.wallet_address
        unsigned = self._tx_builder.build_unsigned_tx(
            order.direction,
            selection.type,
            input_amount,
            slippage.amount_out_min,
            order.token_address,
            recipient,
        )
        explain_ctx = ExplanationContext(
            token_address=order.token_address,
            token_name=state.name,
            token_symbol=state.symbol,
            direction=order.direction.value,
            trigger_type=order.trigger_type,
            trigger_value=order.trigger_value,
            current_price=_ether(price),
            current_progress=format_progress(state.progress),
            is_graduated=state.is_graduated,
            is_locked=state.is_locked,
            router_used="DexRouter" if selection.type == RouterType.DEX else "BondingCurveRouter",
            slippage_bps=order.max_slippage_bps,
            input_amount=_ether(input_amount),
            estimated_output=_ether(quote.amount_out),
        )

        if signer is None:
            await self._notify_only(order, state, selection.type, unsigned, explain_ctx, price)
            return

        if not is_buy:
            approval = await self._executor.ensure_approval(
                signer.account,
                order.token_address,
                self._tx_builder.router_address(selection.type),
                input_amount,
            )
            if not approval.approved:
                await self._fail(order, f"Token approval failed: {approval.error}", log_action=LogAction.ABORT)
                return

        await self._transition(order.id, OrderStatus.TRIGGERED, router_used=selection.type.value)
        self._stats.orders_triggered += 1
        await self._append_log(
            self._snapshot_entry(
                order,
                LogAction.TRIGGER,
                state,
                price=price,
                reason=result.reason,
                router_address=unsigned.to,
                unsigned_tx=unsigned,
            )
        )
        await self._emit(
            EventType.TRIGGERED,
            order,
            token_address=order.token_address,
            direction=order.direction.value,
            reason=result.reason,
        )
        logger.info("Executing order %s for %s (%s)...", order.id, state.symbol, order.direction.value)

        # From here on the order is TRIGGERED and list_active no longer sees
        # it, so every exit must leave it EXECUTED, re-armed or FAILED.
        try:
            tx_result = await self._executor.execute_transaction(signer.account, unsigned)
        except Exception as e:
            logger.exception("Order %s: transaction submission raised", order.id)
            tx_result = TxResult(tx_hash=None, success=False, error=f"{REASON_TX_FAILED}: {e}")
        explanation = await self._explain(explain_ctx)

        if not tx_result.success:
            await self._record_tx_failure(
                order, state, price, unsigned, tx_result.error or REASON_TX_FAILED, tx_result.tx_hash, explanation
            )
            return

        recurring = order.trigger_type == TriggerType.DCA_INTERVAL.value
        try:
            if recurring:
                await self._transition(
                    order.id,
                    OrderStatus.ACTIVE,
                    tx_hash=tx_result.tx_hash,
                    last_executed_at=now,
                )
            else:
                await self._transition(order.id, OrderStatus.EXECUTED, tx_hash=tx_result.tx_hash)
        except Exception as e:
            await self._record_tx_failure(
                order,
                state,
                price,
                unsigned,
                f"Sent as {tx_result.tx_hash} but recording the outcome failed: {e}",
                tx_result.tx_hash,
                explanation,
            )
            raise

        reason = result.reason if tx_result.confirmed else f"{UNCONFIRMED_PREFIX}: {result.reason}"
        await self._append_log(
            self._snapshot_entry(
                order,
                LogAction.TX_CONFIRMED,
                state,
                price=price,
                reason=reason,
                router_address=unsigned.to,
                unsigned_tx=unsigned,
                tx_hash=tx_result.tx_hash,
                explanation=explanation,
            )
        )
        await self._emit(
            EventType.EXECUTED,
            order,
            tx_hash=tx_result.tx_hash,
            token_address=order.token_address,
            direction=order.direction.value,
            confirmed=tx_result.confirmed,
            recurring=recurring,
        )
        self._stats.orders_executed += 1
        if recurring:
            logger.info("Order %s executed (tx %s), re-armed for next DCA interval", order.id, tx_result.tx_hash)
        else:
            logger.info("Order %s EXECUTED: tx %s", order.id, tx_result.tx_hash)

    async def _notify_only(
        self,
        order: OrderDTO,
        state: TokenChainState,
        router_type: RouterType,
        unsigned: UnsignedTx,
        explain_ctx: ExplanationContext,
        price: int,
    ) -> None:
        await self._transition(order.id, OrderStatus.TRIGGERED, router_used=router_type.value)
        self._stats.orders_triggered += 1
        explanation = await self._explain(explain_ctx)
        await self._append_log(
            self._snapshot_entry(
                order,
                LogAction.TRIGGER,
                state,
                price=price,
                reason=REASON_NOTIFY_ONLY,
                router_address=unsigned.to,
                unsigned_tx=unsigned,
                explanation=explanation,
            )
        )
        await self._emit(
            EventType.TRIGGERED,
            order,
            token_address=order.token_address,
            direction=order.direction.value,
            unsigned_tx=unsigned.to_dict(),
            reason=REASON_NOTIFY_ONLY,
            ai_explanation=explanation.text,
        )
        logger.info("Order %s TRIGGERED (notify-only)", order.id)

    async def _record_tx_failure(
        self,
        order: OrderDTO,
        state: TokenChainState,
        price: int,
        unsigned: UnsignedTx,
        reason: str,
        tx_hash: str | None,
        explanation: Explanation,
    ) -> None:
        await self._transition(order.id, OrderStatus.FAILED, tx_hash=tx_hash)
        await self._append_log(
            self._snapshot_entry(
                order,
                LogAction.TX_FAILED,
                state,
                price=price,
                reason=reason,
                router_address=unsigned.to,
                unsigned_tx=unsigned,
                tx_hash=tx_hash,
                explanation=explanation,
            )
        )
        await self._emit(EventType.FAILED, order, reason=reason, tx_hash=tx_hash)
        self._stats.orders_failed += 1
        logger.warning("Order %s FAILED: %s", order.id, reason)

    async def _fail(self, order: OrderDTO, reason: str, *, log_action: LogAction) -> None:
        await self._transition(order.id, OrderStatus.FAILED)
        await self._append_log(ExecutionLogDTO(order_id=order.id, action=log_action, reason=reason))
        await self._emit(EventType.FAILED, order, reason=reason)
        self._stats.orders_failed += 1
        logger.warning("Order %s FAILED: %s", order.id, reason)

    async def _risk_check_blocks(
        self,
        order: OrderDTO,
        state: TokenChainState,
        signer: AgentSigner,
        input_amount: int,
        amount_out: int,
        price: int,
    ) -> bool:
        if not signer.risk_check_enabled or self._risk_checker is None or not self._risk_checker.enabled:
            return False

        market = state.market
        context = RiskCheckContext(
            token_symbol=state.symbol,
            token_name=state.name,
            direction=order.direction.value,
            trigger_type=order.trigger_type,
            input_amount=_ether(input_amount),
            estimated_output=_ether(amount_out),
            current_price=_ether(price),
            slippage_bps=order.max_slippage_bps,
            is_graduated=state.is_graduated,
            progress=format_progress(state.progress),
            volume=f"{market.volume:f}" if market is not None and market.volume is not None else None,
            holder_count=market.holder_count if market is not None else None,
        )
        try:
            risk = await asyncio.wait_for(self._risk_checker.check(context), timeout=self._risk_timeout)
        except Exception as e:
            logger.warning("Order %s: risk check failed, proceeding: %s", order.id, str(e) or type(e).__name__)
            return False

        if not self._risk_checker.should_block(risk):
            logger.info("Order %s: risk check passed (%s)", order.id, risk.provider)
            return False

        reason = f"AI risk check blocked execution (confidence: {risk.confidence * 100:.0f}%): {risk.reasoning}"
        entry = self._snapshot_entry(order, LogAction.ABORT, state, price=price, reason=reason)
        entry.ai_provider = risk.provider
        await self._append_log(entry)
        await self._emit(EventType.ABORTED, order, reason=reason)
        self._stats.orders_aborted += 1
        logger.info("Order %s: %s", order.id, reason)
        return True

    async def _explain(self, ctx: ExplanationContext) -> Explanation:
        placeholder = Explanation(text=PLACEHOLDER_EXPLANATION, provider=NO_PROVIDER)
        if self._advisory is None or not self._advisory.enabled:
            return placeholder
        try:
            return await asyncio.wait_for(
                self._advisory.explain(build_explanation_prompt(ctx)),
                timeout=self._explanation_timeout,
            )
        except Exception as e:
            logger.warning("AI explanation failed: %s", str(e) or type(e).__name__)
            return placeholder

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _transition(self, order_id: str, target: OrderStatus, **kwargs: Any) -> OrderDTO:
        async with self._db.get_async_session() as session:
            return await OrderRepository(session).transition(order_id, target, **kwargs)

    async def _append_log(self, entry: ExecutionLogDTO) -> None:
        async with self._db.get_async_session() as session:
            await ExecutionLogRepository(session).append(entry)

    def _snapshot_entry(
        self,
        order: OrderDTO,
        action: LogAction,
        state: TokenChainState,
        *,
        reason: str,
        price: int | None = None,
        router_address: str | None = None,
        unsigned_tx: UnsignedTx | None = None,
        tx_hash: str | None = None,
        explanation: Explanation | None = None,
    ) -> ExecutionLogDTO:
        return ExecutionLogDTO(
            order_id=order.id,
            action=action,
            current_price=price if price is not None else current_price(order.direction, state),
            current_progress=state.progress,
            is_graduated=state.is_graduated,
            is_locked=state.is_locked,
            router_address=router_address,
            unsigned_tx=unsigned_tx.to_dict() if unsigned_tx is not None else None,
            tx_hash=tx_hash,
            ai_explanation=explanation.text if explanation is not None else None,
            ai_provider=explanation.provider if explanation is not None else None,
            reason=reason,
        )

    async def _emit(self, event_type: EventType, order: OrderDTO, **payload: Any) -> None:
        await self._events.publish(
            OrderEvent(type=event_type, order_id=order.id, wallet_address=order.wallet_address, payload=payload)
        )
