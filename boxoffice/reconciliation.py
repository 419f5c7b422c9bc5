"""
Payment verification and settlement.

Order state machine: PENDING -> AWAITING_PAYMENT -> COMPLETED | CANCELLED.
Only a provider-confirmed verification moves an order to COMPLETED; it does
so inside one transaction that

  1. inserts the ``settlements`` row (the exactly-once gate),
  2. conditionally decrements ``ticket_types.available``,
  3. issues one ticket per unit,
  4. marks order and payment completed.

A replayed verification loses the gate insert and changes nothing. A payment
confirmed for an order that was cancelled meanwhile rolls the transaction
back and is flagged ``refund_due`` instead.

Settlement and its follow-ups (saved method, confirmation) run in tasks the
reconciler owns, so a caller's timeout never cuts them short. The
confirmation is at-least-once: ``settlements.notified_at`` stays NULL until a
sink accepts it, and replays or ``notify_unconfirmed`` send it again.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Dict, Mapping, Optional, Sequence, Set, TypeVar

from loguru import logger
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .errors import (
    CheckoutError, ConfigurationError, PaymentProviderError,
    ReconciliationError,
)
from .helpers import mask_email, new_ticket_code, now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .methods import SavedMethodStore, method_label
from .model.db import (
    AWAITING_PAYMENT, CANCELLED, COMPLETED, PENDING as ORDER_PENDING,
    P_CANCELLED, P_COMPLETED, P_FAILED, P_INITIATED, P_PENDING, P_REFUND_DUE,
    TERMINAL_ORDER_STATES, TERMINAL_PAYMENT_STATES, Order, Payment,
    Settlement, Ticket,
)
from .notifications import (
    LogNotificationSink, NotificationSink, OrderConfirmation, emit_safely,
)
from .payments import PaymentGateway, ProviderStatus
from .payments.base import CANCELED, FAILED, PENDING, SUCCEEDED


# ----------------------------
# Acceptance policy
# ----------------------------
@dataclass(frozen=True)
class PaymentAcceptancePolicy:
    """Which provider outcomes settle an order. Only the sandbox policy
    accepts ``pending``; it is refused in production."""
    name: str
    accept_pending: bool = False

    def accepts(self, status: str) -> bool:
        if status == SUCCEEDED:
            return True
        if status == PENDING and self.accept_pending:
            logger.warning("LENIENT ACCEPTANCE [{}]: pending payment "
                           "treated as completed", self.name)
            return True
        return False


STRICT = PaymentAcceptancePolicy("strict")
SANDBOX = PaymentAcceptancePolicy("sandbox", accept_pending=True)


def policy_for(settings: Settings) -> PaymentAcceptancePolicy:
    if not settings.accept_pending_payments:
        return STRICT
    if settings.is_production:
        raise ConfigurationError(
            "ACCEPT_PENDING_PAYMENTS must not be enabled in production"
        )
    return SANDBOX


# ----------------------------
# Results
# ----------------------------
@dataclass
class VerificationResult:
    success: bool
    status: str  # completed | pending | failed | cancelled | unverified
    payment_id: Optional[str]
    order_id: Optional[str]
    message: str
    clear_cart_event_id: Optional[str] = None
    optimistic: bool = False

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "message": self.message,
            "clear_cart_event_id": self.clear_cart_event_id,
            "optimistic": self.optimistic,
        }


def _completed(payment: Payment) -> VerificationResult:
    return VerificationResult(
        success=True,
        status="completed",
        payment_id=payment.id,
        order_id=payment.order_id,
        message="payment verified",
        clear_cart_event_id=payment.event_id,
    )


def _refund_due(payment: Payment) -> VerificationResult:
    return VerificationResult(
        success=False,
        status="cancelled",
        payment_id=payment.id,
        order_id=payment.order_id,
        message="order already cancelled, payment flagged for refund",
    )


class _OrderClosed(Exception):
    """Raised inside the settlement transaction to roll it back."""

    def __init__(self, order_status: str) -> None:
        super().__init__(order_status)
        self.order_status = order_status


T = TypeVar("T")


# ----------------------------
# SQL (hot path)
# ----------------------------
SQL_SETTLE_GATE = """
    INSERT INTO settlements(order_id, payment_id, settled_at)
    VALUES(:order_id, :payment_id, :ts)
    ON CONFLICT DO NOTHING
    RETURNING order_id
"""

# atomic and conditional: never a read-modify-write
SQL_DECREMENT = """
    UPDATE ticket_types
    SET available = available - :q,
        status = CASE WHEN available - :q = 0 THEN 'SOLD_OUT' ELSE status END
    WHERE id = :id AND available >= :q
"""


class PaymentReconciler:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, gateway: PaymentGateway,
                 policy: PaymentAcceptancePolicy = STRICT, *,
                 notifier: Optional[NotificationSink] = None,
                 methods: Optional[SavedMethodStore] = None,
                 timeout_seconds: float = 5.0, attempts: int = 4,
                 backoff_seconds: Sequence[float] = (0.5, 1.0, 2.0)) -> None:
        self.sessions = sessions
        self.gated = gated
        self.gateway = gateway
        self.policy = policy
        self.notifier = notifier or LogNotificationSink()
        self.methods = methods or SavedMethodStore(sessions, gated)
        self.timeout_seconds = timeout_seconds
        self.attempts = max(1, attempts)
        self.backoff_seconds = tuple(backoff_seconds) or (1.0,)
        self._tasks: Set[asyncio.Task] = set()
        # order_id -> task currently delivering its confirmation
        self._notifying: Dict[str, asyncio.Task] = {}

    async def verify_payment(
        self, token: str, order_id: Optional[str] = None,
        save_method: bool = False,
        payment_details: Optional[Mapping] = None,
    ) -> VerificationResult:
        async with self.sessions() as db:
            payment = await self.gateway.resolve(db, token)
        if order_id and payment.order_id and order_id != payment.order_id:
            raise ReconciliationError(
                f"payment {payment.id} does not belong to order {order_id}"
            )
        if payment.order_id is None:
            raise ReconciliationError(f"payment {payment.id} has no order")

        if payment.status == P_COMPLETED:
            await self._owned(self._ensure_notified(payment.order_id))
            return _completed(payment)
        if payment.status == P_REFUND_DUE:
            return _refund_due(payment)
        if payment.status in (P_FAILED, P_CANCELLED):
            return VerificationResult(
                success=False, status=payment.status,
                payment_id=payment.id, order_id=payment.order_id,
                message=payment.error_message or f"payment {payment.status}",
            )

        status = await self.gateway.verify(payment)

        if self.policy.accepts(status.status):
            return await self._owned(self._settle_and_follow_up(
                payment, status, save_method, payment_details or {}
            ))

        if status.status in (FAILED, CANCELED):
            await self._fail(payment, status)
            final = P_FAILED if status.status == FAILED else P_CANCELLED
            return VerificationResult(
                success=False, status=final, payment_id=payment.id,
                order_id=payment.order_id,
                message=status.message or f"payment {final}",
            )

        return VerificationResult(
            success=False, status="pending", payment_id=payment.id,
            order_id=payment.order_id,
            message=status.message or "payment not completed yet",
        )

    async def verify_with_retry(
        self, token: str, order_id: Optional[str] = None,
        save_method: bool = False,
        payment_details: Optional[Mapping] = None,
    ) -> VerificationResult:
        """Bounded retries with backoff. When they run out and the caller
        holds an order id, answer optimistically; the order itself is left
        to background reconciliation."""
        last: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.verify_payment(token, order_id, save_method,
                                        payment_details),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                last = e
            except PaymentProviderError as e:
                if not e.transient:
                    raise
                last = e
            if attempt < self.attempts:
                delay = self.backoff_seconds[
                    min(attempt - 1, len(self.backoff_seconds) - 1)
                ]
                logger.info("verify {}: attempt {} failed ({}), retry in "
                            "{}s", token, attempt, last or "timeout", delay)
                await asyncio.sleep(delay)

        logger.warning("verify {}: unresolved after {} attempts ({})",
                       token, self.attempts, last or "timeout")
        if order_id:
            return VerificationResult(
                success=False, status="unverified", payment_id=None,
                order_id=order_id,
                message="verification still running, check your tickets",
                optimistic=True,
            )
        raise ReconciliationError("payment verification failed")

    # ----------------------------
    # owned tasks
    # ----------------------------
    async def _owned(self, work: Awaitable[T]) -> T:
        task = asyncio.ensure_future(work)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("settlement task failed: {}", task.exception())

    def _claim(self, order_id: str) -> None:
        task = asyncio.current_task()
        self._notifying[order_id] = task
        task.add_done_callback(lambda t: self._release(order_id, t))

    def _release(self, order_id: str, task: asyncio.Task) -> None:
        if self._notifying.get(order_id) is task:
            del self._notifying[order_id]

    async def drain(self, timeout: float) -> None:
        """Wait for settlements and confirmations still in flight."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)

    # ----------------------------
    # settlement
    # ----------------------------
    async def _settle_and_follow_up(
        self, payment: Payment, status: ProviderStatus, save_method: bool,
        payment_details: Mapping,
    ) -> VerificationResult:
        try:
            confirmation = await self._settle(payment, status)
        except _OrderClosed as e:
            await self._flag_refund(payment, status, e.order_status)
            return _refund_due(payment)
        if confirmation is None:
            await self._ensure_notified(payment.order_id)
        else:
            await self._after_settlement(payment, status, confirmation,
                                         save_method, payment_details)
        return _completed(payment)

    async def _settle(self, payment: Payment,
                      status: ProviderStatus) -> Optional[OrderConfirmation]:
        ts = now_ts()
        async with timeit("reconcile.settle"):
            async with self.sessions() as db:
                async with self.gated():
                    async with db.begin():
                        gate = (await db.execute(text(SQL_SETTLE_GATE), {
                            "order_id": payment.order_id,
                            "payment_id": payment.id,
                            "ts": ts,
                        })).first()
                        if gate is None:
                            logger.info("order {} already settled",
                                        payment.order_id)
                            return None
                        # replays wait on this task instead of re-sending
                        self._claim(payment.order_id)

                        order = await db.get(Order, payment.order_id)
                        if order is None:
                            raise ReconciliationError(
                                f"order {payment.order_id} missing"
                            )
                        closing = await db.execute(
                            update(Order)
                            .where(Order.id == order.id,
                                   Order.status.notin_(TERMINAL_ORDER_STATES))
                            .values(status=COMPLETED, completed_at=ts,
                                    updated_at=ts)
                        )
                        if closing.rowcount != 1:
                            raise _OrderClosed(order.status)

                        shortfall = {}
                        codes = []
                        for tt_id, qty in order.ticket_quantities.items():
                            res = await db.execute(text(SQL_DECREMENT),
                                                   {"id": tt_id, "q": qty})
                            if res.rowcount != 1:
                                shortfall[tt_id] = qty
                            for _ in range(qty):
                                code = new_ticket_code()
                                codes.append(code)
                                db.add(Ticket(
                                    code=code, order_id=order.id,
                                    event_id=order.event_id,
                                    ticket_type_id=tt_id,
                                    user_id=order.user_id, issued_at=ts,
                                ))
                        if shortfall:
                            logger.error("OVERSOLD: order {} paid but stock "
                                         "short {}; review capacity",
                                         order.id, shortfall)
                            await db.execute(
                                update(Settlement)
                                .where(Settlement.order_id == order.id)
                                .values(shortfall=shortfall)
                            )

                        await db.execute(
                            update(Payment)
                            .where(Payment.id == payment.id)
                            .values(
                                status=P_COMPLETED, completed_at=ts,
                                updated_at=ts,
                                provider_payment_id=(
                                    status.provider_payment_id
                                    or payment.provider_payment_id
                                ),
                            )
                        )
                        confirmation = OrderConfirmation(
                            order_id=order.id,
                            event_id=order.event_id,
                            total=order.total,
                            currency=order.currency,
                            ticket_codes=codes,
                            user_id=order.user_id,
                            email=payment.customer_email,
                        )
        logger.info("order {} completed ({} tickets)", payment.order_id,
                    len(confirmation.ticket_codes))
        return confirmation

    async def _after_settlement(self, payment: Payment,
                                status: ProviderStatus,
                                confirmation: OrderConfirmation,
                                save_method: bool,
                                payment_details: Mapping) -> None:
        if save_method and payment.user_id:
            label = method_label(payment.method, status.details,
                                 payment_details)
            if label is None:
                logger.info("payment {}: nothing safe to remember",
                            payment.id)
            else:
                try:
                    await self.methods.remember(payment.user_id, *label)
                except SQLAlchemyError as e:
                    logger.warning("payment {}: saving method failed: {}",
                                   payment.id, e)
        await self._notify(confirmation)

    async def _flag_refund(self, payment: Payment, status: ProviderStatus,
                           order_status: str) -> None:
        ts = now_ts()
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    await db.execute(
                        update(Payment)
                        .where(Payment.id == payment.id,
                               Payment.status.notin_(TERMINAL_PAYMENT_STATES))
                        .values(
                            status=P_REFUND_DUE, updated_at=ts,
                            error_message=f"order {order_status.lower()}, "
                                          "refund required",
                            provider_payment_id=(
                                status.provider_payment_id
                                or payment.provider_payment_id
                            ),
                        )
                    )
        logger.error("REFUND DUE: payment {} confirmed but order {} is {}",
                     payment.id, payment.order_id, order_status)

    # ----------------------------
    # confirmations
    # ----------------------------
    async def _notify(self, confirmation: OrderConfirmation) -> bool:
        if not await emit_safely(self.notifier, confirmation):
            return False
        async with self.sessions() as db:
            async with self.gated():
                await db.execute(
                    update(Settlement)
                    .where(Settlement.order_id == confirmation.order_id,
                           Settlement.notified_at.is_(None))
                    .values(notified_at=now_ts())
                )
                await db.commit()
        return True

    async def _ensure_notified(self, order_id: str) -> bool:
        """Send the confirmation of a settled order unless it went out
        already or another task is sending it."""
        inflight = self._notifying.get(order_id)
        if inflight is not None and inflight is not asyncio.current_task():
            await asyncio.wait({inflight})
            return False
        async with self.sessions() as db:
            async with self.gated():
                settlement = await db.get(Settlement, order_id)
                if settlement is None or settlement.notified_at is not None:
                    return False
                confirmation = await self._load_confirmation(db, settlement)
        inflight = self._notifying.get(order_id)
        if inflight is not None and inflight is not asyncio.current_task():
            await asyncio.wait({inflight})
            return False
        self._claim(order_id)
        logger.info("order {}: re-sending confirmation", order_id)
        return await self._notify(confirmation)

    async def _load_confirmation(self, db: AsyncSession,
                                 settlement: Settlement) -> OrderConfirmation:
        order = await db.get(Order, settlement.order_id)
        payment = await db.get(Payment, settlement.payment_id)
        codes = (await db.execute(
            select(Ticket.code)
            .where(Ticket.order_id == settlement.order_id)
            .order_by(Ticket.code)
        )).scalars().all()
        return OrderConfirmation(
            order_id=order.id,
            event_id=order.event_id,
            total=order.total,
            currency=order.currency,
            ticket_codes=list(codes),
            user_id=order.user_id,
            email=payment.customer_email if payment is not None else None,
        )

    async def notify_unconfirmed(self, older_than_seconds: float = 0,
                                 limit: int = 100) -> int:
        """Re-send confirmations no sink has accepted yet; returns how many
        went out."""
        cutoff = now_ts() - older_than_seconds
        async with self.sessions() as db:
            async with self.gated():
                order_ids = (await db.execute(
                    select(Settlement.order_id)
                    .where(Settlement.notified_at.is_(None),
                           Settlement.settled_at <= cutoff)
                    .order_by(Settlement.settled_at)
                    .limit(limit)
                )).scalars().all()
        delivered = 0
        for order_id in order_ids:
            if await self._owned(self._ensure_notified(order_id)):
                delivered += 1
        if order_ids:
            logger.info("confirmation sweep: {} of {} delivered", delivered,
                        len(order_ids))
        return delivered

    async def _fail(self, payment: Payment, status: ProviderStatus) -> None:
        final = P_FAILED if status.status == FAILED else P_CANCELLED
        ts = now_ts()
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    await db.execute(
                        update(Payment)
                        .where(Payment.id == payment.id,
                               Payment.status != P_COMPLETED)
                        .values(status=final, updated_at=ts,
                                error_message=status.message or final)
                    )
                    await db.execute(
                        update(Order)
                        .where(Order.id == payment.order_id,
                               Order.status.notin_(TERMINAL_ORDER_STATES))
                        .values(status=CANCELLED, updated_at=ts)
                    )
        logger.info("order {} cancelled: payment {}", payment.order_id,
                    final)

    # ----------------------------
    # background sweeps
    # ----------------------------
    async def reconcile_pending(self, older_than_seconds: float = 0,
                                limit: int = 100) -> dict:
        cutoff = now_ts() - older_than_seconds
        async with self.sessions() as db:
            async with self.gated():
                tokens = (await db.execute(
                    select(Payment.token)
                    .join(Order, Order.id == Payment.order_id)
                    .where(Payment.status == P_PENDING,
                           Order.status.in_((ORDER_PENDING,
                                             AWAITING_PAYMENT)),
                           Payment.created_at <= cutoff)
                    .order_by(Payment.created_at)
                    .limit(limit)
                )).scalars().all()

        counts = {"checked": 0, "completed": 0, "failed": 0, "pending": 0,
                  "errors": 0}
        for token in tokens:
            counts["checked"] += 1
            try:
                res = await self.verify_payment(token)
            except CheckoutError as e:
                counts["errors"] += 1
                logger.warning("reconcile {}: {}", token, e.message)
                continue
            if res.success:
                counts["completed"] += 1
            elif res.status in (P_FAILED, P_CANCELLED):
                counts["failed"] += 1
            else:
                counts["pending"] += 1
        if counts["checked"]:
            logger.info("reconcile sweep: {}", counts)
        return counts

    async def cancel_stale_orders(self, older_than_seconds: float) -> int:
        cutoff = now_ts() - older_than_seconds
        async with self.sessions() as db:
            async with self.gated():
                # orders with a live payment are left to verification
                live = select(Payment.id).where(
                    Payment.order_id == Order.id,
                    Payment.status.in_((P_PENDING, P_COMPLETED)),
                ).exists()
                res = await db.execute(
                    update(Order)
                    .where(Order.status == ORDER_PENDING,
                           Order.created_at < cutoff, ~live)
                    .values(status=CANCELLED, updated_at=now_ts())
                )
                await db.commit()
        if res.rowcount:
            logger.warning("cancelled {} stale pending orders", res.rowcount)
        return res.rowcount

    async def recent_pending(self, limit: int = 100) -> tuple[int, list]:
        async with self.sessions() as db:
            async with self.gated():
                total = (await db.execute(
                    select(func.count()).select_from(Payment)
                    .where(Payment.status.in_((P_INITIATED, P_PENDING)))
                )).scalar_one()
                rows = (await db.execute(
                    select(Payment)
                    .where(Payment.status.in_((P_INITIATED, P_PENDING)))
                    .order_by(Payment.created_at.desc())
                    .limit(limit)
                )).scalars().all()
        now = now_ts()
        items = [
            {
                "payment_id": p.id,
                "order_id": p.order_id,
                "method": p.method,
                "amount": p.amount,
                "currency": p.currency,
                "email": mask_email(p.customer_email),
                "age_ms": int(max(0.0, now - p.created_at) * 1000),
                "status": p.status,
            }
            for p in rows
        ]
        return int(total), items
