from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from order_saga.config import Settings
from order_saga.errors import (
    CheckoutInProgress,
    InsufficientStock,
    InvalidOrder,
    InvalidTransition,
    OutOfStock,
    PaymentFailed,
    ReservationNotFound,
    ShippingError,
)
from order_saga.events import EventLog, OversellRisk, SagaJournal
from order_saga.inventory import InventoryStore
from order_saga.models import (
    CartLine,
    CartSnapshot,
    ChargeResult,
    Order,
    OrderDraft,
    OrderItem,
    OrderStatus,
    PaymentChoice,
    PaymentStatus,
    RefundResult,
    ShippingChoice,
    StockCheck,
    StockKey,
    TrackingInfo,
)
from order_saga.orders import (
    Cancelled,
    Delivered,
    FulfillmentStarted,
    OrderStore,
    PaymentRefunded,
    PaymentSucceeded,
    Shipped,
    can_cancel,
    new_order_id,
)
from order_saga.payments import PaymentGateway, payment_error_message
from order_saga.shipping import ShippingProvider, carrier_for, fallback_tracking_number

logger = logging.getLogger(__name__)


class SagaState(str, enum.Enum):
    CHECKING = "checking"
    RESERVING = "reserving"
    CREATING = "creating"
    CHARGING = "charging"
    COMMITTING = "committing"
    DONE = "done"
    COMPENSATING = "compensating"
    FAILED = "failed"


SAGA_TRANSITIONS = {
    SagaState.CHECKING: {SagaState.RESERVING, SagaState.FAILED},
    SagaState.RESERVING: {SagaState.CREATING, SagaState.COMPENSATING},
    SagaState.CREATING: {SagaState.CHARGING, SagaState.COMPENSATING},
    SagaState.CHARGING: {SagaState.COMMITTING, SagaState.COMPENSATING},
    SagaState.COMMITTING: {SagaState.DONE},
    SagaState.COMPENSATING: {SagaState.FAILED},
    SagaState.DONE: set(),
    SagaState.FAILED: set(),
}


class PaymentDeclined(Exception):
    def __init__(self, result: ChargeResult):
        super().__init__(result.failure_reason or payment_error_message(result.error_code))
        self.result = result


@dataclass
class CheckoutAttempt:
    """Saga-level state for one place_order call, layered over the order's own status."""

    order_id: str
    state: SagaState = SagaState.CHECKING
    history: List[SagaState] = field(default_factory=lambda: [SagaState.CHECKING])
    # reservation id -> (stock key, quantity), in reservation order
    holds: Dict[str, Tuple[StockKey, int]] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    payment_declined: bool = False
    oversold: List[str] = field(default_factory=list)

    def advance(self, state: SagaState) -> None:
        if state == self.state:
            return
        if state not in SAGA_TRANSITIONS[self.state]:
            raise RuntimeError(f"saga for {self.order_id} cannot move {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


class Step(ABC):
    state: SagaState

    def __init__(self, saga: CheckoutSaga, attempt: CheckoutAttempt):
        self.saga = saga
        self.attempt = attempt

    @property
    def order_id(self) -> str:
        return self.attempt.order_id

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def execute(self) -> None: ...

    @abstractmethod
    def compensate(self) -> None: ...

    def run(self) -> None:
        self.saga.journal.log(f"[order={self.order_id}] STEP {self.name()}")
        self.execute()
        self.saga.journal.log(f"[order={self.order_id}] STEP {self.name()} OK")

    def run_compensation(self) -> None:
        self.saga.journal.log(f"[order={self.order_id}] COMPENSATE {self.name()}")
        self.compensate()
        self.saga.journal.log(f"[order={self.order_id}] COMPENSATE {self.name()} OK")


class ReserveStock(Step):
    state = SagaState.RESERVING

    def __init__(self, saga: CheckoutSaga, attempt: CheckoutAttempt, line: CartLine):
        super().__init__(saga, attempt)
        self.line = line
        self.reservation_id: Optional[str] = None

    def name(self) -> str:
        return f"ReserveStock({self.line.stock_key})"

    def execute(self) -> None:
        self.reservation_id = self.saga.inventory.reserve(self.line.stock_key, self.line.quantity, self.order_id)
        self.attempt.holds[self.reservation_id] = (self.line.stock_key, self.line.quantity)

    def compensate(self) -> None:
        if self.reservation_id is not None and not self.saga.inventory.release(self.reservation_id):
            # already reaped; nothing left to give back
            self.saga.journal.log(f"[order={self.order_id}] reservation {self.reservation_id} was already gone")


class CreateOrder(Step):
    state = SagaState.CREATING

    def __init__(self, saga: CheckoutSaga, attempt: CheckoutAttempt, draft: OrderDraft):
        super().__init__(saga, attempt)
        self.draft = draft

    def name(self) -> str:
        return "CreateOrder"

    def execute(self) -> None:
        self.saga.orders.create(self.draft)

    def compensate(self) -> None:
        self.saga.orders.transition(
            self.order_id,
            Cancelled(
                reason=self.attempt.failure_reason or "checkout failed",
                payment_status=PaymentStatus.FAILED if self.attempt.payment_declined else None,
            ),
        )


class ChargePayment(Step):
    state = SagaState.CHARGING

    def __init__(self, saga: CheckoutSaga, attempt: CheckoutAttempt, payment: PaymentChoice):
        super().__init__(saga, attempt)
        self.payment = payment
        self.result: Optional[ChargeResult] = None

    def name(self) -> str:
        return "ChargePayment"

    def execute(self) -> None:
        order = self.saga.orders.require(self.order_id)
        try:
            self.result = self.saga.gateway.charge(order.id, order.total, self.payment.method, order.customer)
        except Exception:
            logger.exception("[order=%s] payment gateway error", order.id)
            self.result = ChargeResult(
                success=False,
                error_code="PROCESSING_ERROR",
                failure_reason=payment_error_message("PROCESSING_ERROR"),
            )
        if not self.result.success:
            raise PaymentDeclined(self.result)

    def compensate(self) -> None:
        # a successful charge is never followed by a failing step
        self.saga.journal.log(f"[order={self.order_id}] charge has no compensation")


class CheckoutSaga:
    """
    Drives cart -> reserved stock -> pending order -> charge -> paid order.

    Every place_order call ends in exactly one of: a Paid order returned, or
    a CheckoutError raised after all holds taken by the call were released
    (and the order, if one was created, cancelled with the reason).
    """

    def __init__(
        self,
        inventory: InventoryStore,
        orders: OrderStore,
        gateway: PaymentGateway,
        shipping: Optional[ShippingProvider] = None,
        events: Optional[EventLog] = None,
        journal: Optional[SagaJournal] = None,
        key_ttl: timedelta = timedelta(hours=24),
        attempt_history: int = 1000,
    ):
        if attempt_history <= 0:
            raise ValueError("attempt_history must be > 0")
        self.inventory = inventory
        self.orders = orders
        self.gateway = gateway
        self.shipping = shipping
        self.events = events if events is not None else inventory.events
        self.journal = journal if journal is not None else SagaJournal()
        self.key_ttl = key_ttl
        self.attempt_history = attempt_history

        # most recent attempts, oldest evicted first
        self.attempts: "OrderedDict[str, CheckoutAttempt]" = OrderedDict()
        self._attempts_lock = threading.Lock()
        # order ids whose place_order call has not returned yet
        self._in_flight: Set[str] = set()

        # idempotency key -> (order id, expires_at), in binding order
        self._keys: "OrderedDict[str, Tuple[str, datetime]]" = OrderedDict()
        self._running_keys: Set[str] = set()
        self._keys_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, inventory: InventoryStore, orders: OrderStore, gateway: PaymentGateway, settings: Settings, **kwargs
    ) -> "CheckoutSaga":
        kwargs.setdefault("key_ttl", settings.idempotency_key_ttl)
        kwargs.setdefault("attempt_history", settings.attempt_history)
        return cls(inventory, orders, gateway, **kwargs)

    # Checkout

    def place_order(
        self,
        cart: CartSnapshot,
        shipping: ShippingChoice,
        payment: PaymentChoice,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        if idempotency_key is not None:
            previous = self._claim_key(idempotency_key)
            if previous is not None:
                self.journal.log(f"[order={previous.id}] duplicate checkout {idempotency_key}, returning existing order")
                return previous
        try:
            order = self._run(cart, shipping, payment)
        except Exception:
            if idempotency_key is not None:
                self._release_key(idempotency_key)
            raise
        if idempotency_key is not None:
            self._bind_key(idempotency_key, order.id)
        return order

    def _run(self, cart: CartSnapshot, shipping: ShippingChoice, payment: PaymentChoice) -> Order:
        attempt = CheckoutAttempt(order_id=new_order_id())
        with self._attempts_lock:
            self.attempts[attempt.order_id] = attempt
            self._in_flight.add(attempt.order_id)
            while len(self.attempts) > self.attempt_history:
                self.attempts.popitem(last=False)
        try:
            return self._execute(attempt, cart, shipping, payment)
        finally:
            with self._attempts_lock:
                self._in_flight.discard(attempt.order_id)

    def _execute(
        self, attempt: CheckoutAttempt, cart: CartSnapshot, shipping: ShippingChoice, payment: PaymentChoice
    ) -> Order:
        self.journal.log(
            f"[order={attempt.order_id}] SAGA START customer={cart.customer.id} lines={len(cart.lines)} method={payment.method}"
        )

        if not cart.lines:
            self._fail(attempt, "cart is empty")
            raise InvalidOrder("cart is empty")
        for line in cart.lines:
            if line.quantity <= 0:
                self._fail(attempt, f"invalid quantity for {line.stock_key}")
                raise InvalidOrder(f"quantity for {line.stock_key} must be > 0")

        unavailable = self._check_stock(cart.lines)
        if unavailable:
            exc = InsufficientStock(unavailable)
            self._fail(attempt, str(exc))
            raise exc

        # fixed order so per-key locks are always taken the same way round
        lines = sorted(cart.lines, key=lambda line: line.stock_key.sort_key())
        steps: List[Step] = [ReserveStock(self, attempt, line) for line in lines]
        steps.append(CreateOrder(self, attempt, self._draft(attempt, cart, shipping, payment)))
        charge = ChargePayment(self, attempt, payment)
        steps.append(charge)

        completed: List[Step] = []
        try:
            for step in steps:
                attempt.advance(step.state)
                step.run()
                completed.append(step)
        except (OutOfStock, InvalidOrder, PaymentDeclined) as exc:
            attempt.failure_reason = str(exc)
            attempt.payment_declined = isinstance(exc, PaymentDeclined)
            self._compensate(attempt, completed)
            error = self._checkout_error(attempt, exc)
            if error is exc:
                raise
            raise error from exc
        except Exception as exc:
            attempt.failure_reason = f"unexpected error: {exc}"
            self._compensate(attempt, completed)
            raise

        return self._commit(attempt, charge)

    def _check_stock(self, lines) -> List[StockCheck]:
        requested: Dict[StockKey, int] = defaultdict(int)
        for line in lines:
            requested[line.stock_key] += line.quantity
        checks = [self.inventory.check_stock(key, qty) for key, qty in requested.items()]
        return [check for check in checks if not check.available]

    def _draft(
        self, attempt: CheckoutAttempt, cart: CartSnapshot, shipping: ShippingChoice, payment: PaymentChoice
    ) -> OrderDraft:
        items = tuple(
            OrderItem(
                product_id=line.product_id,
                variant_id=line.variant_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in cart.lines
        )
        subtotal = cart.subtotal
        computed = subtotal - cart.discount + shipping.cost
        return OrderDraft(
            order_id=attempt.order_id,
            customer=cart.customer,
            items=items,
            subtotal=subtotal,
            discount=cart.discount,
            shipping_cost=shipping.cost,
            total=payment.expected_total if payment.expected_total is not None else computed,
            shipping_address=shipping.address,
            shipping_method=shipping.method,
            payment_method=payment.method,
            order_note=cart.order_note,
            promotion_code=cart.promotion_code,
        )

    def _commit(self, attempt: CheckoutAttempt, charge: ChargePayment) -> Order:
        attempt.advance(SagaState.COMMITTING)
        committed: List[Tuple[StockKey, int]] = []
        for reservation_id, (key, quantity) in attempt.holds.items():
            try:
                self.inventory.commit(reservation_id)
            except ReservationNotFound:
                # reaped while the charge was in flight; the money is taken, so keep going
                self._report_oversell(attempt, reservation_id, key, quantity)
            else:
                committed.append((key, quantity))

        transaction_id = charge.result.transaction_id if charge.result else None
        order = self.orders.transition(
            attempt.order_id, PaymentSucceeded(transaction_id=transaction_id, committed=tuple(committed))
        )
        attempt.advance(SagaState.DONE)
        self.journal.log(f"[order={attempt.order_id}] SAGA OK order_number={order.order_number}")
        return order

    def _report_oversell(self, attempt: CheckoutAttempt, reservation_id: str, key: StockKey, quantity: int) -> None:
        attempt.oversold.append(reservation_id)
        order = self.orders.require(attempt.order_id)
        event = OversellRisk(
            order_id=order.id,
            order_number=order.order_number,
            reservation_id=reservation_id,
            stock_key=key,
            quantity=quantity,
            detected_at=self.inventory.clock(),
        )
        self.journal.log(
            f"[order={order.id}] OVERSELL RISK reservation={reservation_id} key={key} qty={quantity}",
            level=logging.WARNING,
        )
        self.events.publish(event)

    def _compensate(self, attempt: CheckoutAttempt, completed: List[Step]) -> None:
        self.journal.log(f"[order={attempt.order_id}] SAGA FAILED: {attempt.failure_reason}")
        attempt.advance(SagaState.COMPENSATING)
        for step in reversed(completed):
            try:
                step.run_compensation()
            except Exception as comp_exc:
                logger.exception("[order=%s] compensation failed at %s", attempt.order_id, step.name())
                self.journal.log(
                    f"[order={attempt.order_id}] COMPENSATION FAILED at {step.name()}: {comp_exc}",
                    level=logging.ERROR,
                )
        attempt.advance(SagaState.FAILED)
        self.journal.log(f"[order={attempt.order_id}] SAGA END (failed)")

    def _fail(self, attempt: CheckoutAttempt, reason: str) -> None:
        attempt.failure_reason = reason
        attempt.advance(SagaState.FAILED)
        self.journal.log(f"[order={attempt.order_id}] SAGA FAILED: {reason}")

    def _checkout_error(self, attempt: CheckoutAttempt, exc: Exception) -> Exception:
        if isinstance(exc, OutOfStock):
            return InsufficientStock(
                [StockCheck(key=exc.key, requested_quantity=exc.requested, free_quantity=exc.free, available=False)]
            )
        if isinstance(exc, PaymentDeclined):
            return PaymentFailed(
                self.orders.require(attempt.order_id),
                reason=exc.result.failure_reason or payment_error_message(exc.result.error_code),
                error_code=exc.result.error_code,
            )
        return exc

    # Idempotency keys

    def _claim_key(self, key: str) -> Optional[Order]:
        with self._keys_lock:
            self._prune_keys(self.inventory.clock())
            if key in self._running_keys:
                raise CheckoutInProgress(key)
            bound = self._keys.get(key)
            if bound is None:
                self._running_keys.add(key)
                return None
        return self.orders.require(bound[0])

    def _bind_key(self, key: str, order_id: str) -> None:
        with self._keys_lock:
            self._running_keys.discard(key)
            self._keys[key] = (order_id, self.inventory.clock() + self.key_ttl)
            self._keys.move_to_end(key)

    def _release_key(self, key: str) -> None:
        with self._keys_lock:
            self._running_keys.discard(key)

    def _prune_keys(self, now: datetime) -> None:
        # caller holds _keys_lock; bindings are appended with increasing expiry
        while self._keys:
            key, (_, expires_at) = next(iter(self._keys.items()))
            if expires_at > now:
                break
            del self._keys[key]

    # Later lifecycle

    def start_fulfillment(self, order_id: str) -> Order:
        return self.orders.transition(order_id, FulfillmentStarted())

    def ship(self, order_id: str) -> Order:
        """Book the shipment with the carrier and mark the order Shipped."""
        if self.shipping is None:
            raise RuntimeError("no shipping provider configured")
        order = self.orders.require(order_id)
        if order.status is not OrderStatus.PREPARING:
            raise InvalidTransition(order_id, order.status, Shipped(tracking_number="", carrier=""))

        carrier = carrier_for(order.shipping_method)
        try:
            tracking_number = self.shipping.create_shipment(order.id, order.shipping_address, order.items, carrier)
        except ShippingError:
            logger.exception("[order=%s] carrier shipment failed, using local tracking number", order.id)
            tracking_number = fallback_tracking_number(carrier)
        return self.mark_shipped(order_id, tracking_number, carrier)

    def mark_shipped(self, order_id: str, tracking_number: str, carrier: str) -> Order:
        return self.orders.transition(order_id, Shipped(tracking_number=tracking_number, carrier=carrier))

    def mark_delivered(self, order_id: str) -> Order:
        return self.orders.transition(order_id, Delivered())

    def track(self, order_id: str) -> Optional[TrackingInfo]:
        order = self.orders.require(order_id)
        if self.shipping is None or order.tracking_number is None:
            return None
        return self.shipping.track(order.tracking_number)

    def cancel(self, order_id: str, reason: str = "cancelled by customer") -> Order:
        """
        Cancel a Pending, Paid or Preparing order.

        Pending orders give back their holds. Orders that were already paid
        had their stock decremented, so the committed quantities are restored
        and the charge refunded. An order whose checkout is still running
        cannot be cancelled until place_order returns.
        """
        # checked before the read: once the id leaves the in-flight set the saga has finished with the order
        with self._attempts_lock:
            running = order_id in self._in_flight
        order = self.orders.require(order_id)
        if running or not can_cancel(order):
            if running:
                self.journal.log(f"[order={order_id}] CANCEL REFUSED: checkout still running")
            raise InvalidTransition(order_id, order.status, Cancelled(reason=reason))

        # the transition is the atomic claim; a concurrent second cancel fails here
        cancelled = self.orders.transition(order_id, Cancelled(reason=reason))
        self.journal.log(f"[order={order_id}] CANCEL from {order.status.value}: {reason}")

        if cancelled.payment_status is not PaymentStatus.PAID:
            for reservation in self.inventory.reservations_for_order(order_id):
                self.inventory.release(reservation.id)
            return cancelled

        for key, quantity in cancelled.committed_stock:
            try:
                self.inventory.restore(key, quantity)
            except Exception:
                logger.exception("[order=%s] stock restore failed for %s", order_id, key)
                self.journal.log(f"[order={order_id}] RESTORE FAILED {key}", level=logging.ERROR)

        if cancelled.transaction_id is None:
            return cancelled
        try:
            refund = self.gateway.refund(cancelled.transaction_id, cancelled.total, reason)
        except Exception as exc:
            logger.exception("[order=%s] payment gateway error during refund", order_id)
            refund = RefundResult(success=False, failure_reason=f"gateway error: {exc}")
        if not refund.success:
            logger.error("[order=%s] refund failed: %s", order_id, refund.failure_reason)
            self.journal.log(f"[order={order_id}] REFUND FAILED: {refund.failure_reason}", level=logging.ERROR)
            return cancelled
        return self.orders.transition(order_id, PaymentRefunded(refund_id=refund.refund_id))

