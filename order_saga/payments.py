"""Payment gateway port and a configurable fake adapter.

The saga only depends on `PaymentGateway`; the fake stands in for the real
processor in development and tests.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from order_saga.models import ChargeResult, Customer, RefundResult

PAYMENT_ERROR_MESSAGES = {
    "USER_CANCEL": "Customer cancelled the payment",
    "PAYMENT_FAILED": "Payment failed, please try again",
    "INSUFFICIENT_FUNDS": "Insufficient funds",
    "CARD_ERROR": "Check the card details",
    "NETWORK_ERROR": "Network error while contacting the payment provider",
    "UNSUPPORTED_METHOD": "Unsupported payment method",
    "PROCESSING_ERROR": "Payment processing error",
}

SUPPORTED_METHODS = ("card", "kakaopay", "tosspay", "bank")


def payment_error_message(error_code: Optional[str]) -> str:
    return PAYMENT_ERROR_MESSAGES.get(error_code or "", "Unknown payment error")


class PaymentGateway(ABC):
    @abstractmethod
    def charge(self, order_id: str, amount: Decimal, method: str, customer: Customer) -> ChargeResult:
        """Charge the customer once. Callers must not retry on their own."""
        ...

    @abstractmethod
    def refund(self, transaction_id: str, amount: Decimal, reason: str) -> RefundResult:
        ...


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self, latency: float = 0.0) -> None:
        self.should_succeed: bool = True
        self.error_code: str = "PAYMENT_FAILED"
        self.failure_reason: Optional[str] = None
        self.raise_error: Optional[Exception] = None
        self.latency = latency
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def configure(
        self,
        should_succeed: bool = True,
        error_code: str = "PAYMENT_FAILED",
        failure_reason: Optional[str] = None,
        raise_error: Optional[Exception] = None,
        latency: Optional[float] = None,
    ) -> None:
        self.should_succeed = should_succeed
        self.error_code = error_code
        self.failure_reason = failure_reason
        self.raise_error = raise_error
        if latency is not None:
            self.latency = latency

    def _record(self, **call) -> None:
        with self._lock:
            self.calls.append(call)

    def charges(self) -> List[dict]:
        with self._lock:
            return [c for c in self.calls if c["method"] == "charge"]

    def charge(self, order_id: str, amount: Decimal, method: str, customer: Customer) -> ChargeResult:
        self._record(method="charge", order_id=order_id, amount=amount, payment_method=method, customer_id=customer.id)
        if self.latency:
            time.sleep(self.latency)
        if self.raise_error is not None:
            raise self.raise_error

        if method not in SUPPORTED_METHODS:
            return ChargeResult(
                success=False,
                error_code="UNSUPPORTED_METHOD",
                failure_reason=payment_error_message("UNSUPPORTED_METHOD"),
            )
        if self.should_succeed:
            return ChargeResult(success=True, transaction_id=f"{method}_{uuid4().hex[:12]}")
        return ChargeResult(
            success=False,
            error_code=self.error_code,
            failure_reason=self.failure_reason or payment_error_message(self.error_code),
        )

    def refund(self, transaction_id: str, amount: Decimal, reason: str) -> RefundResult:
        self._record(method="refund", transaction_id=transaction_id, amount=amount, reason=reason)
        if self.should_succeed:
            return RefundResult(success=True, refund_id=f"ref_{uuid4().hex[:12]}")
        return RefundResult(success=False, failure_reason=self.failure_reason or "Refund declined")
