"""
Scriptable in-process payment processor for development and tests.
"""

from collections import deque
from decimal import Decimal
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Union
import uuid
import structlog

from ..core.errors import ProcessorUnavailable
from .base import ChargeResult, ChargeStatus, PaymentProcessor

logger = structlog.get_logger()

Outcome = Union[ChargeResult, Exception]


class MockProcessor(PaymentProcessor):
    """
    Returns queued outcomes in order, then ``default_status``.

    Results are remembered per idempotency key, so resubmitting an attempt
    returns the first answer just like a real processor.
    """

    name = "mock"

    def __init__(self, default_status: ChargeStatus = ChargeStatus.SUCCEEDED):
        self.default_status = default_status
        self._outcomes: Deque[Outcome] = deque()
        self._results: Dict[str, ChargeResult] = {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = Lock()

    def queue(self, *outcomes: Outcome) -> "MockProcessor":
        self._outcomes.extend(outcomes)
        return self

    def decline(self, reason: str = "card_declined", retryable: bool = True, times: int = 1) -> "MockProcessor":
        for _ in range(times):
            self._outcomes.append(ChargeResult(
                status=ChargeStatus.FAILED,
                transaction_id=f"mock_txn_{uuid.uuid4().hex[:12]}",
                failure_reason=reason,
                retryable=retryable,
            ))
        return self

    def unavailable(self, times: int = 1) -> "MockProcessor":
        for _ in range(times):
            self._outcomes.append(ProcessorUnavailable("mock processor timed out"))
        return self

    def settle_async(self, transaction_id: Optional[str] = None) -> "MockProcessor":
        self._outcomes.append(ChargeResult(
            status=ChargeStatus.PROCESSING,
            transaction_id=transaction_id or f"mock_txn_{uuid.uuid4().hex[:12]}",
        ))
        return self

    def charge(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        with self._lock:
            self.calls.append({
                "customer_ref": customer_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            })
            if idempotency_key in self._results:
                return self._results[idempotency_key]

            outcome = self._outcomes.popleft() if self._outcomes else ChargeResult(
                status=self.default_status,
                transaction_id=f"mock_txn_{uuid.uuid4().hex[:12]}",
            )
            if isinstance(outcome, Exception):
                raise outcome
            outcome.raw = outcome.raw or {
                "id": outcome.transaction_id,
                "status": outcome.status.value,
                "amount": str(amount),
                "currency": currency,
            }
            self._results[idempotency_key] = outcome

        logger.info(
            "mock_charge",
            idempotency_key=idempotency_key,
            status=outcome.status.value,
            amount=str(amount),
        )
        return outcome
