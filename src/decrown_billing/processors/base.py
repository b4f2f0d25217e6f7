"""
Payment processor contract.

A processor charges a customer once per idempotency key. Repeating a call
with the same key must return the original result instead of charging
again.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ChargeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"  # settles later by webhook


@dataclass
class ChargeResult:
    status: ChargeStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    retryable: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(ABC):
    """Provider-agnostic charge interface used by the payment state machine."""

    name: str = "processor"

    @abstractmethod
    def charge(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """
        Charge ``amount`` to the customer.

        Raises ProcessorUnavailable on network errors and timeouts.
        """
        ...
