"""
Payment processors: the provider-agnostic charge contract and its
implementations.
"""

from .base import ChargeResult, ChargeStatus, PaymentProcessor
from .mock import MockProcessor
from .stripe import StripeProcessor

__all__ = [
    "ChargeResult",
    "ChargeStatus",
    "PaymentProcessor",
    "MockProcessor",
    "StripeProcessor",
]
