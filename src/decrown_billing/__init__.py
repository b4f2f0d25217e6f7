"""
DeCrown Billing

Billing and payment reconciliation core for the DeCrown worker
transportation platform: monthly usage ledgers, invoice generation, the
payment attempt retry state machine, processor webhook ingestion and
dunning escalation.
"""

__version__ = "1.0.0"
