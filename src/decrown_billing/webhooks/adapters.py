"""
Provider adapters for inbound webhooks.

Each adapter knows one provider's signature scheme and payload shape, and
turns a verified body into a provider-agnostic ParsedEvent. The pipeline
never looks at provider JSON directly.
"""

import base64
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
import stripe

from ..core.errors import InvalidSignature, MalformedEvent, UnknownProvider
from ..processors.stripe import PERMANENT_DECLINE_CODES
from .config import WebhookSecurityConfig

EVENT_SUCCEEDED = "payment.succeeded"
EVENT_FAILED = "payment.failed"
EVENT_PROCESSING = "payment.processing"


def hmac_sha256(secret: str, message: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds or ISO-8601 to an aware UTC datetime; None if unparseable."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        pass
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class VerifiedDelivery:
    """What the signature check vouches for."""
    signature: str
    timestamp: Optional[datetime]


@dataclass
class ParsedEvent:
    event_id: str
    event_type: str                  # canonical payment.* type, or the provider's own if unmapped
    provider_event_type: str
    occurred_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    attempt_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    failure_reason: Optional[str] = None
    retryable: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment_event(self) -> bool:
        return self.event_type in (EVENT_SUCCEEDED, EVENT_FAILED, EVENT_PROCESSING)


def _load_json(payload: str) -> Dict[str, Any]:
    try:
        body = json.loads(payload)
    except ValueError as e:
        raise MalformedEvent(f"payload is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise MalformedEvent("payload must be a JSON object")
    return body


def _object(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedEvent(f"{what} must be a JSON object")
    return value


class ProviderAdapter(ABC):
    """Signature scheme and payload mapping for one provider."""

    provider: str = ""
    event_types: Dict[str, str] = {}

    @abstractmethod
    def verify(
        self,
        payload: str,
        headers: Mapping[str, str],
        config: WebhookSecurityConfig,
        secret: str,
    ) -> VerifiedDelivery:
        """Check the signature; raises InvalidSignature."""
        ...

    @abstractmethod
    def parse(self, payload: str) -> ParsedEvent:
        """Map a verified body to a ParsedEvent; raises MalformedEvent."""
        ...

    @abstractmethod
    def sign_headers(
        self,
        payload: str,
        config: WebhookSecurityConfig,
        secret: str,
        timestamp: int,
    ) -> Dict[str, str]:
        """Headers a genuine delivery of ``payload`` would carry."""
        ...

    def canonical_type(self, provider_type: str) -> str:
        return self.event_types.get(provider_type, provider_type)

    def peek(self, payload: str) -> Tuple[str, str]:
        """Best-effort (event_id, event_type) for logging a rejected delivery."""
        try:
            event = self.parse(payload)
        except MalformedEvent:
            return "unknown", "unknown"
        return event.event_id, event.provider_event_type

    @staticmethod
    def _header_timestamp(headers: Mapping[str, str], config: WebhookSecurityConfig) -> Optional[datetime]:
        return parse_timestamp(headers.get(config.timestamp_header))


class StripeAdapter(ProviderAdapter):
    """
    Stripe-Signature: ``t=<unix>,v1=<hex hmac of "<t>.<body>">``.

    Verification is delegated to the stripe library with its own tolerance
    check disabled; the pipeline applies the configured tolerance.
    """

    provider = "stripe"
    event_types = {
        "payment_intent.succeeded": EVENT_SUCCEEDED,
        "invoice.paid": EVENT_SUCCEEDED,
        "charge.succeeded": EVENT_SUCCEEDED,
        "payment_intent.payment_failed": EVENT_FAILED,
        "charge.failed": EVENT_FAILED,
        "payment_intent.processing": EVENT_PROCESSING,
    }

    def verify(self, payload, headers, config, secret):
        header = headers.get(config.signature_header)
        if not header:
            raise InvalidSignature(f"missing {config.signature_header} header")
        try:
            stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=None)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e
        timestamp = None
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = parse_timestamp(value)
        return VerifiedDelivery(signature=header, timestamp=timestamp)

    def parse(self, payload):
        body = _load_json(payload)
        event_id = body.get("id")
        provider_type = body.get("type")
        if not event_id or not provider_type:
            raise MalformedEvent("stripe event requires id and type")
        obj = _object(_object(body.get("data"), "data").get("object"), "data.object")
        metadata = _object(obj.get("metadata"), "metadata")
        last_error = _object(obj.get("last_payment_error"), "last_payment_error")
        decline_code = last_error.get("decline_code") or last_error.get("code")

        if provider_type == "invoice.paid":
            transaction_id = obj.get("payment_intent")
        elif provider_type.startswith("charge."):
            transaction_id = obj.get("payment_intent") or obj.get("id")
        else:
            transaction_id = obj.get("id")

        return ParsedEvent(
            event_id=str(event_id),
            event_type=self.canonical_type(provider_type),
            provider_event_type=provider_type,
            occurred_at=parse_timestamp(body.get("created")),
            transaction_id=transaction_id,
            attempt_id=metadata.get("attempt_id"),
            idempotency_key=metadata.get("idempotency_key"),
            failure_reason=decline_code or last_error.get("message") or obj.get("failure_message"),
            retryable=decline_code not in PERMANENT_DECLINE_CODES,
            raw=body,
        )

    def sign_headers(self, payload, config, secret, timestamp):
        digest = hmac_sha256(secret, f"{timestamp}.{payload}").hex()
        return {config.signature_header: f"t={timestamp},v1={digest}"}


class PayMongoAdapter(ProviderAdapter):
    """Hex HMAC of the body in ``paymongo-signature``; unix time in ``paymongo-timestamp``."""

    provider = "paymongo"
    event_types = {
        "payment.paid": EVENT_SUCCEEDED,
        "payment.failed": EVENT_FAILED,
        "payment.processing": EVENT_PROCESSING,
    }

    def verify(self, payload, headers, config, secret):
        signature = headers.get(config.signature_header)
        if not signature:
            raise InvalidSignature(f"missing {config.signature_header} header")
        expected = hmac_sha256(secret, payload).hex()
        if not hmac.compare_digest(signature.strip().lower(), expected):
            raise InvalidSignature("signature mismatch")
        return VerifiedDelivery(signature=signature, timestamp=self._header_timestamp(headers, config))

    def parse(self, payload):
        body = _object(_load_json(payload).get("data"), "data")
        attributes = _object(body.get("attributes"), "data.attributes")
        event_id = body.get("id")
        provider_type = attributes.get("type")
        if not event_id or not provider_type:
            raise MalformedEvent("paymongo event requires data.id and data.attributes.type")
        resource = _object(attributes.get("data"), "data.attributes.data")
        resource_attrs = _object(resource.get("attributes"), "resource attributes")
        metadata = _object(resource_attrs.get("metadata"), "metadata")
        return ParsedEvent(
            event_id=str(event_id),
            event_type=self.canonical_type(provider_type),
            provider_event_type=provider_type,
            occurred_at=parse_timestamp(attributes.get("created_at")),
            transaction_id=resource.get("id"),
            attempt_id=metadata.get("attempt_id"),
            idempotency_key=metadata.get("idempotency_key"),
            failure_reason=resource_attrs.get("failed_message") or resource_attrs.get("failed_code"),
            raw=body,
        )

    def sign_headers(self, payload, config, secret, timestamp):
        return {
            config.signature_header: hmac_sha256(secret, payload).hex(),
            config.timestamp_header: str(timestamp),
        }


class MockAdapter(ProviderAdapter):
    """
    Test provider. Signature is ``mock_sig_`` plus the first 32 characters
    of the base64 HMAC of the body.
    """

    provider = "mock"
    event_types = {
        "payment.succeeded": EVENT_SUCCEEDED,
        "payment.failed": EVENT_FAILED,
        "payment.processing": EVENT_PROCESSING,
    }

    @staticmethod
    def signature_for(payload: str, secret: str) -> str:
        return "mock_sig_" + base64.b64encode(hmac_sha256(secret, payload)).decode("ascii")[:32]

    def verify(self, payload, headers, config, secret):
        signature = headers.get(config.signature_header)
        if not signature:
            raise InvalidSignature(f"missing {config.signature_header} header")
        if not hmac.compare_digest(signature.strip(), self.signature_for(payload, secret)):
            raise InvalidSignature("signature mismatch")
        return VerifiedDelivery(signature=signature, timestamp=self._header_timestamp(headers, config))

    def parse(self, payload):
        body = _load_json(payload)
        event_id = body.get("id")
        provider_type = body.get("type")
        if not event_id or not provider_type:
            raise MalformedEvent("event requires id and type")
        data = _object(body.get("data"), "data")
        retryable = data.get("retryable", True)
        if not isinstance(retryable, bool):
            raise MalformedEvent("data.retryable must be a boolean")
        return ParsedEvent(
            event_id=str(event_id),
            event_type=self.canonical_type(provider_type),
            provider_event_type=provider_type,
            occurred_at=parse_timestamp(body.get("created_at")),
            transaction_id=data.get("transaction_id"),
            attempt_id=data.get("attempt_id"),
            idempotency_key=data.get("idempotency_key"),
            failure_reason=data.get("failure_reason"),
            retryable=retryable,
            raw=body,
        )

    def sign_headers(self, payload, config, secret, timestamp):
        return {
            config.signature_header: self.signature_for(payload, secret),
            config.timestamp_header: str(timestamp),
        }


ADAPTERS: Dict[str, ProviderAdapter] = {
    adapter.provider: adapter
    for adapter in (StripeAdapter(), PayMongoAdapter(), MockAdapter())
}


def get_adapter(provider: str) -> ProviderAdapter:
    adapter = ADAPTERS.get(provider)
    if adapter is None:
        raise UnknownProvider(f"no adapter for webhook provider {provider!r}")
    return adapter
