"""
Per-provider webhook security configuration.

Loaded once per process and handed to the pipeline; changes to the
``webhook_security_config`` table or secrets take effect on ``reload()``.
"""

import os
from dataclasses import dataclass, replace
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
import structlog

from ..core.backoff import RetryPolicy
from ..core.errors import UnknownProvider
from ..persistence.database import Database
from ..persistence.repository import WebhookConfigRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class WebhookSecurityConfig:
    provider: str
    signature_header: str = "x-webhook-signature"
    timestamp_header: str = "x-webhook-timestamp"
    timestamp_tolerance: int = 300  # seconds
    max_retry_attempts: int = 3
    retry_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_retry_delay_ms: int = 30000
    enabled: bool = True

    @property
    def retry_policy(self) -> RetryPolicy:
        """Backoff for internal redelivery of this provider's events."""
        return RetryPolicy(
            max_attempts=self.max_retry_attempts,
            base_delay_ms=self.retry_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_retry_delay_ms,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "signature_header": self.signature_header,
            "timestamp_header": self.timestamp_header,
            "timestamp_tolerance": self.timestamp_tolerance,
            "max_retry_attempts": self.max_retry_attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "max_retry_delay_ms": self.max_retry_delay_ms,
            "enabled": self.enabled,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WebhookSecurityConfig":
        return cls(
            provider=row["provider"],
            signature_header=row["signature_header"].lower(),
            timestamp_header=row["timestamp_header"].lower(),
            timestamp_tolerance=int(row["timestamp_tolerance"]),
            max_retry_attempts=int(row["max_retry_attempts"]),
            retry_delay_ms=int(row["retry_delay_ms"]),
            backoff_multiplier=float(row["backoff_multiplier"]),
            max_retry_delay_ms=int(row["max_retry_delay_ms"]),
            enabled=bool(row.get("enabled", True)),
        )


DEFAULT_PROVIDER_CONFIGS: Dict[str, WebhookSecurityConfig] = {
    "stripe": WebhookSecurityConfig(
        provider="stripe",
        signature_header="stripe-signature",
        timestamp_header="stripe-signature",
    ),
    "paymongo": WebhookSecurityConfig(
        provider="paymongo",
        signature_header="paymongo-signature",
        timestamp_header="paymongo-timestamp",
    ),
    "mock": WebhookSecurityConfig(provider="mock"),
}

SECRET_ENV_VARS = {
    "stripe": "STRIPE_WEBHOOK_SECRET",
    "paymongo": "PAYMONGO_WEBHOOK_SECRET",
    "mock": "MOCK_WEBHOOK_SECRET",
}

Loader = Callable[[], Tuple[Dict[str, WebhookSecurityConfig], Dict[str, str]]]


class WebhookConfigRegistry:
    """
    Read-mostly holder of provider configs and signing secrets.

    A provider is known only if it has both a config and a secret.
    """

    def __init__(
        self,
        configs: Dict[str, WebhookSecurityConfig],
        secrets: Dict[str, str],
        loader: Optional[Loader] = None,
    ):
        self._configs = dict(configs)
        self._secrets = dict(secrets)
        self._loader = loader
        self._lock = Lock()

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        db: Optional[Database] = None,
    ) -> "WebhookConfigRegistry":
        """Defaults, overridden by stored rows when a database is given; secrets from the environment."""
        env = os.environ if environ is None else environ

        def load() -> Tuple[Dict[str, WebhookSecurityConfig], Dict[str, str]]:
            configs = dict(DEFAULT_PROVIDER_CONFIGS)
            if db is not None:
                for row in WebhookConfigRepository(db).list():
                    configs[row["provider"]] = WebhookSecurityConfig.from_row(row)
            tolerance = env.get("WEBHOOK_TIMESTAMP_TOLERANCE")
            if tolerance:
                configs = {k: replace(v, timestamp_tolerance=int(tolerance)) for k, v in configs.items()}
            secrets = {
                provider: env[var]
                for provider, var in SECRET_ENV_VARS.items()
                if env.get(var)
            }
            return configs, secrets

        configs, secrets = load()
        return cls(configs, secrets, loader=load)

    def reload(self) -> None:
        if self._loader is None:
            return
        configs, secrets = self._loader()
        with self._lock:
            self._configs = configs
            self._secrets = secrets
        logger.info("webhook_config_reloaded", providers=sorted(configs))

    def get(self, provider: str) -> WebhookSecurityConfig:
        with self._lock:
            config = self._configs.get(provider)
            has_secret = bool(self._secrets.get(provider))
        if config is None or not config.enabled or not has_secret:
            raise UnknownProvider(f"webhook provider {provider!r} is not configured")
        return config

    def secret(self, provider: str) -> str:
        with self._lock:
            secret = self._secrets.get(provider)
        if not secret:
            raise UnknownProvider(f"webhook provider {provider!r} is not configured")
        return secret

    def providers(self):
        with self._lock:
            return sorted(p for p, c in self._configs.items() if c.enabled and self._secrets.get(p))
