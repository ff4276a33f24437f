"""Provider webhook verifiers.

Every provider signs its notifications differently. Each scheme is one
strategy object with the same contract:

    verify(raw_body, headers, fields) -> bool

| provider | strategy                 | material   | digest                  | secret env                                      |
|----------|--------------------------|------------|-------------------------|-------------------------------------------------|
| crypto   | CryptoInvoiceVerifier    | raw body   | HMAC-SHA256 / -SHA512   | COINGATE_WEBHOOK_SECRET / NOWPAYMENTS_WEBHOOK_SECRET |
| zaincash | SaltedCanonicalVerifier  | canonical  | MD5(canonical+secret)   | ZAINCASH_SECRET                                 |
| fastpay  | HmacBodyVerifier         | raw body   | HMAC-SHA256             | FASTPAY_API_KEY                                 |
| nasspay  | HmacBodyVerifier         | raw body   | HMAC-SHA256             | NASSPAY_SECRET                                  |
| fib      | SaltedCanonicalVerifier  | canonical  | SHA256(canonical+secret)| FIB_SECRET                                      |

A missing secret raises ProviderNotConfiguredError instead of returning
False: a misconfigured deployment is our fault, not a forgery, and must be
surfaced as a 5xx while still rejecting the delivery.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from subgate_api.billing.canonical import canonicalize, without_fields
from subgate_api.billing.signing import constant_time_equal, hmac_digest, salted_digest
from subgate_api.config.env import get_webhook_secret

logger = logging.getLogger(__name__)


class ProviderNotConfiguredError(ValueError):
    """Signing secret for a provider is not configured."""

    def __init__(self, provider: str, env_name: str):
        self.provider = provider
        self.env_name = env_name
        super().__init__(f"Webhook secret for provider '{provider}' is not configured ({env_name})")


class UnknownProviderError(KeyError):
    """No verifier registered under the given provider key."""


def get_header(headers: Mapping[str, str], *names: str) -> Optional[str]:
    """First non-empty header among names, matched case-insensitively."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def get_field(fields: Mapping[str, Any], *names: str) -> Optional[str]:
    """First non-empty payload field among names, as a string."""
    for name in names:
        value = fields.get(name)
        if value is not None and value != "":
            return str(value)
    return None


def _load_secret(provider: str, env_name: str) -> str:
    try:
        return get_webhook_secret(env_name)
    except ValueError as exc:
        raise ProviderNotConfiguredError(provider, env_name) from exc


class WebhookVerifier(ABC):
    """Authenticity check for one provider's notifications."""

    provider: str

    @abstractmethod
    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        fields: Mapping[str, Any],
    ) -> bool:
        """Return True only if the notification is authentic.

        Raises:
            ProviderNotConfiguredError: The provider's secret is missing
        """


class HmacBodyVerifier(WebhookVerifier):
    """Hex HMAC of the exact raw request body, carried in a header."""

    def __init__(
        self,
        provider: str,
        secret_env: str,
        algorithm: str,
        signature_headers: tuple[str, ...],
        case_insensitive: bool = False,
    ):
        self.provider = provider
        self.secret_env = secret_env
        self.algorithm = algorithm
        self.signature_headers = signature_headers
        self.case_insensitive = case_insensitive

    def verify(self, raw_body, headers, fields) -> bool:
        secret = _load_secret(self.provider, self.secret_env)

        signature = get_header(headers, *self.signature_headers)
        if not signature:
            return False

        expected = hmac_digest(self.algorithm, secret, raw_body).hex()
        if self.case_insensitive:
            signature = signature.lower()
        return constant_time_equal(expected, signature)


class SaltedCanonicalVerifier(WebhookVerifier):
    """Hex digest of canonical(fields minus signature fields) + secret.

    The signature travels inside the payload. Hex comparison is
    case-insensitive.
    """

    def __init__(
        self,
        provider: str,
        secret_env: str,
        algorithm: str,
        signature_fields: tuple[str, ...],
    ):
        self.provider = provider
        self.secret_env = secret_env
        self.algorithm = algorithm
        self.signature_fields = signature_fields

    def verify(self, raw_body, headers, fields) -> bool:
        secret = _load_secret(self.provider, self.secret_env)

        signature = get_field(fields, *self.signature_fields)
        if not signature:
            return False

        canonical = canonicalize(without_fields(fields, self.signature_fields))
        expected = salted_digest(self.algorithm, canonical, secret).hex()
        return constant_time_equal(expected, signature.lower())


class CryptoInvoiceVerifier(WebhookVerifier):
    """Crypto aggregator endpoint shared by CoinGate and NOWPayments.

    The header present selects the scheme; NOWPayments wins if both are sent.
    """

    provider = "crypto"

    def __init__(self):
        self.nowpayments = HmacBodyVerifier(
            provider="crypto",
            secret_env="NOWPAYMENTS_WEBHOOK_SECRET",
            algorithm="sha512",
            signature_headers=("X-NOWPayments-Sig",),
        )
        self.coingate = HmacBodyVerifier(
            provider="crypto",
            secret_env="COINGATE_WEBHOOK_SECRET",
            algorithm="sha256",
            signature_headers=("X-CoinGate-Signature",),
        )

    def verify(self, raw_body, headers, fields) -> bool:
        if get_header(headers, *self.nowpayments.signature_headers):
            return self.nowpayments.verify(raw_body, headers, fields)
        if get_header(headers, *self.coingate.signature_headers):
            return self.coingate.verify(raw_body, headers, fields)
        return False


# ============================================================================
# Registry
# ============================================================================


class VerifierRegistry:
    """Closed mapping provider key -> verifier."""

    def __init__(self, verifiers: Optional[Mapping[str, WebhookVerifier]] = None):
        self._verifiers: dict[str, WebhookVerifier] = dict(verifiers or {})

    def register(self, verifier: WebhookVerifier) -> None:
        self._verifiers[verifier.provider] = verifier

    def get(self, provider: str) -> WebhookVerifier:
        try:
            return self._verifiers[provider]
        except KeyError:
            raise UnknownProviderError(provider) from None

    def providers(self) -> list[str]:
        return sorted(self._verifiers)


def build_default_registry() -> VerifierRegistry:
    """Registry with the five supported providers."""
    registry = VerifierRegistry()
    registry.register(CryptoInvoiceVerifier())
    registry.register(
        SaltedCanonicalVerifier(
            provider="zaincash",
            secret_env="ZAINCASH_SECRET",
            algorithm="md5",
            signature_fields=("hash", "token"),
        )
    )
    registry.register(
        HmacBodyVerifier(
            provider="fastpay",
            secret_env="FASTPAY_API_KEY",
            algorithm="sha256",
            signature_headers=("X-FastPay-Signature", "X-Signature"),
        )
    )
    registry.register(
        HmacBodyVerifier(
            provider="nasspay",
            secret_env="NASSPAY_SECRET",
            algorithm="sha256",
            signature_headers=("X-NassPay-Signature", "X-Signature"),
        )
    )
    registry.register(
        SaltedCanonicalVerifier(
            provider="fib",
            secret_env="FIB_SECRET",
            algorithm="sha256",
            signature_fields=("signature", "hash"),
        )
    )
    return registry


_registry: Optional[VerifierRegistry] = None


def get_verifier_registry() -> VerifierRegistry:
    """Get global verifier registry (singleton)."""
    global _registry
    if _registry is None:
        _registry = build_default_registry()
    return _registry
