"""Provider verifiers against independently computed signatures."""

import json

import pytest

from webhook_helpers import PROVIDERS, TEST_SECRETS, hmac_hex, paid_payload, sign_delivery
from subgate_api.billing.dispatcher import parse_body
from subgate_api.billing.verifiers import (
    CryptoInvoiceVerifier,
    HmacBodyVerifier,
    ProviderNotConfiguredError,
    UnknownProviderError,
    VerifierRegistry,
    build_default_registry,
    get_field,
    get_header,
)

_TXN = "pay_1760000000000_" + "ab" * 16


def _verify(provider, body, headers):
    verifier = build_default_registry().get(provider)
    return verifier.verify(body, headers, parse_body(body))


def test_default_registry_covers_all_providers():
    assert build_default_registry().providers() == sorted(PROVIDERS)


def test_unknown_provider():
    with pytest.raises(UnknownProviderError):
        VerifierRegistry().get("paypal")


@pytest.mark.parametrize("provider", PROVIDERS)
def test_valid_signature_accepted(provider, provider_secrets):
    body, headers = sign_delivery(provider, paid_payload(provider, _TXN, "d-1"))
    assert _verify(provider, body, headers) is True


def test_nowpayments_signature_accepted(provider_secrets):
    body, headers = sign_delivery("crypto", paid_payload("crypto", _TXN, "d-1"), use_nowpayments=True)
    assert _verify("crypto", body, headers) is True


@pytest.mark.parametrize("provider", ["crypto", "fastpay", "nasspay"])
def test_body_tampering_rejected(provider, provider_secrets):
    body, headers = sign_delivery(provider, paid_payload(provider, _TXN, "d-1"))
    tampered = body.replace(b"9.99", b"0.01")
    assert tampered != body
    assert _verify(provider, tampered, headers) is False


@pytest.mark.parametrize("provider,field", [("zaincash", "hash"), ("fib", "signature")])
def test_field_tampering_rejected(provider, field, provider_secrets):
    body, _ = sign_delivery(provider, paid_payload(provider, _TXN, "d-1"))
    fields = json.loads(body)
    fields["amount"] = "0.01"
    tampered = json.dumps(fields).encode()
    assert _verify(provider, tampered, {}) is False


@pytest.mark.parametrize("provider", PROVIDERS)
def test_missing_signature_rejected(provider, provider_secrets):
    body = json.dumps(paid_payload(provider, _TXN, "d-1")).encode()
    assert _verify(provider, body, {"Content-Type": "application/json"}) is False


@pytest.mark.parametrize(
    "provider,env_name",
    [
        ("zaincash", "ZAINCASH_SECRET"),
        ("fastpay", "FASTPAY_API_KEY"),
        ("nasspay", "NASSPAY_SECRET"),
        ("fib", "FIB_SECRET"),
    ],
)
def test_missing_secret_raises(provider, env_name, provider_secrets, monkeypatch):
    body, headers = sign_delivery(provider, paid_payload(provider, _TXN, "d-1"))
    monkeypatch.delenv(env_name)

    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        _verify(provider, body, headers)

    assert exc_info.value.provider == provider
    assert exc_info.value.env_name == env_name


def test_blank_secret_counts_as_missing(provider_secrets, monkeypatch):
    body, headers = sign_delivery("fastpay", paid_payload("fastpay", _TXN, "d-1"))
    monkeypatch.setenv("FASTPAY_API_KEY", "   ")
    with pytest.raises(ProviderNotConfiguredError):
        _verify("fastpay", body, headers)


def test_crypto_nowpayments_header_takes_precedence(provider_secrets):
    body = json.dumps(paid_payload("crypto", _TXN, "d-1")).encode()
    headers = {
        "X-NOWPayments-Sig": "0" * 128,
        "X-CoinGate-Signature": hmac_hex("sha256", TEST_SECRETS["COINGATE_WEBHOOK_SECRET"], body),
    }
    # Valid CoinGate signature is not consulted when a NOWPayments header is present
    assert CryptoInvoiceVerifier().verify(body, headers, {}) is False


def test_crypto_missing_only_relevant_secret(provider_secrets, monkeypatch):
    monkeypatch.delenv("NOWPAYMENTS_WEBHOOK_SECRET")
    body, headers = sign_delivery("crypto", paid_payload("crypto", _TXN, "d-1"))
    assert CryptoInvoiceVerifier().verify(body, headers, {}) is True

    body, headers = sign_delivery("crypto", paid_payload("crypto", _TXN, "d-2"), use_nowpayments=True)
    with pytest.raises(ProviderNotConfiguredError):
        CryptoInvoiceVerifier().verify(body, headers, {})


def test_salted_signature_hex_case_insensitive(provider_secrets):
    body, _ = sign_delivery("zaincash", paid_payload("zaincash", _TXN, "d-1"))
    fields = json.loads(body)
    fields["hash"] = fields["hash"].upper()
    assert _verify("zaincash", json.dumps(fields).encode(), {}) is True


def test_hmac_case_sensitivity_is_opt_in(monkeypatch):
    monkeypatch.setenv("TEST_HOOK_SECRET", "s3cret")
    body = b'{"a":1}'
    upper = hmac_hex("sha256", "s3cret", body).upper()

    strict = HmacBodyVerifier("test", "TEST_HOOK_SECRET", "sha256", ("X-Sig",))
    relaxed = HmacBodyVerifier("test", "TEST_HOOK_SECRET", "sha256", ("X-Sig",), case_insensitive=True)

    assert strict.verify(body, {"X-Sig": upper}, {}) is False
    assert relaxed.verify(body, {"X-Sig": upper}, {}) is True


def test_header_lookup_is_case_insensitive():
    headers = {"x-fastpay-signature": "abc", "X-Signature": ""}
    assert get_header(headers, "X-FastPay-Signature") == "abc"
    assert get_header(headers, "X-Signature") is None


def test_field_lookup_first_non_empty_wins():
    fields = {"id": "", "payment_id": 123}
    assert get_field(fields, "id", "payment_id") == "123"
    assert get_field(fields, "missing") is None
