"""Hash and signature primitives shared by all provider verifiers.

Two signing families exist among the supported providers:
  - keyed HMAC over the raw body            (crypto, fastpay, nasspay)
  - plain digest over canonical + secret    (zaincash: MD5, fib: SHA-256)

MD5 is kept only because ZainCash signs with it; it is never used for
anything we originate.
"""

import hashlib
import hmac
import secrets

SUPPORTED_ALGORITHMS: frozenset[str] = frozenset({"md5", "sha256", "sha512"})

# Per-process key used to normalize both sides of a comparison to 32 bytes
_COMPARE_KEY: bytes = secrets.token_bytes(32)


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def _check_algorithm(algorithm: str) -> str:
    name = algorithm.lower()
    if name not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported digest algorithm: {algorithm}")
    return name


def hmac_digest(algorithm: str, secret: str | bytes, message: str | bytes) -> bytes:
    """Keyed HMAC of message.

    Raises:
        ValueError: Unsupported algorithm
    """
    name = _check_algorithm(algorithm)
    return hmac.new(_to_bytes(secret), _to_bytes(message), name).digest()


def salted_digest(algorithm: str, message: str | bytes, salt: str | bytes) -> bytes:
    """Plain digest of message immediately followed by salt: H(message || salt).

    Raises:
        ValueError: Unsupported algorithm
    """
    name = _check_algorithm(algorithm)
    return hashlib.new(name, _to_bytes(message) + _to_bytes(salt)).digest()


def constant_time_equal(a: str | bytes, b: str | bytes) -> bool:
    """Compare two values without leaking where, or whether by length, they differ.

    Both inputs are HMAC'd under a random per-process key first, so
    compare_digest always sees two 32-byte values.
    """
    mac_a = hmac.new(_COMPARE_KEY, _to_bytes(a), hashlib.sha256).digest()
    mac_b = hmac.new(_COMPARE_KEY, _to_bytes(b), hashlib.sha256).digest()
    return hmac.compare_digest(mac_a, mac_b)
