"""Log sanitizer for webhook payloads, secrets and tracebacks.

Provider notifications carry signatures, wallet numbers and bearer tokens in
the same bag as the fields we actually want to log. Everything that reaches a
log line goes through here first.

String handling is size gated:
 1. longer than MAX_STR_LOG        -> replaced by length + sha256 prefix
 2. longer than MAX_STR_FOR_REGEX  -> Bearer/Basic prefix check only
 3. otherwise                      -> full pattern redaction
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

REDACTED = "[REDACTED]"

# Lower-cased. Covers signature fields of every supported provider.
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "access_token", "refresh_token",
    "api_key", "secret", "signature", "hash",
    "x-signature", "x-coingate-signature", "x-nowpayments-sig",
    "x-fastpay-signature", "x-nasspay-signature",
    "email", "phone", "msisdn", "card", "pan", "cvv",
    "proof_url", "proofurl",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"Basic \S+"),
    re.compile(r"api_key=\S+"),
    re.compile(r"(?:hash|signature|token)=[0-9A-Za-z._\-]+"),
    re.compile(r"secret=\S+"),
]

_BEARER_PREFIX = "Bearer "
_BASIC_PREFIX = "Basic "


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def sanitize_str(s: str) -> str:
    """Redact or truncate a string according to the size gate."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)
    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_BEARER_PREFIX) or s.startswith(_BASIC_PREFIX):
            return REDACTED
        return s

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    Dict values under sensitive keys are replaced, strings go through
    sanitize_str(), everything else is returned as-is.
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = REDACTED
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format exc_info into a sanitized traceback (locals never captured).

    Redaction runs per line so long tracebacks stay under the regex gate.
    """
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        lines = "".join(te.format()).splitlines()
        return "\n".join(sanitize_str(line) for line in lines)
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
