"""Internal transaction identifiers.

Format: ``pay_<epoch_ms>_<32 hex>`` (128 random bits). The id is handed to
the provider as the order id and doubles as the capability for the public
status poll, so it must stay unguessable.
"""

import re
import secrets
import time

PAYMENT_TOKEN_RE = re.compile(r"^pay_\d{13,}_[0-9a-f]{32}$")


def generate_payment_token() -> str:
    """Generate a new unguessable transaction id."""
    return f"pay_{int(time.time() * 1000)}_{secrets.token_hex(16)}"


def is_payment_token(value: str) -> bool:
    """True if value has the payment token shape."""
    return bool(PAYMENT_TOKEN_RE.match(value or ""))
