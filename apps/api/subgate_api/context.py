"""Request context management for observability.

Context variables are picked up by the JSON log formatter so every line
emitted while handling a webhook carries the same correlation fields.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Provider key of the webhook being handled (crypto, zaincash, ...)
provider_var: ContextVar[str] = ContextVar("provider", default="")

# Internal transaction id the current delivery refers to
transaction_id_var: ContextVar[str] = ContextVar("transaction_id", default="")
