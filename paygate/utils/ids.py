from __future__ import annotations

import secrets

PAYMENT_PREFIX = "pay"
REFUND_PREFIX = "rfnd"
WEBHOOK_PREFIX = "whk"
JOB_PREFIX = "job"


def new_id(prefix: str, length: int = 16) -> str:
    """Return ``<prefix>_<length hex chars>`` from a CSPRNG."""
    return f"{prefix}_{secrets.token_hex(length // 2)}"
