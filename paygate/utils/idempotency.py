from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, status

MAX_KEY_LENGTH = 255


async def get_idempotency_key(idempotency_key: Optional[str] = Header(default=None)) -> Optional[str]:
    """Return the Idempotency-Key header, or None when absent or blank."""
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key:
        return None
    if len(key) > MAX_KEY_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": {
                    "code": "BAD_REQUEST_ERROR",
                    "description": f"Idempotency-Key longer than {MAX_KEY_LENGTH} characters",
                }
            },
        )
    return key
