from __future__ import annotations

import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_uuid7() -> str:
    """Time-ordered UUIDv7 string; audit rows sort by creation with it."""
    value = (time.time_ns() // 1_000_000) << 80
    value |= secrets.randbits(80)
    # version 7 nibble and RFC 4122 variant bits
    value = (value & ~(0xF << 76)) | (0x7 << 76)
    value = (value & ~(0x3 << 62)) | (0x2 << 62)
    return str(uuid.UUID(int=value))


def generate_wo_number(now: Optional[datetime] = None) -> str:
    """Human-readable work order number, e.g. WO-20261019-3F9A1C."""
    now = now or datetime.now(timezone.utc)
    return f"WO-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"
