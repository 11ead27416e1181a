"""Opaque chronological cursors for ledger and redemption windows."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Tuple
from uuid import UUID


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (sqlite round-trips) as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow(value: datetime | None = None) -> datetime:
    return ensure_utc(value) if value is not None else datetime.now(timezone.utc)


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{ensure_utc(timestamp).isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor; malformed cursors raise ValueError."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return ensure_utc(datetime.fromisoformat(timestamp_str)), UUID(identifier_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ValueError("Invalid pagination cursor") from exc
