"""UUIDv7 generation for index-local document identifiers."""

from __future__ import annotations

from datetime import datetime, timezone
import secrets
import uuid

__all__ = ["generate_uuid7", "new_document_id", "uuid7_timestamp"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_uuid7(*, when: datetime | None = None) -> uuid.UUID:
    """Return a time-ordered UUIDv7 value."""

    instant = when.astimezone(timezone.utc) if when else _now()
    timestamp_ms = int(instant.timestamp() * 1000)
    if not 0 <= timestamp_ms < 1 << 48:
        raise ValueError("uuid7 timestamp out of range")

    payload = bytearray(timestamp_ms.to_bytes(6, "big"))
    payload.extend(secrets.token_bytes(10))
    payload[6] = (payload[6] & 0x0F) | 0x70
    payload[8] = (payload[8] & 0x3F) | 0x80
    return uuid.UUID(bytes=bytes(payload))


def new_document_id() -> str:
    """Return a fresh identifier for an index row."""

    return str(generate_uuid7())


def uuid7_timestamp(value: uuid.UUID | str) -> datetime:
    """Return the UTC timestamp embedded in a UUIDv7."""

    if isinstance(value, str):
        value = uuid.UUID(value)
    ms = int.from_bytes(value.bytes[0:6], "big")
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
