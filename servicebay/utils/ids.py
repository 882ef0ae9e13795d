from __future__ import annotations

from datetime import datetime

from nanoid import generate

from servicebay.utils.time import utcnow

_ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUVWXYZ"


def short_id(size: int = 10) -> str:
    return generate(_ALPHABET, size)


def make_number(prefix: str, *, long_date: bool = False, now: datetime | None = None) -> str:
    """Human-readable identifier such as ``APT-261017-7KQ2M9``."""
    stamp = (now or utcnow()).strftime("%Y%m%d" if long_date else "%y%m%d")
    return f"{prefix}-{stamp}-{short_id(6)}"
