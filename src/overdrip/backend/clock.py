"""Clock abstraction for the backend's time-based decisions.

Auth-code expiry, ``lastUsed`` stamps and token lifetimes all read the time
through an injected :class:`Clock` instead of calling ``time.time()``
directly, so tests can pin or move time.

Example
-------
>>> from overdrip.backend.clock import default_clock, utcnow
>>> isinstance(default_clock(), float)
True
>>> utcnow(lambda: 0.0).year
1970
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable returning seconds since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    return time.time()


def utcnow(clock: Clock) -> datetime:
    """Current time of *clock* as an aware UTC datetime."""
    return datetime.fromtimestamp(clock(), tz=timezone.utc)
