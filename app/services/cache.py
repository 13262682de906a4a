# app/services/cache.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from app.core.clock import Clock, system_clock

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """
    In-process cache with explicit per-entry TTL and single-flight loading.

    - Expiry is measured on the injected clock's monotonic time, so tests can
      expire entries deterministically.
    - `get_or_load()` collapses concurrent misses for the same key into one
      call of the loader; every concurrent caller receives the same result
      (or the same exception).
    - `None` results are never cached.
    """

    def __init__(self, default_ttl: float = 300.0, clock: Clock = system_clock) -> None:
        self.default_ttl = float(default_ttl)
        self.clock = clock
        self._entries: Dict[Hashable, _Entry] = {}
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self.clock.monotonic():
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        if value is None:
            return
        ttl = self.default_ttl if ttl is None else float(ttl)
        if ttl <= 0:
            return
        # Keys that are written once and never read again would otherwise stay forever.
        self.purge_expired()
        self._entries[key] = _Entry(value=value, expires_at=self.clock.monotonic() + ttl)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self.clock.monotonic()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark as retrieved; the exception is re-raised to this caller below.
            future.exception()
            raise
        else:
            self.set(key, value, ttl)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)
