"""Per-tier admission counters.

Acquisition never blocks: a caller that cannot get a slot leaves its work
item queued and retries on the next requeue sweep.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping

log = logging.getLogger(__name__)

UNLIMITED = math.inf


class ConcurrencyManager:
    """Bounded counters keyed by capacity tier.

    ``limits`` maps tier name to its maximum; a limit of 0 means unlimited.
    Tiers missing from ``limits`` get ``default_limit``.
    """

    def __init__(self, limits: Mapping[str, int] | None = None, default_limit: int = 3):
        self._limits = dict(limits or {})
        self._default = default_limit
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    def limit_for(self, tier: str) -> float:
        limit = self._limits.get(tier, self._default)
        return UNLIMITED if limit == 0 else limit

    def try_acquire(self, tier: str) -> bool:
        with self._lock:
            current = self._active.get(tier, 0)
            if current >= self.limit_for(tier):
                return False
            self._active[tier] = current + 1
            return True

    def release(self, tier: str) -> None:
        with self._lock:
            current = self._active.get(tier, 0)
            if current <= 0:
                log.debug("Release on idle tier %s ignored", tier)
                return
            self._active[tier] = current - 1

    def active_count(self, tier: str) -> int:
        with self._lock:
            return self._active.get(tier, 0)

    def has_capacity(self, tier: str) -> bool:
        return self.active_count(tier) < self.limit_for(tier)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {tier: n for tier, n in self._active.items() if n > 0}

    def reseed(self, counts: Mapping[str, int]) -> None:
        """Replace the counters, e.g. from persisted running items after a restart."""
        with self._lock:
            self._active = {tier: max(0, n) for tier, n in counts.items()}

    def clear(self) -> None:
        with self._lock:
            self._active.clear()
