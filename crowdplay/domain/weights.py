from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

WeightResolver = Callable[[str], float]


@dataclass(frozen=True)
class Boost:
    weight: float
    expires_at: float


class BoostTable:
    """Temporary per-user vote weight (e.g. granted after a purchase).

    A new grant replaces the user's current boost; boosts never stack.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._boosts: dict[str, Boost] = {}

    def grant(self, user: str, *, weight: float, duration_ms: int) -> Boost:
        if not user:
            raise ValueError("user cannot be empty")
        if not math.isfinite(weight) or weight < 1.0:
            raise ValueError("boost weight must be a finite number >= 1")
        if duration_ms <= 0:
            raise ValueError("boost duration_ms must be positive")
        boost = Boost(weight=float(weight), expires_at=self._clock() + duration_ms / 1000.0)
        self._boosts[user] = boost
        return boost

    def revoke(self, user: str) -> bool:
        return self._boosts.pop(user, None) is not None

    def resolve(self, user: str) -> float:
        boost = self._boosts.get(user)
        if boost is None:
            return 1.0
        if boost.expires_at <= self._clock():
            del self._boosts[user]
            return 1.0
        return boost.weight

    def prune(self) -> int:
        now = self._clock()
        expired = [u for u, b in self._boosts.items() if b.expires_at <= now]
        for u in expired:
            del self._boosts[u]
        return len(expired)

    def active(self) -> dict[str, dict[str, float | int]]:
        self.prune()
        now = self._clock()
        return {
            user: {"weight": b.weight, "remaining_ms": max(0, int((b.expires_at - now) * 1000))}
            for user, b in sorted(self._boosts.items())
        }

    def __call__(self, user: str) -> float:
        return self.resolve(user)


def effective_weight(*, user: str, base_weight: float, resolver: WeightResolver | None, logger) -> float:
    """max(base_weight, resolver(user)), floored at 1.

    A resolver that raises or returns garbage means "no boost"; a non-finite
    base weight counts as 1.
    """

    base = float(base_weight)
    if not math.isfinite(base):
        logger.warning("weight.base_invalid", user=user, base_weight=repr(base_weight))
        base = 1.0
    base = max(1.0, base)
    if resolver is None:
        return base

    try:
        resolved = resolver(user)
    except Exception as e:  # noqa: BLE001
        logger.warning("weight.resolve_failed", user=user, error=str(e))
        return base

    if isinstance(resolved, bool) or not isinstance(resolved, (int, float)) or not math.isfinite(resolved):
        logger.warning("weight.resolve_invalid", user=user, resolved=repr(resolved))
        return base

    return max(base, float(resolved))
