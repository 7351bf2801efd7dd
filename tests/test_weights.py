from __future__ import annotations

import math

import pytest

from crowdplay.domain.weights import BoostTable, effective_weight
from crowdplay.observability.logging import configure_logging, get_logger


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_boost_expires_after_duration() -> None:
    clock = FakeClock()
    boosts = BoostTable(clock=clock)
    boosts.grant("alice", weight=2, duration_ms=60_000)

    assert boosts("alice") == 2
    assert boosts("bob") == 1

    clock.now += 30
    assert boosts.resolve("alice") == 2
    assert boosts.active() == {"alice": {"weight": 2.0, "remaining_ms": 30_000}}

    clock.now += 30
    assert boosts.resolve("alice") == 1
    assert boosts.active() == {}


def test_new_grant_replaces_instead_of_stacking() -> None:
    clock = FakeClock()
    boosts = BoostTable(clock=clock)
    boosts.grant("alice", weight=3, duration_ms=1000)
    boosts.grant("alice", weight=2, duration_ms=5000)

    assert boosts("alice") == 2
    clock.now += 2
    assert boosts("alice") == 2


def test_prune_and_revoke() -> None:
    clock = FakeClock()
    boosts = BoostTable(clock=clock)
    boosts.grant("alice", weight=2, duration_ms=1000)
    boosts.grant("bob", weight=2, duration_ms=10_000)

    clock.now += 5
    assert boosts.prune() == 1
    assert list(boosts.active()) == ["bob"]
    assert boosts.revoke("bob") is True
    assert boosts.revoke("bob") is False


@pytest.mark.parametrize(
    ("user", "weight", "duration_ms"),
    [
        ("", 2, 1000),
        ("alice", 0.5, 1000),
        ("alice", math.inf, 1000),
        ("alice", math.nan, 1000),
        ("alice", 2, 0),
    ],
)
def test_grant_rejects_bad_input(user, weight, duration_ms) -> None:
    with pytest.raises(ValueError):
        BoostTable().grant(user, weight=weight, duration_ms=duration_ms)


def test_effective_weight_is_max_of_base_and_resolver() -> None:
    configure_logging(level="ERROR", json_logs=True)
    logger = get_logger().bind(component="test-weights")

    assert effective_weight(user="u", base_weight=1, resolver=lambda u: 3, logger=logger) == 3
    assert effective_weight(user="u", base_weight=4, resolver=lambda u: 3, logger=logger) == 4
    assert effective_weight(user="u", base_weight=0.2, resolver=None, logger=logger) == 1


def test_effective_weight_ignores_broken_resolvers() -> None:
    configure_logging(level="ERROR", json_logs=True)
    logger = get_logger().bind(component="test-weights")

    def _raises(user: str) -> float:
        raise TimeoutError("slow")

    assert effective_weight(user="u", base_weight=2, resolver=_raises, logger=logger) == 2
    assert effective_weight(user="u", base_weight=2, resolver=lambda u: "lots", logger=logger) == 2  # type: ignore[arg-type,return-value]
    assert effective_weight(user="u", base_weight=2, resolver=lambda u: math.nan, logger=logger) == 2
    assert effective_weight(user="u", base_weight=1, resolver=lambda u: 0, logger=logger) == 1


@pytest.mark.parametrize("base", [math.inf, -math.inf, math.nan])
def test_effective_weight_rejects_non_finite_base(base) -> None:
    configure_logging(level="ERROR", json_logs=True)
    logger = get_logger().bind(component="test-weights")

    assert effective_weight(user="u", base_weight=base, resolver=None, logger=logger) == 1
    assert effective_weight(user="u", base_weight=base, resolver=lambda u: 2, logger=logger) == 2
