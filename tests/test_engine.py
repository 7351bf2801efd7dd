from __future__ import annotations

import asyncio

import pytest
import structlog

from crowdplay.config.settings import Settings
from crowdplay.domain.commands import NormalizedCommand, hold, press
from crowdplay.domain.engine import VoteEngine, validate_base_weight
from crowdplay.domain.errors import DomainError
from crowdplay.domain.window import WindowClosed
from crowdplay.observability.logging import configure_logging, get_logger


class RecordingSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.commands: list[NormalizedCommand] = []
        self.trace_ids: list[str] = []
        self._fail = fail

    async def execute(self, command: NormalizedCommand, *, trace_id: str) -> dict:
        self.commands.append(command)
        self.trace_ids.append(trace_id)
        if self._fail:
            raise RuntimeError("emulator window not focused")
        return {"dispatched": True}


def _engine(*, sink=None, **voting) -> VoteEngine:
    configure_logging(level="ERROR", json_logs=True)
    settings = Settings.model_validate(
        {"voting": {"vote_duration_ms": 10_000, "cooldown_ms": 10, **voting}}
    )
    return VoteEngine(settings=settings, logger=get_logger().bind(component="test-engine"), dispatch_sink=sink)


@pytest.mark.asyncio
async def test_submit_vote_normalizes_and_tallies():
    engine = _engine()
    await engine.start()
    try:
        out = engine.submit_vote("!holdA 800", "alice")
        assert out.accepted
        assert out.reason == "accepted"
        assert out.vote_key == "a"
        assert out.weight == 1
        assert out.command == hold("a", 800)

        bad = engine.submit_vote("gg", "bob")
        assert not bad.accepted and bad.reason == "invalid"

        status = engine.status()
        assert status["running"] is True
        assert status["window"]["votes"] == {"a": 1}
        assert status["window"]["first_voters"] == {"a": "alice"}
        assert status["window"]["armed"] is True
        assert status["last_move"] is None
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_votes_rejected_before_start():
    engine = _engine()
    out = engine.submit_vote("!a", "alice")
    assert not out.accepted
    assert out.reason == "not_collecting"


@pytest.mark.asyncio
async def test_votable_keys_restrict_the_ballot():
    engine = _engine(votable_keys=["up", "down"])
    await engine.start()
    try:
        out = engine.submit_vote("!a", "alice")
        assert not out.accepted
        assert out.reason == "not_votable"
        assert engine.submit_vote("!up50", "alice").accepted
        assert engine.list_commands()["votable"] == ["down", "up"]
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_winner_is_dispatched_and_recorded():
    sink = RecordingSink()
    engine = _engine(sink=sink)
    await engine.start()
    try:
        engine.submit_vote("!up", "alice")
        engine.submit_vote("!up", "bob")
        engine.submit_vote("!down", "carol", 5)

        result = engine.force_advance()
        assert result["closed_window_id"] == 1
        assert result["winner"]["vote_key"] == "down"
        assert result["winner"]["first_voter"] == "carol"

        await engine.hub.drain(timeout_s=1)
        assert sink.commands == [press("down")]
        assert sink.trace_ids == ["window-1"]

        assert engine.last_move()["tally"] == {"up": 2, "down": 5}
        stats = engine.stats()
        assert stats["total_moves"] == 1
        assert stats["total_votes"] == 7
        assert stats["popular_commands"] == {"down": 1}
        assert [m["vote_key"] for m in engine.recent_moves(limit=5)["moves"]] == ["down"]
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_failed_dispatch_does_not_stall_voting():
    sink = RecordingSink(fail=True)
    engine = _engine(sink=sink)
    await engine.start()
    try:
        engine.submit_vote("!a", "alice")
        engine.force_advance()
        await engine.hub.drain(timeout_s=1)
        assert sink.commands == [press("a")]

        await asyncio.sleep(0.05)
        assert engine.window.state == "COLLECTING"
        assert engine.submit_vote("!b", "bob").accepted
        assert engine.stats()["total_moves"] == 1
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_release_bypasses_the_tally():
    sink = RecordingSink()
    engine = _engine(sink=sink)
    await engine.start()
    try:
        out = engine.submit_vote("!release", "alice")
        assert not out.accepted
        assert out.reason == "passthrough"
        assert engine.window.tally_snapshot() == {}
        assert engine.window.deadline is None

        await engine.hub.drain(timeout_s=1)
        assert [c.kind for c in sink.commands] == ["release_all"]
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_listeners_are_isolated():
    seen: list[str] = []

    def _broken(event: WindowClosed) -> None:
        raise RuntimeError("leaderboard down")

    async def _overlay(event: WindowClosed) -> None:
        seen.append(event.winner.label)

    engine = _engine()
    engine.subscribe(_broken, name="leaderboard")
    engine.subscribe(_overlay, name="overlay")
    assert engine.hub.listener_names() == ["history", "leaderboard", "overlay"]

    await engine.start()
    try:
        engine.submit_vote("!holdb 1200", "alice")
        engine.force_advance()
        await engine.hub.drain(timeout_s=1)
        assert seen == ["holdb 1200"]
        assert engine.stats()["total_moves"] == 1
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_boost_applies_as_max_weight():
    engine = _engine()
    await engine.start()
    try:
        granted = engine.grant_boost(user="alice", weight=3, duration_ms=60_000)
        assert granted == {"user": "alice", "weight": 3.0, "duration_ms": 60_000}
        assert list(engine.active_boosts()["boosts"]) == ["alice"]

        assert engine.submit_vote("!a", "alice", 1).weight == 3
        assert engine.submit_vote("!a", "bob", 1).weight == 1
        assert engine.submit_vote("!a", "carol", 4).weight == 4

        defaults = engine.grant_boost(user="dave")
        assert defaults["weight"] == 2.0
        assert defaults["duration_ms"] == 60_000
    finally:
        await engine.stop()


def test_grant_boost_validates() -> None:
    engine = _engine()
    with pytest.raises(DomainError) as ei:
        engine.grant_boost(user="alice", weight=0.5)
    assert ei.value.code == "INVALID_ARGUMENT"


def test_force_advance_requires_a_collecting_window() -> None:
    engine = _engine()
    with pytest.raises(DomainError) as ei:
        engine.force_advance()
    assert ei.value.code == "CONFLICT"
    assert ei.value.to_error_obj()["details"] == {"state": "IDLE"}


def test_recent_moves_rejects_non_positive_limit() -> None:
    with pytest.raises(DomainError):
        _engine().recent_moves(limit=0)


@pytest.mark.parametrize("value", [0, 0.5, float("nan"), float("inf"), True, "2"])
def test_validate_base_weight_rejects(value) -> None:
    with pytest.raises(DomainError):
        validate_base_weight(value)


def test_validate_base_weight_accepts_ints() -> None:
    assert validate_base_weight(3) == 3.0


@pytest.mark.asyncio
async def test_non_finite_base_weight_counts_as_one():
    engine = _engine()
    await engine.start()
    try:
        out = engine.submit_vote("!a", "mallory", float("inf"))
        assert out.accepted
        assert out.weight == 1
        assert engine.submit_vote("!b", "u1", 1).accepted
        assert engine.submit_vote("!b", "u2", 1).accepted
        assert engine.submit_vote("!a", "eve", float("nan")).weight == 1

        assert engine.window.tally_snapshot() == {"a": 2, "b": 2}
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_listener_tasks_see_window_id_in_log_context():
    seen: list[dict] = []

    async def _overlay(event: WindowClosed) -> None:
        seen.append(structlog.contextvars.get_contextvars())

    engine = _engine()
    engine.subscribe(_overlay, name="overlay")
    await engine.start()
    try:
        engine.submit_vote("!a", "alice")
        engine.force_advance()
        await engine.hub.drain(timeout_s=1)

        assert seen == [{"window_id": 1}]
        assert "window_id" not in structlog.contextvars.get_contextvars()
    finally:
        await engine.stop()
