from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from .commands import NormalizedCommand
from .tally import VoteTally
from .weights import WeightResolver, effective_weight

WindowState = Literal["IDLE", "COLLECTING", "CLOSING"]
ArmingPolicy = Literal["lazy", "immediate"]
RejectReason = Literal["invalid", "not_collecting", "not_votable"]


@dataclass(frozen=True)
class LastMoveResult:
    window_id: int
    command: NormalizedCommand
    vote_key: str
    votes: float
    total_votes: float
    first_voter: str
    tally: dict[str, float]
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_id": self.window_id,
            "command": self.command.to_dict(),
            "vote_key": self.vote_key,
            "votes": self.votes,
            "total_votes": self.total_votes,
            "first_voter": self.first_voter,
            "tally": dict(self.tally),
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass(frozen=True)
class WindowClosed:
    """Payload of the single outbound notification, once per window with a winner."""

    result: LastMoveResult
    first_voters: dict[str, str] = field(default_factory=dict)

    @property
    def winner(self) -> NormalizedCommand:
        return self.result.command

    @property
    def tally(self) -> dict[str, float]:
        return self.result.tally

    @property
    def first_voter(self) -> str:
        return self.result.first_voter


@dataclass(frozen=True)
class VoteDecision:
    accepted: bool
    vote_key: str | None = None
    weight: float | None = None
    reason: RejectReason | None = None


class VoteWindow:
    """Vote window lifecycle: IDLE -> COLLECTING -> CLOSING -> COLLECTING ...

    - The deadline is a cancellable `call_later` handle owned by the window.
      With lazy arming it is armed by the first accepted vote, so quiet chat
      does not burn window time.
    - `add_vote` never awaits; on a single event loop calls are applied one
      at a time in arrival order.
    - `on_closed` is called synchronously once per window with a winner.
      Whatever it raises is logged; the next window starts regardless.
    """

    def __init__(
        self,
        *,
        vote_duration_ms: int,
        cooldown_ms: int,
        votable_keys: Iterable[str],
        on_closed: Callable[[WindowClosed], Any],
        logger,
        weight_resolver: WeightResolver | None = None,
        arming: ArmingPolicy = "lazy",
        rng: random.Random | None = None,
    ) -> None:
        if vote_duration_ms <= 0:
            raise ValueError("vote_duration_ms must be positive")
        if cooldown_ms < 0:
            raise ValueError("cooldown_ms cannot be negative")

        self._vote_duration_s = vote_duration_ms / 1000.0
        self._cooldown_s = cooldown_ms / 1000.0
        self._votable = frozenset(votable_keys)
        self._on_closed = on_closed
        self._logger = logger
        self._weight_resolver = weight_resolver
        self._arming: ArmingPolicy = arming
        self._rng = rng or random.Random()

        self._state: WindowState = "IDLE"
        self._tally = VoteTally()
        self._window_id = 0

        self._loop: asyncio.AbstractEventLoop | None = None
        self._deadline_handle: asyncio.TimerHandle | None = None
        self._cooldown_handle: asyncio.TimerHandle | None = None

        self._last_result: LastMoveResult | None = None

    # -----------------
    # Introspection
    # -----------------

    @property
    def state(self) -> WindowState:
        return self._state

    @property
    def window_id(self) -> int:
        return self._window_id

    @property
    def votable_keys(self) -> frozenset[str]:
        return self._votable

    @property
    def deadline(self) -> float | None:
        """Loop time at which the current window closes, None until armed."""
        if self._deadline_handle is None:
            return None
        return self._deadline_handle.when()

    @property
    def last_result(self) -> LastMoveResult | None:
        return self._last_result

    def time_remaining_ms(self) -> int | None:
        deadline = self.deadline
        if deadline is None or self._loop is None:
            return None
        return max(0, int((deadline - self._loop.time()) * 1000))

    def tally_snapshot(self) -> dict[str, float]:
        return self._tally.snapshot()

    def first_voters(self) -> dict[str, str]:
        return self._tally.first_voters()

    def pending_command(self, vote_key: str) -> NormalizedCommand | None:
        return self._tally.command_for(vote_key)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state,
            "window_id": self._window_id,
            "arming": self._arming,
            "armed": self._deadline_handle is not None,
            "time_remaining_ms": self.time_remaining_ms(),
            "votes": self._tally.snapshot(),
            "total_votes": self._tally.total(),
            "first_voters": self._tally.first_voters(),
        }

    # -----------------
    # Lifecycle
    # -----------------

    def start(self) -> None:
        """Open the first window. Must be called from the running event loop."""
        if self._state != "IDLE":
            return
        self._loop = asyncio.get_running_loop()
        self._begin_collecting()

    def stop(self) -> None:
        """Cancel timers and discard the in-flight tally. Idempotent."""
        was = self._state
        self._cancel_deadline()
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None
        discarded = self._tally.total()
        self._tally.clear()
        self._state = "IDLE"
        if was != "IDLE":
            self._logger.info("window.stopped", window_id=self._window_id, discarded_votes=discarded)

    def close_now(self) -> bool:
        """Operator force-advance: close a collecting window immediately."""
        if self._state != "COLLECTING":
            return False
        self._logger.info("window.force_advance", window_id=self._window_id)
        self._close()
        return True

    # -----------------
    # Votes
    # -----------------

    def add_vote(self, command: NormalizedCommand, user: str, base_weight: float = 1.0) -> VoteDecision:
        if self._state != "COLLECTING":
            return VoteDecision(accepted=False, reason="not_collecting")
        if not command.is_valid:
            return VoteDecision(accepted=False, reason="invalid")

        vote_key = command.vote_key
        if vote_key is None or vote_key not in self._votable:
            return VoteDecision(accepted=False, vote_key=vote_key, reason="not_votable")

        weight = effective_weight(
            user=user,
            base_weight=base_weight,
            resolver=self._weight_resolver,
            logger=self._logger,
        )

        first_of_window = self._tally.is_empty
        self._tally.add(vote_key=vote_key, command=command, user=user, weight=weight)

        if first_of_window and self._deadline_handle is None:
            self._arm_deadline()
            self._logger.info(
                "window.armed",
                window_id=self._window_id,
                vote_duration_ms=int(self._vote_duration_s * 1000),
            )

        self._logger.debug(
            "vote.accepted",
            window_id=self._window_id,
            vote_key=vote_key,
            command=command.label,
            user=user,
            weight=weight,
        )
        return VoteDecision(accepted=True, vote_key=vote_key, weight=weight)

    # -----------------
    # Internals
    # -----------------

    def _begin_collecting(self) -> None:
        self._cooldown_handle = None
        self._tally.clear()
        self._window_id += 1
        self._state = "COLLECTING"
        assert self._loop is not None
        if self._arming == "immediate":
            self._arm_deadline()
        self._logger.info("window.open", window_id=self._window_id, arming=self._arming)

    def _arm_deadline(self) -> None:
        self._cancel_deadline()
        assert self._loop is not None
        self._deadline_handle = self._loop.call_later(self._vote_duration_s, self._on_deadline)

    def _cancel_deadline(self) -> None:
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None

    def _on_deadline(self) -> None:
        self._deadline_handle = None
        if self._state != "COLLECTING":
            return
        self._close()

    def _close(self) -> None:
        self._state = "CLOSING"
        self._cancel_deadline()

        tally = self._tally.snapshot()
        winner_key = self._tally.winner(self._rng)

        if winner_key is None:
            self._logger.info("window.empty", window_id=self._window_id)
        else:
            command = self._tally.command_for(winner_key)
            first_voter = self._tally.first_voter(winner_key)
            assert command is not None and first_voter is not None

            leaders = self._tally.leaders()
            if len(leaders) > 1:
                self._logger.info("window.tie", window_id=self._window_id, tied=sorted(leaders), chosen=winner_key)

            result = LastMoveResult(
                window_id=self._window_id,
                command=command,
                vote_key=winner_key,
                votes=tally[winner_key],
                total_votes=sum(tally.values()),
                first_voter=first_voter,
                tally=tally,
                timestamp_ms=int(time.time() * 1000),
            )
            self._last_result = result
            self._logger.info(
                "window.closed",
                window_id=self._window_id,
                winner=command.label,
                votes=result.votes,
                total_votes=result.total_votes,
                first_voter=first_voter,
            )

            # Listener logs (and tasks they spawn) inherit window_id.
            with structlog.contextvars.bound_contextvars(window_id=self._window_id):
                try:
                    self._on_closed(WindowClosed(result=result, first_voters=self._tally.first_voters()))
                except Exception as e:  # noqa: BLE001
                    self._logger.exception("window.notify_failed", error=str(e))

        # on_closed may have stopped us.
        if self._state != "CLOSING":
            return

        assert self._loop is not None
        self._cooldown_handle = self._loop.call_later(self._cooldown_s, self._begin_collecting)
