from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from .commands import NormalizedCommand, describe_commands, normalize_command
from .errors import DomainError
from .events import ClosureListener, EventHub
from .history import MoveHistory
from .weights import BoostTable, WeightResolver
from .window import VoteWindow, WindowClosed

OutcomeReason = Literal["accepted", "invalid", "not_collecting", "not_votable", "passthrough"]


class DispatchSink(Protocol):
    async def execute(self, command: NormalizedCommand, *, trace_id: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class VoteOutcome:
    accepted: bool
    reason: OutcomeReason
    command: NormalizedCommand
    vote_key: str | None = None
    weight: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "command": self.command.to_dict(),
            "vote_key": self.vote_key,
            "weight": self.weight,
        }


class VoteEngine:
    """Host-facing facade over normalizer + vote window.

    Owns the closure hub (the window's single outbound callback), the move
    history and the boost table. `release` bypasses voting and goes straight
    to the dispatch sink.
    """

    def __init__(
        self,
        *,
        settings,
        logger,
        dispatch_sink: DispatchSink | None = None,
        weight_resolver: WeightResolver | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._controls = settings.controls
        self._logger = logger
        self._dispatch_sink = dispatch_sink

        self.boosts = BoostTable()
        self.history = MoveHistory(maxlen=settings.voting.history_size)
        self.hub = EventHub(logger=logger.bind(component="hub"))
        self.hub.subscribe(self.history, name="history")
        if dispatch_sink is not None:
            self.hub.subscribe(self._dispatch_winner, name="dispatch")

        self._window = VoteWindow(
            vote_duration_ms=settings.voting.vote_duration_ms,
            cooldown_ms=settings.voting.cooldown_ms,
            votable_keys=settings.votable_keys(),
            on_closed=self.hub,
            logger=logger.bind(component="window"),
            weight_resolver=weight_resolver or self.boosts,
            arming=settings.voting.arming,
            rng=rng,
        )
        self._running = False

    @property
    def window(self) -> VoteWindow:
        return self._window

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: ClosureListener, *, name: str | None = None) -> None:
        self.hub.subscribe(listener, name=name)

    # -----------------
    # Lifecycle
    # -----------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._window.start()
        self._logger.info(
            "voting.start",
            vote_duration_ms=self._settings.voting.vote_duration_ms,
            cooldown_ms=self._settings.voting.cooldown_ms,
            arming=self._settings.voting.arming,
            votable_keys=sorted(self._window.votable_keys),
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._window.stop()
        await self.hub.aclose()
        self._logger.info("voting.stop")

    # -----------------
    # Votes
    # -----------------

    def submit_vote(self, raw_text: str, user: str, base_weight: float | None = None) -> VoteOutcome:
        command = normalize_command(raw_text, self._controls)
        if not command.is_valid:
            return VoteOutcome(accepted=False, reason="invalid", command=command)

        if command.kind == "release_all":
            if not self._running:
                return VoteOutcome(accepted=False, reason="not_collecting", command=command)
            self._passthrough(command, user=user)
            return VoteOutcome(accepted=False, reason="passthrough", command=command)

        base = self._settings.voting.base_weight if base_weight is None else base_weight
        decision = self._window.add_vote(command, user, base)
        if not decision.accepted:
            self._logger.debug(
                "vote.rejected",
                user=user,
                command=command.label,
                reason=decision.reason,
                state=self._window.state,
            )
            return VoteOutcome(
                accepted=False,
                reason=decision.reason or "invalid",
                command=command,
                vote_key=decision.vote_key,
            )

        self._logger.info(
            "vote.accepted",
            window_id=self._window.window_id,
            user=user,
            command=command.label,
            vote_key=decision.vote_key,
            weight=decision.weight,
        )
        return VoteOutcome(
            accepted=True,
            reason="accepted",
            command=command,
            vote_key=decision.vote_key,
            weight=decision.weight,
        )

    def force_advance(self) -> dict[str, Any]:
        window_id = self._window.window_id
        if not self._window.close_now():
            raise DomainError(
                code="CONFLICT",
                message="No window is collecting votes; nothing to advance.",
                details={"state": self._window.state},
            )
        result = self._window.last_result
        produced = result is not None and result.window_id == window_id
        return {
            "closed_window_id": window_id,
            "winner": result.to_dict() if produced else None,
        }

    # -----------------
    # Boosts
    # -----------------

    def grant_boost(self, *, user: str, weight: float | None = None, duration_ms: int | None = None) -> dict[str, Any]:
        w = self._settings.boosts.default_weight if weight is None else weight
        d = self._settings.boosts.default_duration_ms if duration_ms is None else duration_ms
        try:
            self.boosts.grant(user, weight=w, duration_ms=d)
        except ValueError as e:
            raise DomainError(
                code="INVALID_ARGUMENT",
                message=str(e),
                details={"user": user, "weight": w, "duration_ms": d},
            ) from e
        self._logger.info("boost.granted", user=user, weight=w, duration_ms=d)
        return {"user": user, "weight": float(w), "duration_ms": int(d)}

    # -----------------
    # Queries
    # -----------------

    def status(self) -> dict[str, Any]:
        last = self._window.last_result
        return {
            "running": self._running,
            "window": self._window.snapshot(),
            "last_move": last.to_dict() if last is not None else None,
            "active_boosts": len(self.boosts.active()),
            "pending_dispatches": self.hub.pending_tasks(),
        }

    def last_move(self) -> dict[str, Any] | None:
        last = self._window.last_result
        return last.to_dict() if last is not None else None

    def recent_moves(self, *, limit: int = 10) -> dict[str, Any]:
        if limit < 1:
            raise DomainError(code="INVALID_ARGUMENT", message="limit must be >= 1.", details={"limit": limit})
        return {"moves": [m.to_dict() for m in self.history.items(limit=limit)]}

    def stats(self) -> dict[str, Any]:
        return self.history.stats()

    def active_boosts(self) -> dict[str, Any]:
        return {"boosts": self.boosts.active()}

    def list_commands(self) -> dict[str, Any]:
        catalogue = describe_commands(self._controls)
        catalogue["votable"] = sorted(self._window.votable_keys)
        return catalogue

    # -----------------
    # Dispatch
    # -----------------

    async def _dispatch_winner(self, event: WindowClosed) -> None:
        assert self._dispatch_sink is not None
        trace_id = f"window-{event.result.window_id}"
        try:
            await self._dispatch_sink.execute(event.winner, trace_id=trace_id)
        except Exception as e:  # noqa: BLE001
            # A failed dispatch never rolls back the tally or stalls voting.
            self._logger.error(
                "dispatch.failed",
                trace_id=trace_id,
                command=event.winner.label,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _passthrough(self, command: NormalizedCommand, *, user: str) -> None:
        self._logger.info("command.passthrough", user=user, command=command.label)
        if self._dispatch_sink is None:
            return
        trace_id = str(uuid.uuid4())

        async def _run() -> None:
            assert self._dispatch_sink is not None
            try:
                await self._dispatch_sink.execute(command, trace_id=trace_id)
            except Exception as e:  # noqa: BLE001
                self._logger.error("dispatch.failed", trace_id=trace_id, command=command.label, error=str(e))

        self.hub.spawn(_run(), name="passthrough")


def validate_base_weight(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise DomainError(code="INVALID_ARGUMENT", message="base_weight must be a finite number.")
    if value < 1:
        raise DomainError(code="INVALID_ARGUMENT", message="base_weight must be >= 1.", details={"base_weight": value})
    return float(value)
