from __future__ import annotations

from collections import Counter, deque
from typing import Any

from .window import LastMoveResult, WindowClosed


class MoveHistory:
    """Bounded record of executed moves, fed by the closure hub."""

    def __init__(self, *, maxlen: int = 50) -> None:
        self._moves: deque[LastMoveResult] = deque(maxlen=maxlen)

    def __call__(self, event: WindowClosed) -> None:
        self.record(event.result)

    def __len__(self) -> int:
        return len(self._moves)

    def record(self, result: LastMoveResult) -> None:
        self._moves.append(result)

    def last(self) -> LastMoveResult | None:
        return self._moves[-1] if self._moves else None

    def items(self, *, limit: int | None = None) -> list[LastMoveResult]:
        moves = list(self._moves)
        if limit is not None:
            moves = moves[-limit:] if limit > 0 else []
        return moves

    def stats(self) -> dict[str, Any]:
        if not self._moves:
            return {"total_moves": 0, "total_votes": 0, "average_votes": 0, "popular_commands": {}}

        total_moves = len(self._moves)
        total_votes = sum(m.total_votes for m in self._moves)
        popular = Counter(m.vote_key for m in self._moves)
        return {
            "total_moves": total_moves,
            "total_votes": total_votes,
            "average_votes": round(total_votes / total_moves, 2),
            "popular_commands": dict(popular.most_common()),
        }
