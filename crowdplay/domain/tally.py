from __future__ import annotations

import random

from .commands import NormalizedCommand


class VoteTally:
    """Weighted votes for one window.

    Per vote-key we keep the accumulated weight, the first voter and the
    weight of every command variant voted into that bucket (`a`, `holda 800`,
    `holda 1200` all land in `a`). The three mappings always share one key set.
    """

    def __init__(self) -> None:
        self._weights: dict[str, float] = {}
        self._first_voter: dict[str, str] = {}
        # vote_key -> {variant: weight}; dict order doubles as last-voted order.
        self._variants: dict[str, dict[NormalizedCommand, float]] = {}

    def __len__(self) -> int:
        return len(self._weights)

    def __contains__(self, vote_key: object) -> bool:
        return vote_key in self._weights

    @property
    def is_empty(self) -> bool:
        return not self._weights

    def clear(self) -> None:
        self._weights.clear()
        self._first_voter.clear()
        self._variants.clear()

    def add(self, *, vote_key: str, command: NormalizedCommand, user: str, weight: float) -> bool:
        """Add weight to a bucket. Returns True if this was the bucket's first vote."""
        first = vote_key not in self._weights
        if first:
            self._weights[vote_key] = 0.0
            self._first_voter[vote_key] = user
            self._variants[vote_key] = {}

        self._weights[vote_key] += weight

        variants = self._variants[vote_key]
        # Re-insert so the most recently voted variant sorts last.
        variants[command] = variants.pop(command, 0.0) + weight
        return first

    def weight(self, vote_key: str) -> float:
        return self._weights.get(vote_key, 0.0)

    def total(self) -> float:
        return sum(self._weights.values())

    def first_voter(self, vote_key: str) -> str | None:
        return self._first_voter.get(vote_key)

    def command_for(self, vote_key: str) -> NormalizedCommand | None:
        """The command to dispatch for a bucket.

        The heaviest variant wins; on equal weight the most recently voted
        variant is used. Neither the first nor the last vote alone decides:
        one `!b` typed early (or late) must not turn twenty `!holdb 1200`
        votes into a tap.
        """
        variants = self._variants.get(vote_key)
        if not variants:
            return None
        best: NormalizedCommand | None = None
        best_weight = -1.0
        for command, w in variants.items():
            if w >= best_weight:
                best, best_weight = command, w
        return best

    def snapshot(self) -> dict[str, float]:
        return dict(self._weights)

    def first_voters(self) -> dict[str, str]:
        return dict(self._first_voter)

    def leaders(self) -> list[str]:
        if not self._weights:
            return []
        top = max(self._weights.values())
        return [k for k, w in self._weights.items() if w == top]

    def winner(self, rng: random.Random | None = None) -> str | None:
        """Vote-key with the most weight; ties are broken uniformly at random."""
        leaders = self.leaders()
        if not leaders:
            return None
        if len(leaders) == 1:
            return leaders[0]
        return (rng or random).choice(leaders)
