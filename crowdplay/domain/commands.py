from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from ..config.settings import ControlsSettings

CommandKind = Literal["press", "hold", "momentum", "release_all", "invalid"]

_RELEASE_BODY = "release"
_HOLD_RE = re.compile(r"^hold\s*([a-z]+)(?:\s+(\d+))?$")
_MOMENTUM_RE = re.compile(r"^([a-z]+)(\d{1,3})$")

# Longer digit strings are clamped instead of parsed.
_MAX_DURATION_DIGITS = 9


@dataclass(frozen=True)
class NormalizedCommand:
    kind: CommandKind
    key: str | None = None
    duration_ms: int | None = None
    intensity_percent: int | None = None
    # Original chat text, for display only.
    text: str = field(default="", compare=False)

    @property
    def is_valid(self) -> bool:
        return self.kind != "invalid"

    @property
    def vote_key(self) -> str | None:
        """Tally bucket for this command.

        Holds and momentum collapse onto their base key: `!holda 800` and `!a`
        are the same voting option, the hold is a dispatch-time refinement.
        """
        if self.kind in ("press", "hold", "momentum"):
            return self.key
        return None

    @property
    def label(self) -> str:
        if self.kind == "press":
            return str(self.key)
        if self.kind == "hold":
            return f"hold{self.key} {self.duration_ms}"
        if self.kind == "momentum":
            return f"{self.key}{self.intensity_percent}"
        if self.kind == "release_all":
            return _RELEASE_BODY
        return "invalid"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind, "label": self.label}
        if self.key is not None:
            d["key"] = self.key
        if self.duration_ms is not None:
            d["duration_ms"] = self.duration_ms
        if self.intensity_percent is not None:
            d["intensity_percent"] = self.intensity_percent
        return d


def press(key: str, *, text: str = "") -> NormalizedCommand:
    return NormalizedCommand(kind="press", key=key, text=text)


def hold(key: str, duration_ms: int, *, text: str = "") -> NormalizedCommand:
    return NormalizedCommand(kind="hold", key=key, duration_ms=duration_ms, text=text)


def momentum(key: str, intensity_percent: int, duration_ms: int, *, text: str = "") -> NormalizedCommand:
    return NormalizedCommand(
        kind="momentum",
        key=key,
        duration_ms=duration_ms,
        intensity_percent=intensity_percent,
        text=text,
    )


def _invalid(text: Any) -> NormalizedCommand:
    return NormalizedCommand(kind="invalid", text=text if isinstance(text, str) else "")


def resolve_key(name: str, controls: ControlsSettings) -> str | None:
    """Single-level alias lookup, then existence check against the action table."""
    resolved = controls.aliases.get(name, name)
    if resolved in controls.analog or resolved in controls.buttons:
        return resolved
    return None


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


def momentum_duration_ms(intensity_percent: int, steps: dict[int, int]) -> int:
    """Duration of the smallest band whose threshold >= intensity (else the largest band)."""
    thresholds = sorted(steps)
    for threshold in thresholds:
        if intensity_percent <= threshold:
            return steps[threshold]
    return steps[thresholds[-1]]


def _strip_prefix(text: str, prefixes: list[str]) -> str | None:
    for prefix in sorted(prefixes, key=len, reverse=True):
        if prefix and text.startswith(prefix):
            return text[len(prefix):]
    return None


def normalize_command(text: Any, controls: ControlsSettings) -> NormalizedCommand:
    """Parse a raw chat message into a NormalizedCommand.

    Total: any input yields exactly one command kind, unrecognized input is
    `invalid` (callers ignore it). Grammars are tried in order: release,
    hold, momentum, plain press.
    """

    if not isinstance(text, str):
        return _invalid(text)

    msg = text.strip().lower()
    body = _strip_prefix(msg, controls.command_prefixes)
    if not body:
        return _invalid(text)

    if body == _RELEASE_BODY:
        return NormalizedCommand(kind="release_all", text=text)

    m = _HOLD_RE.match(body)
    if m:
        key = resolve_key(m.group(1), controls)
        if key is None:
            return _invalid(text)
        digits = m.group(2)
        if digits is None:
            duration = controls.hold_default_ms
        elif len(digits) > _MAX_DURATION_DIGITS:
            duration = controls.hold_max_ms
        else:
            duration = _clamp(int(digits), controls.hold_min_ms, controls.hold_max_ms)
        return hold(key, duration, text=text)

    m = _MOMENTUM_RE.match(body)
    if m and m.group(1) in controls.momentum_directions:
        key = resolve_key(m.group(1), controls)
        if key is None:
            return _invalid(text)
        # !up0 clamps to 1 rather than being rejected.
        intensity = _clamp(int(m.group(2)), 1, 100)
        return momentum(key, intensity, momentum_duration_ms(intensity, controls.momentum_steps), text=text)

    key = resolve_key(body, controls)
    if key is not None:
        return press(key, text=text)

    return _invalid(text)


def describe_commands(controls: ControlsSettings) -> dict[str, Any]:
    """Command catalogue for help/overlay display."""
    prefix = controls.command_prefixes[0]
    return {
        "analog": sorted(controls.analog),
        "buttons": sorted(controls.buttons),
        "aliases": dict(sorted(controls.aliases.items())),
        "special": [_RELEASE_BODY],
        "prefixes": list(controls.command_prefixes),
        "hold": {
            "default_ms": controls.hold_default_ms,
            "min_ms": controls.hold_min_ms,
            "max_ms": controls.hold_max_ms,
        },
        "momentum": {
            "directions": list(controls.momentum_directions),
            "levels": {str(k): v for k, v in controls.momentum_steps.items()},
        },
        "examples": {
            "hold": [f"{prefix}holda", f"{prefix}holdb 1000", f"{prefix}holdleft 500"],
            "momentum": [f"{prefix}up25", f"{prefix}left50", f"{prefix}right100"],
        },
    }
