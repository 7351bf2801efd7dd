from __future__ import annotations

import json
from pathlib import Path
from typing import Any

# Legacy controls file field -> ControlsSettings field
_SCALAR_FIELDS: dict[str, str] = {
    "holdDefaultsMs": "hold_default_ms",
    "holdMinMs": "hold_min_ms",
    "holdMaxMs": "hold_max_ms",
}


def _as_str_map(value: Any, *, field: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError(f"controls file field {field!r} must be an object")
    out: dict[str, str] = {}
    for k, v in value.items():
        if not isinstance(v, str) or not v:
            raise ValueError(f"controls file field {field}.{k} must be a non-empty string")
        out[str(k)] = v
    return out


def load_controls_file(path: Path) -> dict[str, Any]:
    """Read a controls JSON file (controls.gba.json / controls.n64.json layout).

    Returns a dict shaped like the `controls` settings section so it can be
    merged underneath YAML/CLI values. Any problem raises: a deployment that
    names a controls file must not silently run with default mappings.
    """

    # Hand-edited files on Windows frequently carry a UTF-8 BOM.
    data = json.loads(path.read_text(encoding="utf-8-sig"))
    if not isinstance(data, dict):
        raise ValueError("controls file must be a JSON object")

    out: dict[str, Any] = {}

    for field in ("analog", "buttons", "aliases"):
        if field in data:
            out[field] = _as_str_map(data[field], field=field)

    for src, dst in _SCALAR_FIELDS.items():
        if src not in data:
            continue
        v = data[src]
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError(f"controls file field {src!r} must be an integer")
        out[dst] = v

    momentum = data.get("momentumConfig")
    if momentum is not None:
        if not isinstance(momentum, dict):
            raise ValueError("controls file field 'momentumConfig' must be an object")
        steps: dict[int, int] = {}
        for threshold, duration in momentum.items():
            try:
                steps[int(threshold)] = int(duration)
            except (TypeError, ValueError) as e:
                raise ValueError(f"invalid momentumConfig entry: {threshold!r}: {duration!r}") from e
        out["momentum_steps"] = steps

    directions = data.get("momentumDirections")
    if directions is not None:
        if not isinstance(directions, list) or not all(isinstance(d, str) for d in directions):
            raise ValueError("controls file field 'momentumDirections' must be a list of strings")
        out["momentum_directions"] = list(directions)

    return out
