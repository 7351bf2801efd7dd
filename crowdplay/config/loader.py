from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .controls_file import load_controls_file
from .settings import Settings


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    config_path: Path | None
    controls_path: Path | None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)  # type: ignore[arg-type]
        else:
            out[k] = v
    return out


def _detect_default_config_path(project_root: Path) -> Path | None:
    candidates = [project_root / "config.yaml", project_root / "config" / "config.yaml"]
    for p in candidates:
        if p.exists() and p.is_file():
            return p
    return None


def _resolve_relative(path: Path, *, base: Path) -> Path:
    path = path.expanduser()
    return path if path.is_absolute() else base / path


def load_settings(*, project_root: Path, config_path: Path | None, cli_overrides: dict[str, Any]) -> LoadedSettings:
    """Load YAML + CLI overrides (+ optional controls file) into validated Settings.

    Precedence: defaults < controls file < YAML < CLI. An explicitly requested
    config or controls file that cannot be read is an error.
    """

    if config_path is not None and not config_path.is_file():
        raise FileNotFoundError(f"config file not found: {config_path}")
    resolved_path = config_path or _detect_default_config_path(project_root)

    yaml_data: dict[str, Any] = {}
    if resolved_path is not None:
        raw = yaml.safe_load(resolved_path.read_text(encoding="utf-8"))
        if raw is not None and not isinstance(raw, dict):
            raise ValueError(f"config file must contain a mapping: {resolved_path}")
        yaml_data = raw or {}

    merged = _deep_merge(yaml_data, cli_overrides)

    controls_path: Path | None = None
    controls_raw = merged.get("controls")
    if isinstance(controls_raw, dict) and controls_raw.get("file"):
        base = resolved_path.parent if resolved_path is not None else project_root
        controls_path = _resolve_relative(Path(controls_raw["file"]), base=base)
        if not controls_path.is_file():
            raise FileNotFoundError(f"controls file not found: {controls_path}")
        from_file = load_controls_file(controls_path)
        merged["controls"] = _deep_merge(from_file, {**controls_raw, "file": str(controls_path)})

    settings = Settings.model_validate(merged)
    return LoadedSettings(settings=settings, config_path=resolved_path, controls_path=controls_path)
