from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.config import ConfigDict


class SSESettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class HTTPSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    path: str = "/mcp"


class MCPSettings(BaseModel):
    transport: Literal["stdio", "sse", "http"] = "stdio"
    sse: SSESettings = Field(default_factory=SSESettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)


class OSCEndpoint(BaseModel):
    ip: str = "127.0.0.1"
    port: int = 9000

    @field_validator("port")
    @classmethod
    def _port_range(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("port must be in [1, 65535]")
        return v


class OSCReceiveSettings(BaseModel):
    enabled: bool = False
    ip: str = "127.0.0.1"
    port: int = 9001

    # Chat relay -> us
    chat_address: str = "/chat/message"
    boost_address: str = "/chat/boost"

    @field_validator("port")
    @classmethod
    def _port_range(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("port must be in [1, 65535]")
        return v


class OSCSettings(BaseModel):
    send: OSCEndpoint = Field(default_factory=OSCEndpoint)
    receive: OSCReceiveSettings = Field(default_factory=OSCReceiveSettings)
    osc_per_second: int = Field(60, ge=1, le=500)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = Field(True, alias="json")


def _lower_keys(mapping: dict[str, str]) -> dict[str, str]:
    return {str(k).strip().lower(): v for k, v in mapping.items()}


class ControlsSettings(BaseModel):
    """Action-key table and chat grammar knobs.

    `analog` and `buttons` map canonical action keys (what chat types) to the
    emulator input name (what the dispatch sink sends).
    """

    # Optional legacy JSON controls file (controls.gba.json style).
    file: Path | None = None

    analog: dict[str, str] = Field(
        default_factory=lambda: {"up": "UP", "down": "DOWN", "left": "LEFT", "right": "RIGHT"}
    )
    buttons: dict[str, str] = Field(
        default_factory=lambda: {
            "a": "X",
            "b": "Z",
            "l": "A",
            "r": "S",
            "start": "ENTER",
            "select": "BACKSPACE",
        }
    )
    aliases: dict[str, str] = Field(default_factory=dict)

    command_prefixes: list[str] = Field(default_factory=lambda: ["!", "/"], min_length=1)

    hold_default_ms: int = Field(500, ge=0)
    hold_min_ms: int = Field(100, ge=0)
    hold_max_ms: int = Field(5000, ge=1)

    momentum_directions: list[str] = Field(default_factory=lambda: ["up", "down", "left", "right"])
    # intensity threshold (percent) -> duration (ms)
    momentum_steps: dict[int, int] = Field(default_factory=lambda: {25: 100, 50: 200, 75: 300, 100: 400})

    @field_validator("analog", "buttons", "aliases")
    @classmethod
    def _normalize_keys(cls, v: dict[str, str]) -> dict[str, str]:
        return _lower_keys(v)

    @field_validator("command_prefixes")
    @classmethod
    def _normalize_prefixes(cls, v: list[str]) -> list[str]:
        # Matched against lower-cased chat text.
        prefixes = [p.strip().lower() for p in v]
        if not all(prefixes):
            raise ValueError("command_prefixes cannot contain empty strings")
        return prefixes

    @field_validator("momentum_directions")
    @classmethod
    def _normalize_directions(cls, v: list[str]) -> list[str]:
        return [d.strip().lower() for d in v]

    @field_validator("momentum_steps")
    @classmethod
    def _steps_non_empty(cls, v: dict[int, int]) -> dict[int, int]:
        if not v:
            raise ValueError("momentum_steps cannot be empty")
        for threshold, duration in v.items():
            if not (1 <= threshold <= 100):
                raise ValueError(f"momentum threshold must be in [1, 100], got {threshold}")
            if duration < 0:
                raise ValueError(f"momentum duration cannot be negative, got {duration}")
        return dict(sorted(v.items()))

    @model_validator(mode="after")
    def _check_tables(self) -> "ControlsSettings":
        actions = self.action_keys()
        if not actions:
            raise ValueError("controls must define at least one action key")

        overlap = set(self.analog) & set(self.buttons)
        if overlap:
            raise ValueError(f"action keys defined as both analog and button: {sorted(overlap)}")

        # Aliases are a single-level lookup; they must land on a real action.
        bad = {a: t for a, t in self.aliases.items() if str(t).strip().lower() not in actions}
        if bad:
            raise ValueError(f"aliases point at unknown action keys: {bad}")
        self.aliases = {a: str(t).strip().lower() for a, t in self.aliases.items()}

        if not (self.hold_min_ms <= self.hold_default_ms <= self.hold_max_ms):
            raise ValueError("hold_default_ms must be within [hold_min_ms, hold_max_ms]")

        unknown_dirs = [d for d in self.momentum_directions if d not in actions and d not in self.aliases]
        if unknown_dirs:
            raise ValueError(f"momentum directions are not action keys: {unknown_dirs}")
        return self

    def action_keys(self) -> set[str]:
        return set(self.analog) | set(self.buttons)

    def mapped_input(self, key: str) -> str | None:
        return self.analog.get(key) or self.buttons.get(key)


class VotingSettings(BaseModel):
    vote_duration_ms: int = Field(8000, ge=10, le=600_000)
    cooldown_ms: int = Field(1000, ge=0, le=60_000)

    # lazy: deadline armed by the first vote; immediate: armed when the window opens.
    arming: Literal["lazy", "immediate"] = "lazy"

    # None means every action key is votable.
    votable_keys: list[str] | None = None

    base_weight: float = Field(1.0, ge=1.0)
    history_size: int = Field(50, ge=1, le=10_000)

    @field_validator("votable_keys")
    @classmethod
    def _normalize_votable(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        return [k.strip().lower() for k in v]


class BoostSettings(BaseModel):
    default_weight: float = Field(2.0, ge=1.0, le=100.0)
    default_duration_ms: int = Field(60_000, ge=1, le=86_400_000)


class DispatchSettings(BaseModel):
    enabled: bool = True
    address_prefix: str = "/input"
    press_ms: int = Field(80, ge=20, le=1000)

    @field_validator("address_prefix")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith("/"):
            raise ValueError("address_prefix must start with '/'")
        return v.rstrip("/") or "/"


class Settings(BaseModel):
    mcp: MCPSettings = Field(default_factory=MCPSettings)
    osc: OSCSettings = Field(default_factory=OSCSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    controls: ControlsSettings = Field(default_factory=ControlsSettings)
    voting: VotingSettings = Field(default_factory=VotingSettings)
    boosts: BoostSettings = Field(default_factory=BoostSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)

    @model_validator(mode="after")
    def _votable_keys_exist(self) -> "Settings":
        if self.voting.votable_keys is None:
            return self
        unknown = sorted(set(self.voting.votable_keys) - self.controls.action_keys())
        if unknown:
            raise ValueError(f"voting.votable_keys contains unknown action keys: {unknown}")
        return self

    def votable_keys(self) -> frozenset[str]:
        if self.voting.votable_keys is None:
            return frozenset(self.controls.action_keys())
        return frozenset(self.voting.votable_keys)
