from __future__ import annotations

import asyncio
import time
from typing import Any

from ..domain.commands import NormalizedCommand
from ..domain.errors import DomainError


class OSCDispatchSink:
    """Turn a winning NormalizedCommand into emulator input over OSC.

    Every input goes `<prefix>/<MAPPED> 1`, waits, then `<prefix>/<MAPPED> 0`.
    The release is sent in `finally` and shielded from cancellation so a
    stopped engine never leaves a key held. Inputs are serialized: a long
    hold finishes before the next window's press starts.
    """

    def __init__(self, *, transport, controls, dispatch, logger) -> None:
        self._transport = transport
        self._controls = controls
        self._dispatch = dispatch
        self._logger = logger
        self._lock = asyncio.Lock()

    def _address_for(self, key: str | None) -> tuple[str, str]:
        mapped = self._controls.mapped_input(key) if key else None
        if mapped is None:
            raise DomainError(
                code="INVALID_ARGUMENT",
                message="Command key has no input mapping.",
                details={"key": key},
            )
        return mapped, f"{self._dispatch.address_prefix}/{mapped}"

    async def execute(self, command: NormalizedCommand, *, trace_id: str) -> dict[str, Any]:
        if not self._dispatch.enabled:
            self._logger.info("dispatch.skipped", trace_id=trace_id, command=command.label, reason="disabled")
            return {"dispatched": False, "command": command.to_dict()}

        if command.kind == "release_all":
            # Release jumps the queue: it is how chat un-sticks a long hold.
            return await self.release_all(trace_id=trace_id)

        if command.kind == "press":
            duration_ms = int(self._dispatch.press_ms)
        elif command.kind in ("hold", "momentum"):
            duration_ms = int(command.duration_ms or 0)
        else:
            raise DomainError(code="INVALID_ARGUMENT", message="Invalid commands cannot be dispatched.")

        mapped, address = self._address_for(command.key)

        async with self._lock:
            start = time.monotonic()
            try:
                await self._transport.send(address=address, value=1, trace_id=trace_id)
                await asyncio.sleep(max(0, duration_ms) / 1000)
            finally:
                await asyncio.shield(self._transport.send(address=address, value=0, trace_id=trace_id))
            elapsed_ms = int((time.monotonic() - start) * 1000)

        self._logger.info(
            "dispatch.executed",
            trace_id=trace_id,
            command=command.label,
            kind=command.kind,
            osc_address=address,
            duration_ms=duration_ms,
            intensity_percent=command.intensity_percent,
            elapsed_ms=elapsed_ms,
        )
        return {
            "dispatched": True,
            "command": command.to_dict(),
            "input": mapped,
            "osc_address": address,
            "duration_ms": duration_ms,
            "elapsed_ms": elapsed_ms,
        }

    async def release_all(self, *, trace_id: str) -> dict[str, Any]:
        addresses = sorted(
            {f"{self._dispatch.address_prefix}/{m}" for m in (*self._controls.analog.values(), *self._controls.buttons.values())}
        )
        await self._transport.send_many(((a, 0) for a in addresses), trace_id=trace_id)
        self._logger.info("dispatch.release_all", trace_id=trace_id, released=len(addresses))
        return {"dispatched": True, "command": {"kind": "release_all", "label": "release"}, "released": addresses}
