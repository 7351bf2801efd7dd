from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pythonosc.udp_client import SimpleUDPClient


@dataclass(frozen=True)
class OSCOutboundMessage:
    address: str
    value: Any
    trace_id: str
    created_at: float


class _Pacer:
    """Space sends at least 1/rate apart.

    Emulator input bridges poll their socket; bursts of 1/0 pairs closer than
    a frame apart get merged and the press is lost. Pacing delays, it never drops.
    """

    def __init__(self, *, per_second: int) -> None:
        self._interval_s = 1.0 / per_second
        self._next_at = 0.0

    async def wait(self) -> None:
        now = time.monotonic()
        slot = max(now, self._next_at)
        self._next_at = slot + self._interval_s
        if slot > now:
            await asyncio.sleep(slot - now)


class OSCTransport:
    """Ordered, paced OSC UDP sender towards the emulator input bridge.

    A single sender task drains the queue, so messages leave in the order
    they were queued (a key's 0 never overtakes its 1).
    """

    def __init__(
        self,
        *,
        send_ip: str,
        send_port: int,
        osc_per_second: int,
        logger,
        queue_maxsize: int = 1024,
    ) -> None:
        self._client = SimpleUDPClient(send_ip, send_port)
        self._target = f"{send_ip}:{send_port}"
        self._logger = logger
        self._queue: asyncio.Queue[OSCOutboundMessage] = asyncio.Queue(maxsize=queue_maxsize)
        self._pacer = _Pacer(per_second=osc_per_second)
        self._task: asyncio.Task[None] | None = None

        self._sent = 0
        self._failed = 0
        self._last_sent_at: float | None = None

    def stats(self) -> dict[str, Any]:
        return {
            "target": self._target,
            "sent": self._sent,
            "failed": self._failed,
            "queue_depth": self._queue.qsize(),
            "last_sent_ms_ago": (
                None if self._last_sent_at is None else int((time.monotonic() - self._last_sent_at) * 1000)
            ),
        }

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="crowdplay-osc-sender")
        self._logger.info("osc.sender.start", target=self._target)

    async def close(self, *, drain_timeout_s: float = 1.0) -> None:
        if self._task is None:
            return
        # Queued releases still go out.
        await self.flush(timeout_s=drain_timeout_s)
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._logger.info("osc.sender.stop", **self.stats())

    async def send(self, *, address: str, value: Any, trace_id: str) -> None:
        await self._queue.put(
            OSCOutboundMessage(address=address, value=value, trace_id=trace_id, created_at=time.monotonic())
        )

    async def send_many(self, messages: Iterable[tuple[str, Any]], *, trace_id: str) -> int:
        n = 0
        for address, value in messages:
            await self.send(address=address, value=value, trace_id=trace_id)
            n += 1
        return n

    async def flush(self, *, timeout_s: float = 2.0) -> bool:
        """Wait until everything queued so far has been sent. False on timeout."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout_s)
        except asyncio.TimeoutError:
            self._logger.warning("osc.flush_timeout", queue_depth=self._queue.qsize())
            return False
        return True

    async def _run(self) -> None:
        while True:
            msg = await self._queue.get()
            try:
                await self._pacer.wait()
                self._client.send_message(msg.address, msg.value)
                self._sent += 1
                self._last_sent_at = time.monotonic()
                self._logger.debug(
                    "osc.send",
                    trace_id=msg.trace_id,
                    osc_address=msg.address,
                    osc_value=msg.value,
                    queued_ms=int((self._last_sent_at - msg.created_at) * 1000),
                )
            except OSError as e:
                self._failed += 1
                self._logger.warning("osc.send_failed", trace_id=msg.trace_id, osc_address=msg.address, error=str(e))
            finally:
                self._queue.task_done()
