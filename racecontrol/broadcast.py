"""
racecontrol/broadcast.py
------------------------
Push side of race control. The engine calls `publish(event, payload)` after
every state change; fan-out to terminals is the gateway's job.

- SseBroadcaster: one asyncio.Queue per connected terminal (Server-Sent Events).
  publish() is safe from any thread (the session timer fires on its own
  thread), hopping onto the event loop with call_soon_threadsafe.
- FanoutBroadcaster: send to several gateways (SSE + track lights).
- NullBroadcaster: headless use.

Publishing is fire-and-forget: a gateway failure is logged, never raised into
the engine. Terminals re-render idempotently from whatever payload arrives.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Tuple

log = logging.getLogger("racecontrol.broadcast")

Message = Tuple[str, Dict[str, Any]]


class Broadcaster(ABC):
    @abstractmethod
    def publish(self, event: str, payload: Dict[str, Any]) -> None: ...


class NullBroadcaster(Broadcaster):
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        pass


class FanoutBroadcaster(Broadcaster):
    def __init__(self, targets: Iterable[Broadcaster]):
        self.targets: List[Broadcaster] = list(targets)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        for target in self.targets:
            try:
                target.publish(event, payload)
            except Exception:
                log.exception("publish_failed", extra={"event": event, "target": type(target).__name__})


def format_sse(event: str, payload: Dict[str, Any]) -> str:
    """One Server-Sent Events frame."""
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


class SseBroadcaster(Broadcaster):
    def __init__(self, queue_size: int = 256):
        self.queue_size = int(queue_size)
        self._lock = threading.Lock()
        self._listeners: List[Tuple[asyncio.Queue, asyncio.AbstractEventLoop]] = []

    def subscribe(self) -> "asyncio.Queue[Message]":
        """Register the calling coroutine's terminal. Must run inside the event loop."""
        q: "asyncio.Queue[Message]" = asyncio.Queue(maxsize=self.queue_size)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._listeners.append((q, loop))
        log.info("sse_subscribe", extra={"listeners": self.listener_count})
        return q

    def unsubscribe(self, q: "asyncio.Queue[Message]") -> None:
        with self._lock:
            self._listeners = [(lq, lp) for (lq, lp) in self._listeners if lq is not q]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for q, loop in listeners:
            if loop.is_closed():
                self.unsubscribe(q)
                continue
            loop.call_soon_threadsafe(self._offer, q, (event, payload))

    @staticmethod
    def _offer(q: "asyncio.Queue[Message]", msg: Message) -> None:
        # slow terminal: drop its oldest frame rather than block race control
        if q.full():
            try:
                q.get_nowait()
            except asyncio.QueueEmpty:
                pass
        q.put_nowait(msg)
