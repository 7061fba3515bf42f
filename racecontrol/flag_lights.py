# racecontrol/flag_lights.py
# -----------------------------------------------------------------------------
# Race control → track lights (OSC OUT)
# Listens for flag status events and sends OSC frames (UDP unicast) to the
# lighting controller. Uses python-osc's SimpleUDPClient (sync, tiny, reliable).
# Frames go out on one worker thread so send repeats never hold up the engine;
# a single worker keeps them in publish order.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from pythonosc.udp_client import SimpleUDPClient

from .broadcast import Broadcaster
from .constants import Events

log = logging.getLogger("racecontrol.lights")


class OscFlagLights(Broadcaster):
    def __init__(self, cfg: Optional[Dict[str, Any]]):
        # cfg structure:
        # integrations.lighting.osc_out: { enabled, host, port, send_repeat, addresses{ flag{...}, blackout } }
        cfg = cfg or {}
        self.enabled = bool(cfg.get("enabled"))
        self.host = cfg.get("host", "127.0.0.1")
        self.port = int(cfg.get("port", 9000))

        rep = cfg.get("send_repeat") or {}
        self.repeat_count = int(rep.get("count", 1))        # e.g. 2 -> send twice
        self.repeat_interval = float(rep.get("interval_ms", 0)) / 1000.0

        addrs = cfg.get("addresses") or {}
        self.addr_flag: Dict[str, str] = addrs.get("flag") or {}   # {"green": "/race/flag/green", ...}
        self.addr_blackout: str = addrs.get("blackout", "/race/blackout")

        self._client: Optional[SimpleUDPClient] = None
        self._worker: Optional[ThreadPoolExecutor] = None
        self._current: Optional[str] = None

    def start(self) -> None:
        if not self.enabled:
            return
        if self._client is None:
            self._client = SimpleUDPClient(self.host, self.port)
            log.info("osc_out_ready", extra={"host": self.host, "port": self.port})
        if self._worker is None:
            self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="osc-out")

    def stop(self) -> None:
        """Darken the track, drain pending frames, drop the client."""
        if self._worker is not None:
            if self._current:
                self.send_flag(self._current, on=False)
            self.send_blackout(True)
            self._worker.shutdown(wait=True)
            self._worker = None
        self._current = None
        self._client = None

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every frame queued so far has been sent."""
        if self._worker is not None:
            self._worker.submit(lambda: None).result(timeout)

    # --------------------- internal helpers ---------------------

    def _enqueue(self, path: str, value: float) -> None:
        if not self.enabled or self._worker is None:
            return
        self._worker.submit(self._send, path, value)

    def _send(self, path: str, value: float) -> None:
        """Fire-and-forget with optional repeats for UDP resiliency."""
        client = self._client
        if client is None:
            return
        sends = max(1, self.repeat_count)
        for i in range(sends):
            try:
                client.send_message(path, float(value))
            except OSError as ex:
                # Lighting offline must never stop race control.
                log.warning("osc_send_failed", extra={"path": path, "err": str(ex)})
                return
            if i + 1 < sends and self.repeat_interval > 0:
                time.sleep(self.repeat_interval)

    # ----------------------- public API -----------------------

    def send_flag(self, name: str, on: bool = True) -> None:
        """Queue the path mapped to this flag name; value 1.0 = ON, 0.0 = OFF."""
        path = self.addr_flag.get(name.lower())
        if not path:
            return
        self._enqueue(path, 1.0 if on else 0.0)

    def send_blackout(self, enabled: bool) -> None:
        self._enqueue(self.addr_blackout, 1.0 if enabled else 0.0)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        if event != Events.FLAG_STATUS_UPDATE:
            return
        flag = str(payload.get("flag") or "").lower()
        if not flag or flag == self._current:
            return
        if self._current:
            self.send_flag(self._current, on=False)
        self.send_flag(flag, on=True)
        self._current = flag
