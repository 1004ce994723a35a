from __future__ import annotations
"""
Two-state connectivity machine for the scanning station.

    offline --set_online(True)-->  online    fires on_online (sync trigger) once
    online  --set_online(False)--> offline   fires on_offline (notification only)

Repeating the current state is a no-op, so a burst of "still online" signals
never triggers more than one sync. There is no polling here: whoever owns the
network signal (transport outcomes, an OS hook, a test) calls set_online().
"""

import logging
import threading
from typing import Callable, List, Optional

ONLINE = "online"
OFFLINE = "offline"


class ConnectivityMonitor:
    def __init__(
        self,
        initial_online: bool,
        on_online: Optional[Callable[[], None]] = None,
        on_offline: Optional[Callable[[], None]] = None,
    ):
        self._online = bool(initial_online)
        self._on_online = on_online
        self._on_offline = on_offline
        self._lock = threading.Lock()
        self._log = logging.getLogger("scangate.connectivity")
        self.transitions: List[str] = []

    @property
    def online(self) -> bool:
        return self._online

    @property
    def state(self) -> str:
        return ONLINE if self._online else OFFLINE

    def set_online(self, online: bool) -> bool:
        """
        Feed one network-status signal. Returns True when it caused a transition.
        Callbacks run outside the lock, after the new state is visible.
        """
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            self.transitions.append(ONLINE if online else OFFLINE)

        self._log.info("connectivity_changed", extra={"state": self.state})
        cb = self._on_online if online else self._on_offline
        if cb is not None:
            try:
                cb()
            except Exception:
                self._log.exception("connectivity_callback_failed", extra={"state": self.state})
        return True
