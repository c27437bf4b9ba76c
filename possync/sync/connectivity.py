"""
Connectivity state for the terminal.

The monitor holds a single online/offline flag. Whatever knows about the
network (a health-check probe, the host OS, a test) feeds it through
set_online() or probe(); interested components subscribe to transitions.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """Online/offline signal with change notifications."""

    def __init__(self, initially_online: bool = False):
        self._online = initially_online
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a callback invoked with the new state on every transition.

        Returns:
            A function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """
        Update the connectivity state.

        Listeners are called outside the lock and only when the state changes.

        Returns:
            True if this call changed the state
        """
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)

        logger.info("Terminal is online" if online else "Terminal went offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Error in connectivity listener: {e}")
        return True

    def probe(self, check: Callable[[], bool]) -> bool:
        """
        Run a health check and record its result.

        Any exception from the check counts as offline.

        Returns:
            The resulting online state
        """
        try:
            online = bool(check())
        except Exception as e:
            logger.debug(f"Connectivity check failed: {e}")
            online = False
        self.set_online(online)
        return online
