"""Connectivity monitoring.

:class:`ConnectivityMonitor` probes a TCP endpoint on a timer and emits
``onlineChanged`` only when reachability flips.
"""
import logging
import socket
import threading
from typing import Optional

from PySide6 import QtCore


def probe(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to host:port can be opened within timeout."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as ex:
        logging.debug(f'Connectivity probe to {host}:{port} failed: {ex}')
        return False


class ConnectivityMonitor(QtCore.QObject):
    """Periodic reachability check of the remote ledger host.

    Args:
        host: Host to probe.
        port: TCP port to probe.
        timeout: Probe timeout in seconds.
        interval_seconds: Delay between probes when started.

    Signals:
        onlineChanged (bool): Emitted on offline/online transitions.
    """
    onlineChanged = QtCore.Signal(bool)

    def __init__(self, host: str, port: int = 443, timeout: float = 3.0, interval_seconds: int = 30,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.host = host
        self.port = port
        self.timeout = timeout

        self._online: Optional[bool] = None
        self._lock = threading.Lock()
        self._probe_thread: Optional[threading.Thread] = None

        self.timer = QtCore.QTimer(self)
        self.timer.setInterval(int(interval_seconds * 1000))
        self.timer.timeout.connect(self.check_async)

    @property
    def online(self) -> Optional[bool]:
        """Last known state, None before the first probe."""
        return self._online

    def start(self) -> None:
        self.check_async()
        self.timer.start()

    def stop(self) -> None:
        self.timer.stop()
        if self._probe_thread is not None:
            self._probe_thread.join(self.timeout + 1)

    def check(self) -> bool:
        """Probe now, update the state and emit on a transition.

        Returns:
            bool: True if the host is reachable.
        """
        result = probe(self.host, self.port, self.timeout)
        self.set_online(result)
        return result

    @QtCore.Slot()
    def check_async(self) -> None:
        """Run :meth:`check` on a short-lived thread unless a probe is already running."""
        if self._probe_thread is not None and self._probe_thread.is_alive():
            return
        self._probe_thread = threading.Thread(target=self.check, name='connectivity-probe', daemon=True)
        self._probe_thread.start()

    def set_online(self, online: bool) -> None:
        with self._lock:
            changed = online != self._online
            self._online = online
        if changed:
            logging.info(f'Connectivity changed: {"online" if online else "offline"}')
            self.onlineChanged.emit(online)
