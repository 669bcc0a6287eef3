"""
Background notification listener.

One daemon thread per connector polls the socket while the connection is
idle (READY) and dispatches NotificationResponse, NoticeResponse and
ParameterStatus messages. Synchronous exchanges pause it through
``block()``: the pause does not return until the thread is out of its read
cycle, and the thread stays parked until every block is released.
"""

import threading
from contextlib import contextmanager

import structlog

from . import states
from .errors import PGWireError
from .states import Phase

logger = structlog.get_logger()


class NotificationListener:
    """Pause/acknowledge handshake around a socket polling thread"""

    def __init__(self, connector, poll_interval: float = 0.05):
        self._connector = connector
        self._poll_interval = poll_interval
        self._cond = threading.Condition()
        self._pause_count = 0
        self._reading = False
        self._parked = False
        self._stopped = False
        self._thread = threading.Thread(
            target=self._run,
            name=f"pgwire-notify-{connector.connection_id}",
            daemon=True,
        )

    @property
    def thread(self) -> threading.Thread:
        return self._thread

    @property
    def parked(self) -> bool:
        with self._cond:
            return self._parked

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()
        logger.debug("Notification listener started", connection_id=self._connector.connection_id)

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
        logger.debug("Notification listener stopped", connection_id=self._connector.connection_id)

    def pause(self) -> None:
        """Block until the listener is parked outside its read cycle"""
        with self._cond:
            self._pause_count += 1
            # a handler running on the listener thread already owns the socket
            if threading.current_thread() is self._thread:
                return
            self._cond.notify_all()
            while self._reading or (not self._parked and not self._stopped and self._thread.is_alive()):
                self._cond.wait(self._poll_interval)

    def resume(self) -> None:
        with self._cond:
            self._pause_count -= 1
            self._cond.notify_all()

    @contextmanager
    def block(self):
        self.pause()
        try:
            yield self
        finally:
            self.resume()

    def _run(self) -> None:
        connector = self._connector
        while True:
            with self._cond:
                while self._pause_count > 0 and not self._stopped:
                    self._parked = True
                    self._cond.notify_all()
                    self._cond.wait()
                self._parked = False
                if self._stopped:
                    return
                if connector.state.phase is not Phase.READY:
                    self._cond.wait(self._poll_interval)
                    continue
                self._reading = True

            try:
                states.poll_async(connector, self._poll_interval)
            except PGWireError as e:
                logger.error("Notification listener failed, stopping",
                             connection_id=connector.connection_id, error=str(e))
                with self._cond:
                    self._stopped = True
            finally:
                with self._cond:
                    self._reading = False
                    self._cond.notify_all()
