"""
Connector: one physical connection to a PostgreSQL server.

Owns the transport, the mediator, the current protocol state and the
optional notification listener. Every protocol operation is delegated to
the dispatch functions in ``states``; the connector itself only validates
and applies state transitions and manages resources.
"""

import contextlib
import itertools
import threading
from typing import Callable, Dict, List, Optional

import structlog

from . import states
from .command import CommandResult
from .config import ConnectionSettings
from .errors import ConnectionEstablishmentError, PGWireError, ProtocolStateError
from .mediator import Mediator
from .messages import Notification, STATUS_IDLE
from .notifications import NotificationListener
from .states import Phase, ProtocolState
from .transport import Transport

logger = structlog.get_logger()

_connection_ids = itertools.count(1)


class Connector:
    """
    PostgreSQL wire protocol connection.

    Usage:
        with Connector(ConnectionSettings(host="db", user="app")) as conn:
            conn.execute("CREATE TABLE t (v text)")
    """

    def __init__(self, settings: Optional[ConnectionSettings] = None, **overrides):
        settings = settings or ConnectionSettings()
        if overrides:
            settings = settings.with_overrides(**overrides)
        self.settings = settings
        self.connection_id = f"conn_{next(_connection_ids)}"

        self.transport: Optional[Transport] = None
        self.mediator = Mediator(settings.copy_buffer_size)
        self._state: ProtocolState = states.CLOSED
        self._state_lock = threading.Lock()
        self._listener: Optional[NotificationListener] = None

        # Session state reported by the server
        self.parameters: Dict[str, str] = {}
        self.backend_pid: Optional[int] = None
        self.backend_secret: Optional[int] = None
        self.transaction_status = STATUS_IDLE

        self._notification_handlers: List[Callable[[Notification], None]] = []
        self._notice_handlers: List[Callable[[dict], None]] = []

    # State machine

    @property
    def state(self) -> ProtocolState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state.phase is Phase.READY

    def transition(self, new_state: ProtocolState) -> None:
        """Replace the current state; only transitions in states.TRANSITIONS are allowed"""
        with self._state_lock:
            current = self._state
            if not states.can_transition(current.phase, new_state.phase):
                raise ProtocolStateError(f"change to {new_state} state", current)
            self._state = new_state
        logger.debug("State transition", connection_id=self.connection_id,
                     source=str(current), target=str(new_state))

    def mark_broken(self, cause: BaseException) -> None:
        with self._state_lock:
            current = self._state
            if current.phase in (Phase.BROKEN, Phase.CLOSED):
                return
            self._state = states.broken(cause)
        logger.error("Connection broken", connection_id=self.connection_id,
                     previous_state=str(current), error=str(cause))

    @property
    def encoding(self) -> str:
        return self.settings.python_encoding

    # Lifecycle

    def open(self) -> "Connector":
        """Connect, authenticate and wait for the first ReadyForQuery"""
        settings = self.settings
        self.transition(states.CONNECTING)
        self.parameters = {}
        self.backend_pid = self.backend_secret = None
        self.mediator.clear_copy()
        logger.info("Opening connection", connection_id=self.connection_id,
                    host=settings.host, port=settings.port, user=settings.user,
                    database=settings.database, sslmode=settings.sslmode)
        try:
            self.transport = Transport.connect(
                settings.host, settings.port,
                connect_timeout=settings.connect_timeout,
                socket_timeout=settings.socket_timeout,
                sslmode=settings.sslmode,
            )
            states.startup(self)
        except PGWireError as e:
            self.mark_broken(e)
            if self.transport is not None:
                self.transport.close()
            logger.error("Connection establishment failed", connection_id=self.connection_id,
                         error=str(e), error_type=type(e).__name__)
            if isinstance(e, ConnectionEstablishmentError):
                raise
            raise ConnectionEstablishmentError(f"Could not connect to {settings.host}:{settings.port}: {e}") from e

        if settings.sync_notification:
            self._listener = NotificationListener(self, settings.notification_poll_interval)
            self._listener.start()

        logger.info("Connection ready", connection_id=self.connection_id,
                    backend_pid=self.backend_pid,
                    server_version=self.parameters.get('server_version'))
        return self

    def close(self) -> None:
        """Stop the listener, send Terminate when idle and close the socket"""
        if self._state.phase is Phase.CLOSED:
            return
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
        states.terminate(self)
        logger.info("Connection closed", connection_id=self.connection_id)

    def __enter__(self) -> "Connector":
        if self._state.phase is Phase.CLOSED:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # Notification thread coordination

    @property
    def notification_listener(self) -> Optional[NotificationListener]:
        return self._listener

    def block_notification_thread(self):
        """
        Scoped exclusive access to the socket.

        Returns a context manager; entering it does not return until the
        notification listener is parked, leaving it resumes the listener.
        Nested blocks are allowed.
        """
        if self._listener is None:
            return contextlib.nullcontext()
        return self._listener.block()

    # Commands

    def execute(self, sql: str) -> CommandResult:
        """
        Run a simple query (legal only in READY).

        Raises ServerError when the server reports an error; the connection
        is READY again in that case.
        """
        with self.block_notification_thread():
            return states.send_query(self, sql)

    def cancel_request(self) -> None:
        """Ask the server, over a separate socket, to cancel the running command"""
        states.send_cancel_request(self)

    # COPY

    def send_copy_data(self, data: bytes) -> None:
        states.send_copy_data(self, data)

    def end_copy(self) -> CommandResult:
        """Finish the active copy: CopyDone for COPY IN, drain for COPY OUT"""
        with self.block_notification_thread():
            if self._state.phase is Phase.COPY_OUT:
                return states.drain_copy_out(self)
            return states.send_copy_done(self)

    def fail_copy(self, message: str) -> CommandResult:
        """Abort the active COPY IN; the failed result carries the server's error"""
        with self.block_notification_thread():
            return states.send_copy_fail(self, message)

    def receive_copy_data(self) -> Optional[bytes]:
        with self.block_notification_thread():
            return states.receive_copy_data(self)

    # Asynchronous messages

    def add_notification_handler(self, handler: Callable[[Notification], None]) -> None:
        self._notification_handlers.append(handler)

    def remove_notification_handler(self, handler: Callable[[Notification], None]) -> None:
        self._notification_handlers.remove(handler)

    def add_notice_handler(self, handler: Callable[[dict], None]) -> None:
        self._notice_handlers.append(handler)

    def remove_notice_handler(self, handler: Callable[[dict], None]) -> None:
        self._notice_handlers.remove(handler)

    def dispatch_notification(self, notification: Notification) -> None:
        logger.debug("Notification received", connection_id=self.connection_id,
                     channel=notification.channel, pid=notification.pid)
        for handler in list(self._notification_handlers):
            try:
                handler(notification)
            except Exception as e:
                logger.error("Notification handler failed", connection_id=self.connection_id,
                             channel=notification.channel, error=str(e))

    def dispatch_notice(self, notice: dict) -> None:
        logger.info("Server notice", connection_id=self.connection_id,
                    severity=notice.get('S'), message=notice.get('M'))
        for handler in list(self._notice_handlers):
            try:
                handler(notice)
            except Exception as e:
                logger.error("Notice handler failed", connection_id=self.connection_id, error=str(e))

    def __repr__(self):
        return f"<Connector {self.connection_id} {self.settings.host}:{self.settings.port} {self._state}>"
