"""
COPY bulk transfer operations.

CopyIn drives ``COPY ... FROM STDIN``, CopyOut drives ``COPY ... TO STDOUT``.
Both reserve the connection through the mediator: the operation is active
only while the connector is in the matching copy phase and the mediator's
copy stream is this operation's stream.

Stream ownership:
- BorrowedStream: supplied by the caller, never closed or dropped by us
- OwnedStream: created by the engine during start(), released on end/cancel

Usage:
    with CopyIn("COPY items FROM STDIN", conn) as copy:
        copy.write(b"1\tfirst\n")
        copy.write(b"2\tsecond\n")
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

from . import states
from .command import Command, CommandResult
from .errors import NotCopyQueryError, ProtocolStateError
from .messages import CopyDirection
from .states import Phase

logger = structlog.get_logger()


@dataclass(frozen=True, eq=False)
class BorrowedStream:
    stream: Any


@dataclass(frozen=True, eq=False)
class OwnedStream:
    stream: Any


class _CopyOperation(ABC):
    """Shared reservation, projection and cleanup logic of CopyIn / CopyOut"""

    _phase: Phase
    _direction: CopyDirection

    def __init__(self, command: Union[Command, str], connector=None, stream: Any = None):
        if isinstance(command, str):
            if connector is None:
                raise ValueError("A connector is required when the command is given as SQL text")
            command = Command(command, connector)
        self._command = command
        self._connector = connector if connector is not None else command.connector
        self._stream_ref: Optional[Union[BorrowedStream, OwnedStream]] = (
            BorrowedStream(stream) if stream is not None else None)

    @property
    def command(self) -> Command:
        return self._command

    @property
    def connector(self):
        return self._connector

    @property
    def copy_stream(self) -> Any:
        """
        The caller's stream, or the engine stream created by start().

        An engine stream is only available while the operation is active;
        afterwards this is None again.
        """
        return self._stream_ref.stream if self._stream_ref is not None else None

    @property
    def owns_stream(self) -> bool:
        return isinstance(self._stream_ref, OwnedStream)

    @property
    def is_active(self) -> bool:
        """True while the connection is reserved for this operation"""
        connector = self._connector
        stream = self.copy_stream
        return (connector is not None
                and stream is not None
                and connector.state.phase is self._phase
                and connector.mediator.copy_stream is stream)

    @property
    def is_binary(self) -> bool:
        if not self.is_active:
            return False
        return states.copy_format(self._connector.state).is_binary

    def field_is_binary(self, field_number: int) -> bool:
        if not self.is_active:
            return False
        return states.copy_format(self._connector.state).field_is_binary(field_number)

    @property
    def field_count(self) -> int:
        if not self.is_active:
            return -1
        return states.copy_format(self._connector.state).field_count

    @property
    def copy_buffer_size(self) -> int:
        return self._connector.mediator.copy_buffer_size

    @copy_buffer_size.setter
    def copy_buffer_size(self, value: int) -> None:
        self._connector.mediator.copy_buffer_size = value

    def start(self) -> CommandResult:
        """
        Execute the COPY command.

        With a caller stream the whole transfer happens here. Without one,
        ``copy_stream`` becomes an engine stream and the operation stays
        active until end() or cancel().
        """
        connector = self._connector
        state = connector.state
        if state.phase is not Phase.READY:
            raise ProtocolStateError(f"start COPY {self._direction.name}", state)

        connector.mediator.reserve_copy(self.copy_stream, self._direction)
        try:
            result = self._command.execute()
        except BaseException:
            self._clear_mediator()
            raise

        if result.copy_direction is not self._direction:
            self._abandon_other_copy()
            self._clear_mediator()
            logger.warning("Command did not start the expected COPY",
                           connection_id=connector.connection_id,
                           expected=self._direction.name, command=self._command.text)
            raise NotCopyQueryError(self._command.text, self._direction.name)

        if self._stream_ref is None:
            self._stream_ref = OwnedStream(connector.mediator.copy_stream)
        else:
            # the caller stream was consumed inside execute(), the copy is finished
            self._clear_mediator()

        logger.info("COPY started", connection_id=connector.connection_id,
                    direction=self._direction.name, active=self.is_active,
                    field_count=self.field_count, command=self._command.text)
        return result

    @abstractmethod
    def _abandon_other_copy(self) -> None:
        """Bring a COPY in the other direction back to READY"""

    def _finish(self, operation: str, exchange) -> Optional[CommandResult]:
        connector = self._connector
        if connector is None:
            return None
        result = None
        try:
            if self.is_active:
                # the notification thread must not consume the exchange's responses
                with connector.block_notification_thread():
                    result = exchange(connector)
        except BaseException:
            self._release(suppress_errors=True)
            raise
        self._release()
        logger.info("COPY finished", connection_id=connector.connection_id,
                    direction=self._direction.name, operation=operation,
                    tag=result.tag if result is not None else None,
                    failed=result.failed if result is not None else None)
        return result

    def _clear_mediator(self) -> None:
        mediator = self._connector.mediator
        stream = mediator.copy_stream
        if stream is not None and (stream is self.copy_stream or getattr(stream, 'engine_owned', False)):
            mediator.clear_copy()

    def _release(self, suppress_errors: bool = False) -> None:
        """Drop the mediator reservation and any engine owned stream"""
        try:
            mediator = self._connector.mediator
            if self._stream_ref is not None and mediator.copy_stream is self._stream_ref.stream:
                mediator.clear_copy()
            if isinstance(self._stream_ref, OwnedStream):
                stream = self._stream_ref.stream
                self._stream_ref = None
                stream.release()
        except Exception as e:
            if not suppress_errors:
                raise
            logger.warning("COPY cleanup failed", connection_id=self._connector.connection_id,
                           error=str(e))

    def __enter__(self):
        self.start()
        return self

    def __repr__(self):
        return f"<{type(self).__name__} {self._command.text!r} active={self.is_active}>"


class CopyIn(_CopyOperation):
    """
    COPY FROM STDIN operation.

    Given a readable ``source`` the data is sent in copy_buffer_size chunks
    during start(). Otherwise write to ``copy_stream`` (or ``write()``) and
    finish with end() or cancel().
    """

    _phase = Phase.COPY_IN
    _direction = CopyDirection.IN

    def __init__(self, command: Union[Command, str], connector=None, source: Any = None):
        super().__init__(command, connector, source)

    def write(self, data) -> int:
        if not self.is_active:
            raise ProtocolStateError("write copy data", self._connector.state)
        return self.copy_stream.write(data)

    def _abandon_other_copy(self) -> None:
        if self._connector.state.phase is Phase.COPY_OUT:
            self._connector.end_copy()

    def end(self) -> Optional[CommandResult]:
        """Commit the copy; no-op (besides cleanup) when not active"""
        return self._finish("end", states.send_copy_done)

    def cancel(self, message: str) -> Optional[CommandResult]:
        """
        Abort the copy with ``message``.

        Returns the failed command result carrying the server's error, or
        None when the operation was not active.
        """
        return self._finish("cancel", lambda connector: states.send_copy_fail(connector, message))

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.end()
        else:
            self.cancel(f"{exc_type.__name__}: {exc_val}")
        return False


class CopyOut(_CopyOperation):
    """
    COPY TO STDOUT operation.

    Given a writable ``sink`` every CopyData payload is written to it during
    start(). Otherwise read ``copy_stream`` until EOF and call end().
    """

    _phase = Phase.COPY_OUT
    _direction = CopyDirection.OUT

    def __init__(self, command: Union[Command, str], connector=None, sink: Any = None):
        super().__init__(command, connector, sink)

    def read(self, size: int = -1) -> bytes:
        stream = self.copy_stream
        if stream is None or not self.owns_stream:
            return b''
        return stream.read(size)

    def __iter__(self):
        if not self.owns_stream:
            return iter(())
        return self.copy_stream.chunks()

    def _abandon_other_copy(self) -> None:
        if self._connector.state.phase is Phase.COPY_IN:
            self._connector.fail_copy(f"Not a COPY OUT query: {self._command.text}")

    def end(self) -> Optional[CommandResult]:
        """Discard unread data and finish the exchange; no-op when not active"""
        return self._finish("end", states.drain_copy_out)

    def cancel(self, message: str = "COPY OUT canceled") -> Optional[CommandResult]:
        """Ask the server to cancel the running COPY and drain what it already sent"""
        connector = self._connector
        if connector is not None and self.is_active:
            logger.info("Cancelling COPY OUT", connection_id=connector.connection_id, reason=message)
            states.send_cancel_request(connector)
        return self._finish("cancel", _drain_ignoring_error)

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.end()
        else:
            self.cancel(f"{exc_type.__name__}: {exc_val}")
        return False


def _drain_ignoring_error(connector) -> CommandResult:
    result = connector.state.result
    try:
        states.drain_copy_out(connector)
    except Exception as e:
        if getattr(e, 'result', None) is not result:
            raise
    return result
