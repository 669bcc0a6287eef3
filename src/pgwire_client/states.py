"""
Protocol phases and the phase-specific send/receive logic.

A connection is always in exactly one ProtocolState. The state is a tagged
value: ``phase`` plus the data that phase needs (the COPY format
descriptor and the in-flight command result for the copy phases, the
failure for BROKEN). Each protocol operation is one function below that
checks the current phase and performs the exchange; these functions are
the only code that reads or writes the connection's socket.
"""

import enum
import struct
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from . import messages as m
from .auth import SASL_SCRAM_SHA_256, ScramClient, md5_password
from .command import CommandResult
from .errors import (
    AuthenticationError,
    ConnectionBrokenError,
    ConnectionEstablishmentError,
    CopySinkError,
    CopySourceError,
    PGWireError,
    ProtocolStateError,
    ProtocolViolationError,
    ServerError,
    TransportError,
)
from .messages import CopyDirection, CopyFormat
from .streams import CopyInStream, CopyOutStream
from .transport import Transport

logger = structlog.get_logger()


class Phase(enum.Enum):
    CLOSED = "Closed"
    CONNECTING = "Connecting"
    READY = "Ready"
    EXECUTING = "Executing"
    COPY_IN = "CopyIn"
    COPY_OUT = "CopyOut"
    BROKEN = "Broken"


@dataclass(frozen=True)
class ProtocolState:
    phase: Phase
    copy_format: Optional[CopyFormat] = None
    result: Optional[CommandResult] = None
    cause: Optional[BaseException] = None

    def __str__(self):
        return self.phase.value


CLOSED = ProtocolState(Phase.CLOSED)
CONNECTING = ProtocolState(Phase.CONNECTING)
READY = ProtocolState(Phase.READY)

TRANSITIONS = {
    Phase.CLOSED: {Phase.CONNECTING},
    Phase.CONNECTING: {Phase.READY, Phase.BROKEN, Phase.CLOSED},
    Phase.READY: {Phase.EXECUTING, Phase.BROKEN, Phase.CLOSED},
    Phase.EXECUTING: {Phase.READY, Phase.COPY_IN, Phase.COPY_OUT, Phase.BROKEN, Phase.CLOSED},
    Phase.COPY_IN: {Phase.EXECUTING, Phase.BROKEN, Phase.CLOSED},
    Phase.COPY_OUT: {Phase.EXECUTING, Phase.READY, Phase.BROKEN, Phase.CLOSED},
    Phase.BROKEN: {Phase.CLOSED},
}


def can_transition(source: Phase, target: Phase) -> bool:
    return target in TRANSITIONS[source]


def executing(result: CommandResult) -> ProtocolState:
    return ProtocolState(Phase.EXECUTING, result=result)


def broken(cause: BaseException) -> ProtocolState:
    return ProtocolState(Phase.BROKEN, cause=cause)


def copy_format(state: ProtocolState) -> Optional[CopyFormat]:
    """Format descriptor of an active copy, None outside the copy phases"""
    if state.phase in (Phase.COPY_IN, Phase.COPY_OUT):
        return state.copy_format
    return None


def _illegal(connector, operation: str) -> PGWireError:
    state = connector.state
    if state.phase is Phase.BROKEN:
        return ConnectionBrokenError(f"Cannot {operation}: connection not usable ({state.cause})")
    return ProtocolStateError(operation, state)


@contextmanager
def _guard(connector, operation: str):
    """Turn transport and protocol failures into a BROKEN connection"""
    try:
        yield
    except TransportError as e:
        connector.mark_broken(e)
        raise ConnectionBrokenError(f"{operation} failed: {e}") from e
    except ProtocolViolationError as e:
        connector.mark_broken(e)
        raise
    except (struct.error, ValueError, IndexError) as e:
        # truncated or garbled backend message
        violation = ProtocolViolationError(f"Malformed message during {operation}: {e}")
        connector.mark_broken(violation)
        raise violation from e


def _handle_async(connector, msg_type: bytes, body: bytes) -> bool:
    """Messages the backend may send at any time; True when handled"""
    encoding = connector.encoding
    if msg_type == m.MSG_NOTIFICATION_RESPONSE:
        connector.dispatch_notification(m.parse_notification(body, encoding))
        return True
    if msg_type == m.MSG_NOTICE_RESPONSE:
        notice = m.parse_error_fields(body, encoding)
        connector.mediator.notices.append(notice)
        connector.dispatch_notice(notice)
        return True
    if msg_type == m.MSG_PARAMETER_STATUS:
        name, value = m.parse_parameter_status(body, encoding)
        connector.parameters[name] = value
        logger.debug("Parameter status", connection_id=connector.connection_id, name=name, value=value)
        return True
    return False


# Connecting

def startup(connector) -> None:
    """CONNECTING: StartupMessage, authentication, backend parameters, ReadyForQuery"""
    if connector.state.phase is not Phase.CONNECTING:
        raise _illegal(connector, "start up")

    settings = connector.settings
    transport = connector.transport
    scram = None

    with _guard(connector, "Startup"):
        transport.send(m.build_startup_message(settings.startup_parameters()))

        while True:
            msg_type, body = transport.read_message()

            if msg_type == m.MSG_AUTHENTICATION:
                code, data = m.parse_authentication(body)
                if code == m.AUTH_OK:
                    logger.debug("Authentication OK", connection_id=connector.connection_id)
                elif code == m.AUTH_CLEARTEXT_PASSWORD:
                    transport.send(m.build_password_message(_require_password(settings)))
                elif code == m.AUTH_MD5_PASSWORD:
                    password = md5_password(settings.user, _require_password(settings), data[:4])
                    transport.send(m.build_password_message(password))
                elif code == m.AUTH_SASL:
                    mechanisms = m.parse_sasl_mechanisms(data)
                    if SASL_SCRAM_SHA_256 not in mechanisms:
                        raise AuthenticationError(f"No supported SASL mechanism in {mechanisms}")
                    scram = ScramClient(_require_password(settings))
                    transport.send(m.build_sasl_initial_response(SASL_SCRAM_SHA_256, scram.client_first()))
                elif code == m.AUTH_SASL_CONTINUE and scram is not None:
                    transport.send(m.build_sasl_response(scram.client_final(data)))
                elif code == m.AUTH_SASL_FINAL and scram is not None:
                    scram.verify_server_final(data)
                else:
                    raise AuthenticationError(f"Unsupported authentication request {code}")

            elif msg_type == m.MSG_BACKEND_KEY_DATA:
                connector.backend_pid, connector.backend_secret = m.parse_backend_key_data(body)

            elif msg_type == m.MSG_NEGOTIATE_PROTOCOL_VERSION:
                logger.info("Server negotiated protocol version", connection_id=connector.connection_id)

            elif msg_type == m.MSG_ERROR_RESPONSE:
                error = ServerError(m.parse_error_fields(body, connector.encoding))
                if error.sqlstate.startswith('28'):
                    raise AuthenticationError(error.message) from error
                raise ConnectionEstablishmentError(error.message) from error

            elif msg_type == m.MSG_READY_FOR_QUERY:
                connector.transaction_status = m.parse_ready_for_query(body)
                connector.transition(READY)
                return

            elif not _handle_async(connector, msg_type, body):
                raise ProtocolViolationError(f"Unexpected message {msg_type!r} during startup")


def _require_password(settings) -> str:
    if settings.password is None:
        raise AuthenticationError("Server requested password authentication but no password was provided")
    return settings.password


# Ready

def send_query(connector, sql: str) -> CommandResult:
    """
    READY: run a simple query.

    Returns once the server reports ReadyForQuery, or as soon as a COPY
    starts without a caller stream to route the data through (the
    connection then stays in COPY_IN / COPY_OUT).
    """
    if connector.state.phase is not Phase.READY:
        raise _illegal(connector, "execute a command")

    result = CommandResult(command_text=sql)
    connector.mediator.reset_exchange()
    result.notices = connector.mediator.notices

    with _guard(connector, "Query"):
        connector.transition(executing(result))
        connector.transport.send(m.build_query(sql, connector.encoding))
        _process_responses(connector, result)

    _raise_if_failed(connector, result)
    return result


def _raise_if_failed(connector, result: CommandResult) -> None:
    if result.error is not None and connector.state.phase is Phase.READY:
        result.error.result = result
        raise result.error


def _process_responses(connector, result: CommandResult) -> CommandResult:
    """EXECUTING: interpret backend responses until ReadyForQuery or a COPY hand-off"""
    transport = connector.transport
    encoding = connector.encoding
    stream_error = None

    while True:
        msg_type, body = transport.read_message()

        if msg_type == m.MSG_READY_FOR_QUERY:
            connector.transaction_status = m.parse_ready_for_query(body)
            connector.transition(READY)
            if stream_error is not None:
                raise _copy_stream_error(result, stream_error) from stream_error
            return result

        elif msg_type == m.MSG_ROW_DESCRIPTION:
            result.columns = m.parse_row_description(body, encoding)
            result.rows = []

        elif msg_type == m.MSG_DATA_ROW:
            result.rows.append(m.parse_data_row(body))

        elif msg_type == m.MSG_COMMAND_COMPLETE:
            result.tag = m.parse_command_complete(body, encoding)

        elif msg_type == m.MSG_EMPTY_QUERY_RESPONSE:
            result.tag = None

        elif msg_type == m.MSG_ERROR_RESPONSE:
            error = ServerError(m.parse_error_fields(body, encoding))
            if result.error is None:
                result.error = error
            logger.debug("Server error", connection_id=connector.connection_id,
                         sqlstate=error.sqlstate, message=error.message)

        elif msg_type == m.MSG_COPY_IN_RESPONSE:
            fmt = CopyFormat.parse(body)
            result.copy_direction = CopyDirection.IN
            connector.transition(ProtocolState(Phase.COPY_IN, copy_format=fmt, result=result))
            logger.debug("COPY IN started", connection_id=connector.connection_id,
                         binary=fmt.is_binary, field_count=fmt.field_count)

            source = _caller_stream(connector, CopyDirection.IN)
            if not _usable_as_source(source):
                connector.mediator.copy_stream = CopyInStream(connector)
                return result
            stream_error = _flush_source(connector, source)

        elif msg_type == m.MSG_COPY_OUT_RESPONSE:
            fmt = CopyFormat.parse(body)
            result.copy_direction = CopyDirection.OUT
            connector.transition(ProtocolState(Phase.COPY_OUT, copy_format=fmt, result=result))
            logger.debug("COPY OUT started", connection_id=connector.connection_id,
                         binary=fmt.is_binary, field_count=fmt.field_count)

            sink = _caller_stream(connector, CopyDirection.OUT)
            if not _usable_as_sink(sink):
                connector.mediator.copy_stream = CopyOutStream(connector)
                return result
            stream_error = _fill_sink(connector, sink)

        elif msg_type == m.MSG_COPY_BOTH_RESPONSE:
            raise ProtocolViolationError("COPY BOTH (replication) is not supported")

        elif not _handle_async(connector, msg_type, body):
            raise ProtocolViolationError(
                f"Unexpected message {msg_type!r} in {connector.state} state")


def _caller_stream(connector, direction: CopyDirection) -> Any:
    """The reserved copy stream, only when it was reserved for ``direction``"""
    mediator = connector.mediator
    if mediator.copy_direction is not direction:
        return None
    return mediator.copy_stream


def _copy_stream_error(result: CommandResult, cause: BaseException) -> PGWireError:
    if result.copy_direction is CopyDirection.OUT:
        error = CopySinkError(f"Copy sink failed: {cause}")
    else:
        error = CopySourceError(f"Copy source failed: {cause}")
    error.result = result
    return error


def _usable_as_source(stream: Any) -> bool:
    if stream is None or getattr(stream, 'engine_owned', False):
        return False
    if hasattr(stream, 'readable'):
        return stream.readable()
    return hasattr(stream, 'read')


def _usable_as_sink(stream: Any) -> bool:
    if stream is None or getattr(stream, 'engine_owned', False):
        return False
    if hasattr(stream, 'writable'):
        return stream.writable()
    return hasattr(stream, 'write')


def _flush_source(connector, source) -> Optional[BaseException]:
    """
    COPY_IN with a caller source: send it in copy_buffer_size chunks.

    A failing source aborts the copy with CopyFail; the failure is returned
    so the caller can raise it once the server has answered.
    """
    transport = connector.transport
    size = connector.mediator.copy_buffer_size
    sent = 0
    try:
        while True:
            chunk = source.read(size)
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode(connector.encoding)
            transport.send(m.build_copy_data(chunk))
            sent += len(chunk)
    except TransportError:
        raise
    except Exception as e:
        logger.warning("Copy source failed, aborting COPY", connection_id=connector.connection_id,
                       bytes_sent=sent, error=str(e))
        transport.send(m.build_copy_fail(f"Error reading copy source: {e}", connector.encoding))
        connector.transition(executing(connector.state.result))
        return e

    transport.send(m.build_copy_done())
    connector.transition(executing(connector.state.result))
    logger.debug("Copy source flushed", connection_id=connector.connection_id, bytes_sent=sent)
    return None


def _fill_sink(connector, sink) -> Optional[BaseException]:
    """
    COPY_OUT with a caller sink: write every CopyData payload to it.

    Once the sink fails it receives nothing more; the remaining copy data
    is read and discarded so the exchange still ends in READY, and the
    failure is returned for the caller to raise.
    """
    received = 0
    failure = None
    while True:
        chunk = _next_copy_chunk(connector)
        if chunk is None:
            break
        if failure is not None:
            continue
        try:
            sink.write(chunk)
        except Exception as e:
            logger.warning("Copy sink failed, discarding remaining copy data",
                           connection_id=connector.connection_id, bytes_received=received, error=str(e))
            failure = e
        else:
            received += len(chunk)

    logger.debug("Copy sink filled", connection_id=connector.connection_id, bytes_received=received)
    return failure


# Copy in

def send_copy_data(connector, data: bytes) -> None:
    """COPY_IN: forward one chunk of copy data"""
    if connector.state.phase is not Phase.COPY_IN:
        raise _illegal(connector, "send copy data")
    with _guard(connector, "CopyData"):
        connector.transport.send(m.build_copy_data(data))


def send_copy_done(connector) -> CommandResult:
    """COPY_IN: finish the copy successfully and wait for the command result"""
    state = connector.state
    if state.phase is not Phase.COPY_IN:
        raise _illegal(connector, "send CopyDone")

    result = state.result
    with _guard(connector, "CopyDone"):
        connector.transport.send(m.build_copy_done())
        connector.transition(executing(result))
        _process_responses(connector, result)

    _raise_if_failed(connector, result)
    return result


def send_copy_fail(connector, message: str) -> CommandResult:
    """
    COPY_IN: abort the copy. The server answers with an ErrorResponse
    carrying the message; it is returned in the result, not raised.
    """
    state = connector.state
    if state.phase is not Phase.COPY_IN:
        raise _illegal(connector, "send CopyFail")

    result = state.result
    with _guard(connector, "CopyFail"):
        connector.transport.send(m.build_copy_fail(message, connector.encoding))
        connector.transition(executing(result))
        _process_responses(connector, result)

    if result.error is not None:
        result.error.result = result
    return result


# Copy out

def _next_copy_chunk(connector) -> Optional[bytes]:
    """COPY_OUT: next CopyData payload, None after CopyDone (phase is then EXECUTING)"""
    transport = connector.transport
    while True:
        msg_type, body = transport.read_message()
        if msg_type == m.MSG_COPY_DATA:
            return body
        if msg_type == m.MSG_COPY_DONE:
            connector.transition(executing(connector.state.result))
            return None
        if msg_type == m.MSG_ERROR_RESPONSE:
            # server aborted the copy; the rest of the exchange is ordinary
            result = connector.state.result
            if result.error is None:
                result.error = ServerError(m.parse_error_fields(body, connector.encoding))
            connector.transition(executing(result))
            return None
        if not _handle_async(connector, msg_type, body):
            raise ProtocolViolationError(f"Unexpected message {msg_type!r} in CopyOut state")


def receive_copy_data(connector) -> Optional[bytes]:
    """
    COPY_OUT: next chunk of copy data.

    Returns None once the server finished the copy; the exchange is then
    completed and the connection is READY again.
    """
    state = connector.state
    if state.phase is not Phase.COPY_OUT:
        raise _illegal(connector, "receive copy data")

    result = state.result
    with _guard(connector, "CopyData"):
        chunk = _next_copy_chunk(connector)
        if chunk is not None:
            return chunk
        _process_responses(connector, result)

    _raise_if_failed(connector, result)
    return None


def drain_copy_out(connector) -> CommandResult:
    """COPY_OUT: discard the remaining copy data and finish the exchange"""
    state = connector.state
    if state.phase is not Phase.COPY_OUT:
        raise _illegal(connector, "finish COPY OUT")

    result = state.result
    discarded = 0
    with _guard(connector, "CopyOut drain"):
        while True:
            chunk = _next_copy_chunk(connector)
            if chunk is None:
                break
            discarded += len(chunk)
        _process_responses(connector, result)

    if discarded:
        logger.debug("Discarded unread copy data", connection_id=connector.connection_id, bytes=discarded)
    _raise_if_failed(connector, result)
    return result


# Idle traffic

def poll_async(connector, timeout: float = 0) -> int:
    """
    READY: wait up to ``timeout`` seconds for the socket to become readable,
    then consume the asynchronous messages available.

    Used by the notification listener; returns the number of messages
    handled.
    """
    if connector.state.phase is not Phase.READY:
        raise _illegal(connector, "poll for notifications")

    transport = connector.transport
    handled = 0
    with _guard(connector, "Notification poll"):
        if not transport.wait_readable(timeout):
            return 0
        while transport.wait_readable(0):
            msg_type, body = transport.read_message()
            if msg_type == m.MSG_ERROR_RESPONSE:
                error = ServerError(m.parse_error_fields(body, connector.encoding))
                # FATAL errors outside an exchange precede the server closing the socket
                raise TransportError(f"Server terminated the session: {error.message}")
            if not _handle_async(connector, msg_type, body):
                raise ProtocolViolationError(f"Unexpected message {msg_type!r} while idle")
            handled += 1
    return handled


def send_cancel_request(connector) -> None:
    """Out-of-band CancelRequest on a separate socket; the main socket is untouched"""
    if connector.backend_pid is None:
        raise _illegal(connector, "cancel a running command")

    settings = connector.settings
    cancel_transport = Transport.connect(settings.host, settings.port,
                                         connect_timeout=settings.connect_timeout,
                                         sslmode=settings.sslmode)
    try:
        cancel_transport.send(m.build_cancel_request(connector.backend_pid, connector.backend_secret))
    finally:
        cancel_transport.close()
    logger.info("Cancel request sent", connection_id=connector.connection_id, backend_pid=connector.backend_pid)


def terminate(connector) -> None:
    """Any phase: say goodbye when READY, close the socket, move to CLOSED"""
    state = connector.state
    transport = connector.transport
    if transport is not None:
        if state.phase is Phase.READY:
            try:
                transport.send(m.build_terminate())
            except TransportError as e:
                logger.debug("Terminate not delivered", connection_id=connector.connection_id, error=str(e))
        transport.close()
    if state.phase is not Phase.CLOSED:
        connector.transition(CLOSED)
