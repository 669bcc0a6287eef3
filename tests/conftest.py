"""
Pytest configuration for pgwire_client tests

Contract tests run against FakeBackend: a threaded PostgreSQL v3 server on a
localhost socket that speaks just enough of the protocol to exercise the
client end to end:
- startup with trust, cleartext, MD5 or SCRAM-SHA-256 authentication
- simple queries (SELECT literal, CREATE TABLE, LISTEN, NOTIFY, notices)
- COPY ... FROM STDIN and COPY ... TO STDOUT against in-memory tables
- CancelRequest on a separate connection

Integration tests use a live PostgreSQL server and skip when none answers.
"""

import base64
import hashlib
import hmac
import itertools
import re
import secrets
import socket
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest
import structlog

from pgwire_client import ConnectionSettings, Connector

logger = structlog.get_logger()

SSL_REQUEST_CODE = 80877103
CANCEL_REQUEST_CODE = 80877102


def wait_for_port(host: str, port: int, timeout: float = 30) -> bool:
    """Wait for a port to become available"""
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(0.1)
    return False


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or the timeout expires"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# ========== Backend message builders ==========

def _msg(msg_type: bytes, payload: bytes = b'') -> bytes:
    return msg_type + struct.pack('!I', len(payload) + 4) + payload


def _cstr(value: str) -> bytes:
    return value.encode('utf-8') + b'\x00'


def authentication(code: int, data: bytes = b'') -> bytes:
    return _msg(b'R', struct.pack('!I', code) + data)


def parameter_status(name: str, value: str) -> bytes:
    return _msg(b'S', _cstr(name) + _cstr(value))


def error_response(sqlstate: str, message: str, severity: str = "ERROR") -> bytes:
    payload = (b'S' + _cstr(severity) + b'V' + _cstr(severity) + b'C' + _cstr(sqlstate)
               + b'M' + _cstr(message) + b'\x00')
    return _msg(b'E', payload)


def notice_response(message: str) -> bytes:
    return _msg(b'N', b'S' + _cstr("NOTICE") + b'C' + _cstr("00000") + b'M' + _cstr(message) + b'\x00')


def command_complete(tag: str) -> bytes:
    return _msg(b'C', _cstr(tag))


def ready_for_query(status: bytes = b'I') -> bytes:
    return _msg(b'Z', status)


def notification_response(pid: int, channel: str, payload: str) -> bytes:
    return _msg(b'A', struct.pack('!I', pid) + _cstr(channel) + _cstr(payload))


def copy_response(msg_type: bytes, binary: bool, column_count: int) -> bytes:
    code = 1 if binary else 0
    body = struct.pack('!bH', code, column_count) + struct.pack(f'!{column_count}h', *([code] * column_count))
    return _msg(msg_type, body)


def row_description(names: List[str]) -> bytes:
    body = struct.pack('!H', len(names))
    for name in names:
        # text typed column (oid 25), variable size
        body += _cstr(name) + struct.pack('!IhIhih', 0, 0, 25, -1, -1, 0)
    return _msg(b'T', body)


def data_row(values: List[Optional[bytes]]) -> bytes:
    body = struct.pack('!H', len(values))
    for value in values:
        if value is None:
            body += struct.pack('!i', -1)
        else:
            body += struct.pack('!i', len(value)) + value
    return _msg(b'D', body)


# ========== Fake server ==========

@dataclass
class FakeTable:
    columns: int = 2
    data: bytearray = field(default_factory=bytearray)
    chunks: List[bytes] = field(default_factory=list)
    rows: List[bytes] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


class FakeSession:
    """One accepted client connection"""

    def __init__(self, sock: socket.socket, pid: int):
        self.sock = sock
        self.pid = pid
        self.secret = secrets.randbits(31)
        self.startup_params: Dict[str, str] = {}
        self.listening = set()
        self.received: List[bytes] = []
        self.cancelled = threading.Event()
        self._send_lock = threading.Lock()
        self.closed = False

    def send(self, data: bytes) -> None:
        with self._send_lock:
            self.sock.sendall(data)

    def recv_exactly(self, count: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < count:
            chunk = self.sock.recv(count - len(buffer))
            if not chunk:
                raise ConnectionError("client closed the connection")
            buffer.extend(chunk)
        return bytes(buffer)

    def read_message(self):
        msg_type, length = struct.unpack('!cI', self.recv_exactly(5))
        body = self.recv_exactly(length - 4) if length > 4 else b''
        self.received.append(msg_type)
        return msg_type, body

    def drop(self) -> None:
        """Abruptly close the socket, as a crashed backend would"""
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.sock.close()


class FakeBackend:
    """
    Minimal in-process PostgreSQL backend.

    Args:
        auth: 'trust', 'cleartext', 'md5' or 'scram'
        password: the password accepted by the password methods
        ssl_answer: byte sent in reply to an SSLRequest ('N' refuses)
    """

    def __init__(self, auth: str = "trust", password: str = "secret", ssl_answer: bytes = b'N'):
        self.auth = auth
        self.password = password
        self.ssl_answer = ssl_answer
        self.tables: Dict[str, FakeTable] = {}
        self.sessions: List[FakeSession] = []
        self.cancel_requests: List[int] = []
        self.ssl_requests = 0
        # (channel, payload) pushed to the copying session right after a COPY IN completes
        self.notify_after_copy = None
        # COPY TO STDOUT pauses after its first row until a cancel request arrives
        self.slow_copy_out = False
        self._pids = itertools.count(4242)

        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(('127.0.0.1', 0))
        self._server.listen(16)
        self._server.settimeout(0.1)
        self.host, self.port = self._server.getsockname()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._accept_loop, name="fake-backend", daemon=True)

    def start(self) -> "FakeBackend":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stopped.set()
        self._thread.join(2)
        self._server.close()
        for session in list(self.sessions):
            session.close()

    def settings(self, **overrides) -> ConnectionSettings:
        values = dict(host=self.host, port=self.port, user="tester",
                      connect_timeout=5.0, socket_timeout=10.0)
        values.update(overrides)
        return ConnectionSettings(**values)

    def create_table(self, name: str, columns: int = 2, rows: List[bytes] = ()) -> FakeTable:
        table = FakeTable(columns=columns, rows=list(rows))
        self.tables[name.lower()] = table
        return table

    def push_notification(self, channel: str, payload: str = "", pid: int = 9999) -> int:
        """Deliver a NotificationResponse to every session listening on ``channel``"""
        delivered = 0
        for session in list(self.sessions):
            if not session.closed and channel in session.listening:
                session.send(notification_response(pid, channel, payload))
                delivered += 1
        return delivered

    def drop_connections(self) -> None:
        for session in list(self.sessions):
            session.drop()

    # Connection handling

    def _accept_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                sock, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            sock.settimeout(None)
            threading.Thread(target=self._serve, args=(sock,), daemon=True).start()

    def _serve(self, sock: socket.socket) -> None:
        session = FakeSession(sock, next(self._pids))
        try:
            if self._startup(session):
                self._query_loop(session)
        except (ConnectionError, OSError, struct.error) as e:
            logger.debug("Fake backend session ended", pid=session.pid, error=str(e))
        finally:
            session.close()

    def _startup(self, session: FakeSession) -> bool:
        length, code = struct.unpack('!II', session.recv_exactly(8))
        if code == SSL_REQUEST_CODE:
            self.ssl_requests += 1
            session.send(self.ssl_answer)
            length, code = struct.unpack('!II', session.recv_exactly(8))

        if code == CANCEL_REQUEST_CODE:
            pid, secret = struct.unpack('!II', session.recv_exactly(8))
            self.cancel_requests.append(pid)
            for target in list(self.sessions):
                if target.pid == pid and target.secret == secret:
                    target.cancelled.set()
            return False

        parts = session.recv_exactly(length - 8).split(b'\x00')
        for key, value in zip(parts[0::2], parts[1::2]):
            if not key:
                break
            session.startup_params[key.decode()] = value.decode()

        if not self._authenticate(session):
            user = session.startup_params.get('user', '')
            session.send(error_response("28P01", f'password authentication failed for user "{user}"', "FATAL"))
            return False

        self.sessions.append(session)
        session.send(authentication(0)
                     + parameter_status("server_version", "16.0")
                     + parameter_status("client_encoding", "UTF8")
                     + _msg(b'K', struct.pack('!II', session.pid, session.secret))
                     + ready_for_query())
        return True

    def _authenticate(self, session: FakeSession) -> bool:
        if self.auth == "trust":
            return True
        if self.auth == "cleartext":
            session.send(authentication(3))
            _, body = session.read_message()
            return body.rstrip(b'\x00').decode() == self.password
        if self.auth == "md5":
            salt = secrets.token_bytes(4)
            session.send(authentication(5, salt))
            _, body = session.read_message()
            user = session.startup_params.get('user', '')
            inner = hashlib.md5((self.password + user).encode()).hexdigest()
            expected = "md5" + hashlib.md5(inner.encode() + salt).hexdigest()
            return body.rstrip(b'\x00').decode() == expected
        if self.auth == "scram":
            return self._scram(session)
        raise ValueError(f"unknown auth method {self.auth}")

    def _scram(self, session: FakeSession) -> bool:
        session.send(authentication(10, _cstr("SCRAM-SHA-256") + b'\x00'))
        _, body = session.read_message()
        mechanism_end = body.index(b'\x00')
        length = struct.unpack('!i', body[mechanism_end + 1:mechanism_end + 5])[0]
        client_first = body[mechanism_end + 5:mechanism_end + 5 + length].decode()
        client_first_bare = client_first[3:]
        client_nonce = dict(part.split('=', 1) for part in client_first_bare.split(','))['r']

        nonce = client_nonce + base64.b64encode(secrets.token_bytes(12)).decode()
        salt = secrets.token_bytes(16)
        iterations = 4096
        server_first = f"r={nonce},s={base64.b64encode(salt).decode()},i={iterations}"
        session.send(authentication(11, server_first.encode()))

        _, body = session.read_message()
        without_proof, proof = body.decode().rsplit(',p=', 1)
        salted = hashlib.pbkdf2_hmac('sha256', self.password.encode(), salt, iterations)
        client_key = hmac.new(salted, b"Client Key", hashlib.sha256).digest()
        stored_key = hashlib.sha256(client_key).digest()
        auth_message = ",".join([client_first_bare, server_first, without_proof]).encode()
        client_signature = hmac.new(stored_key, auth_message, hashlib.sha256).digest()
        recovered = bytes(a ^ b for a, b in zip(base64.b64decode(proof), client_signature))
        if hashlib.sha256(recovered).digest() != stored_key:
            return False

        server_key = hmac.new(salted, b"Server Key", hashlib.sha256).digest()
        signature = hmac.new(server_key, auth_message, hashlib.sha256).digest()
        session.send(authentication(12, b"v=" + base64.b64encode(signature)))
        return True

    # Queries

    def _query_loop(self, session: FakeSession) -> None:
        while True:
            msg_type, body = session.read_message()
            if msg_type == b'X':
                return
            if msg_type == b'Q':
                self._handle_query(session, body.rstrip(b'\x00').decode('utf-8'))
            # copy messages outside COPY mode are ignored, as a real backend does

    def _handle_query(self, session: FakeSession, sql: str) -> None:
        statement = sql.strip().rstrip(';').strip()
        if not statement:
            session.send(_msg(b'I') + ready_for_query())
            return

        match = re.match(r"COPY\s+(\w+)\s*(?:\([^)]*\))?\s+FROM\s+STDIN(.*)$", statement, re.I | re.S)
        if match:
            self._copy_in(session, match.group(1), "BINARY" in match.group(2).upper())
            return

        match = re.match(r"COPY\s+(\w+)\s*(?:\([^)]*\))?\s+TO\s+STDOUT(.*)$", statement, re.I | re.S)
        if match:
            self._copy_out(session, match.group(1), "BINARY" in match.group(2).upper())
            return

        match = re.match(r"CREATE TABLE\s+(\w+)\s*\((.*)\)$", statement, re.I | re.S)
        if match:
            self.create_table(match.group(1), columns=len(match.group(2).split(',')))
            session.send(command_complete("CREATE TABLE") + ready_for_query())
            return

        match = re.match(r"LISTEN\s+(\w+)$", statement, re.I)
        if match:
            session.listening.add(match.group(1))
            session.send(command_complete("LISTEN") + ready_for_query())
            return

        match = re.match(r"NOTIFY\s+(\w+)\s*(?:,\s*'([^']*)')?$", statement, re.I)
        if match:
            channel, payload = match.group(1), match.group(2) or ""
            for other in list(self.sessions):
                if other is not session and not other.closed and channel in other.listening:
                    other.send(notification_response(session.pid, channel, payload))
            reply = command_complete("NOTIFY")
            if channel in session.listening:
                reply += notification_response(session.pid, channel, payload)
            session.send(reply + ready_for_query())
            return

        match = re.search(r"RAISE NOTICE '([^']*)'", statement, re.I)
        if match and statement.upper().startswith("DO"):
            session.send(notice_response(match.group(1)) + command_complete("DO") + ready_for_query())
            return

        match = re.match(r"SELECT\s+(.*?)(?:\s+FROM\s+(\w+))?$", statement, re.I | re.S)
        if match:
            expression, table = match.group(1), match.group(2)
            if table and table.lower() not in self.tables:
                session.send(error_response("42P01", f'relation "{table}" does not exist') + ready_for_query())
                return
            value = expression.strip().strip("'")
            session.send(row_description(["?column?"]) + data_row([value.encode()])
                         + command_complete("SELECT 1") + ready_for_query())
            return

        word = statement.split()[0]
        session.send(error_response("42601", f'syntax error at or near "{word}"') + ready_for_query())

    def _copy_in(self, session: FakeSession, name: str, binary: bool) -> None:
        table = self.tables.get(name.lower())
        if table is None:
            session.send(error_response("42P01", f'relation "{name}" does not exist') + ready_for_query())
            return

        session.send(copy_response(b'G', binary, table.columns))
        received = bytearray()
        chunks = []
        while True:
            msg_type, body = session.read_message()
            if msg_type == b'd':
                received.extend(body)
                chunks.append(body)
            elif msg_type == b'c':
                table.data.extend(received)
                table.chunks.extend(chunks)
                rows = received.count(b"\n")
                reply = command_complete(f"COPY {rows}") + ready_for_query()
                if self.notify_after_copy is not None:
                    channel, payload = self.notify_after_copy
                    reply += notification_response(9999, channel, payload)
                session.send(reply)
                return
            elif msg_type == b'f':
                message = body.rstrip(b'\x00').decode()
                table.failures.append(message)
                session.send(error_response("57014", f"COPY from stdin failed: {message}") + ready_for_query())
                return
            elif msg_type in (b'H', b'S'):
                continue
            else:
                session.send(error_response("08P01", f"unexpected message type 0x{msg_type.hex()} "
                                                     f"during COPY from stdin") + ready_for_query())
                return

    def _copy_out(self, session: FakeSession, name: str, binary: bool) -> None:
        table = self.tables.get(name.lower())
        if table is None:
            session.send(error_response("42P01", f'relation "{name}" does not exist') + ready_for_query())
            return

        session.send(copy_response(b'H', binary, table.columns))
        for index, row in enumerate(table.rows):
            if session.cancelled.is_set():
                session.cancelled.clear()
                session.send(error_response("57014", "canceling statement due to user request")
                             + ready_for_query())
                return
            session.send(_msg(b'd', row))
            if self.slow_copy_out and index == 0:
                session.cancelled.wait(5)
        session.send(_msg(b'c') + command_complete(f"COPY {len(table.rows)}") + ready_for_query())


# ========== Fixtures ==========

@pytest.fixture
def make_backend():
    """Factory for FakeBackend instances, all stopped at teardown"""
    backends = []

    def factory(**kwargs) -> FakeBackend:
        backend = FakeBackend(**kwargs).start()
        backends.append(backend)
        return backend

    yield factory
    for backend in backends:
        backend.stop()


@pytest.fixture
def backend(make_backend) -> FakeBackend:
    return make_backend()


@pytest.fixture
def connector(backend):
    """Open connector without the notification listener"""
    conn = Connector(backend.settings())
    conn.open()
    yield conn
    conn.close()


@pytest.fixture
def listening_connector(backend):
    """Open connector with the background notification listener running"""
    conn = Connector(backend.settings(sync_notification=True, notification_poll_interval=0.02))
    conn.open()
    yield conn
    conn.close()
