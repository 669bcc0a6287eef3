"""
Socket transport for the wire protocol client.

Owns the physical socket, negotiates SSL, and turns the byte stream into
framed backend messages. It has no notion of protocol phases; the state
functions in ``states`` are its only callers.
"""

import logging
import select
import socket
import ssl
import struct
from typing import Optional, Tuple

from .errors import TransportError
from .messages import build_ssl_request

logger = logging.getLogger(__name__)

RECV_CHUNK_SIZE = 65536


class Transport:
    """
    Buffered, message framed access to one socket.

    Bytes received beyond the current message stay in an internal buffer,
    so readability checks consult the buffer before the socket.
    """

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._buffer = bytearray()
        self.ssl_enabled = isinstance(sock, ssl.SSLSocket)
        self.closed = False

    @classmethod
    def connect(cls, host: str, port: int, connect_timeout: Optional[float] = None,
                socket_timeout: Optional[float] = None, sslmode: str = "disable",
                ssl_context: Optional[ssl.SSLContext] = None) -> "Transport":
        """
        Open a TCP connection and optionally upgrade it to TLS.

        Args:
            sslmode: 'disable' (never), 'prefer' (use TLS when the server
                accepts) or 'require' (fail when the server refuses)
        """
        try:
            sock = socket.create_connection((host, port), timeout=connect_timeout)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            raise TransportError(f"Could not connect to {host}:{port}: {e}") from e

        try:
            if sslmode != "disable":
                sock = cls._negotiate_ssl(sock, host, sslmode, ssl_context)
            sock.settimeout(socket_timeout)
        except BaseException:
            sock.close()
            raise

        logger.debug(f"Connected to {host}:{port} (ssl={isinstance(sock, ssl.SSLSocket)})")
        return cls(sock)

    @staticmethod
    def _negotiate_ssl(sock: socket.socket, host: str, sslmode: str,
                       ssl_context: Optional[ssl.SSLContext]) -> socket.socket:
        # SSLRequest is answered with a single byte: 'S' to proceed, 'N' to refuse
        try:
            sock.sendall(build_ssl_request())
            answer = sock.recv(1)
        except OSError as e:
            raise TransportError(f"SSL negotiation failed: {e}") from e

        if answer == b'S':
            context = ssl_context or ssl.create_default_context()
            try:
                return context.wrap_socket(sock, server_hostname=host)
            except (ssl.SSLError, OSError) as e:
                raise TransportError(f"SSL handshake failed: {e}") from e
        if answer == b'N':
            if sslmode == "require":
                raise TransportError("Server does not support SSL but sslmode=require")
            logger.debug("Server refused SSL, continuing with plain connection")
            return sock
        raise TransportError(f"Unexpected SSL negotiation answer: {answer!r}")

    def send(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("Transport is closed")
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise TransportError(f"Socket write failed: {e}") from e

    def _fill(self, needed: int) -> None:
        while len(self._buffer) < needed:
            try:
                chunk = self._sock.recv(RECV_CHUNK_SIZE)
            except OSError as e:
                raise TransportError(f"Socket read failed: {e}") from e
            if not chunk:
                raise TransportError("Server closed the connection")
            self._buffer.extend(chunk)

    def read_exactly(self, count: int) -> bytes:
        if self.closed:
            raise TransportError("Transport is closed")
        self._fill(count)
        data = bytes(self._buffer[:count])
        del self._buffer[:count]
        return data

    def read_message(self) -> Tuple[bytes, bytes]:
        """Read one backend message, returning (type byte, payload)"""
        header = self.read_exactly(5)
        msg_type, length = struct.unpack('!cI', header)
        if length < 4:
            raise TransportError(f"Invalid message length {length} for type {msg_type!r}")
        body = self.read_exactly(length - 4) if length > 4 else b''
        return msg_type, body

    def has_buffered_data(self) -> bool:
        if self._buffer:
            return True
        return self.ssl_enabled and self._sock.pending() > 0

    def wait_readable(self, timeout: float) -> bool:
        """True when a read would not block waiting for the first byte"""
        if self.closed:
            return False
        if self.has_buffered_data():
            return True
        try:
            readable, _, _ = select.select([self._sock], [], [], timeout)
        except (OSError, ValueError) as e:
            raise TransportError(f"Socket poll failed: {e}") from e
        return bool(readable)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._buffer.clear()
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Ignoring error while closing socket: {e}")
