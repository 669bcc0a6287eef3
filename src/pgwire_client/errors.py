"""
Exception hierarchy for the PostgreSQL wire protocol client.

Every error raised by the engine derives from PGWireError so callers can
catch the whole family with one clause.
"""

from typing import Dict, Optional


class PGWireError(Exception):
    """Base class for all client errors"""


class TransportError(PGWireError):
    """Socket level read/write failure (raised by the transport only)"""


class ProtocolStateError(PGWireError):
    """
    An operation was attempted in a protocol phase where it is not legal.

    The connection state is left untouched; this is a programming error,
    not a retryable fault.
    """

    def __init__(self, operation: str, state):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} in {state} state")


class ProtocolViolationError(PGWireError):
    """The backend sent a message that is not legal in the current phase"""


class ConnectionBrokenError(PGWireError):
    """The connection suffered an unrecoverable failure and is not usable"""


class ConnectionEstablishmentError(PGWireError):
    """Startup, SSL negotiation or authentication failed"""


class AuthenticationError(ConnectionEstablishmentError):
    """The server rejected the credentials or asked for an unsupported method"""


class ServerError(PGWireError):
    """
    ErrorResponse reported by the server.

    Attributes mirror the well-known ErrorResponse field codes; the raw
    field dictionary is kept in ``fields``.
    """

    def __init__(self, fields: Dict[str, str]):
        self.fields = dict(fields)
        self.result = None
        self.severity = fields.get('S', 'ERROR')
        self.sqlstate = fields.get('C', '')
        self.message = fields.get('M', '')
        self.detail: Optional[str] = fields.get('D')
        self.hint: Optional[str] = fields.get('H')
        super().__init__(f"{self.severity}: {self.message} (SQLSTATE {self.sqlstate})")


class NotCopyQueryError(PGWireError):
    """A copy operation was started with a command that is not a matching COPY"""

    def __init__(self, command_text: str, direction: str = "IN"):
        self.command_text = command_text
        super().__init__(f"Not a COPY {direction} query: {command_text}")


class CopySourceError(PGWireError):
    """The caller supplied copy source raised while it was being sent"""


class CopySinkError(PGWireError):
    """The caller supplied copy sink raised while copy data was written to it"""
