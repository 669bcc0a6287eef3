"""
PostgreSQL Wire Protocol Client

A pure-Python PostgreSQL v3 protocol client: simple queries, COPY bulk
transfer in both directions and LISTEN/NOTIFY delivery on a background
thread, without libpq.
"""

__version__ = "0.1.0"
__author__ = "PGWire Client Team"

from .command import Command, CommandResult
from .config import ConnectionSettings, settings_from_env
from .connector import Connector
from .copy import CopyIn, CopyOut
from .errors import (
    AuthenticationError,
    ConnectionBrokenError,
    ConnectionEstablishmentError,
    CopySinkError,
    CopySourceError,
    NotCopyQueryError,
    PGWireError,
    ProtocolStateError,
    ProtocolViolationError,
    ServerError,
)
from .messages import CopyDirection, CopyFormat, Notification
from .states import Phase

__all__ = [
    "__version__",
    "Command",
    "CommandResult",
    "ConnectionSettings",
    "settings_from_env",
    "Connector",
    "CopyIn",
    "CopyOut",
    "CopyDirection",
    "CopyFormat",
    "Notification",
    "Phase",
    "PGWireError",
    "ProtocolStateError",
    "ProtocolViolationError",
    "ConnectionBrokenError",
    "ConnectionEstablishmentError",
    "AuthenticationError",
    "ServerError",
    "NotCopyQueryError",
    "CopySourceError",
    "CopySinkError",
]
