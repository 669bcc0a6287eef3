"""
Connection settings for the wire protocol client.

Values come from, in increasing priority: dataclass defaults, libpq style
``PG*`` environment variables, ``PGWIRE_*`` environment variables, and
explicit keyword overrides. ``settings_from_env()`` records where each
value came from so callers can log their effective configuration.
"""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

DEFAULT_PORT = 5432
DEFAULT_COPY_BUFFER_SIZE = 8192
SSL_MODES = ("disable", "prefer", "require")

# setting name -> (PGWIRE_* variable, libpq variable)
_ENV_VARS = {
    'host': ('PGWIRE_HOST', 'PGHOST'),
    'port': ('PGWIRE_PORT', 'PGPORT'),
    'user': ('PGWIRE_USER', 'PGUSER'),
    'password': ('PGWIRE_PASSWORD', 'PGPASSWORD'),
    'database': ('PGWIRE_DATABASE', 'PGDATABASE'),
    'application_name': ('PGWIRE_APPLICATION_NAME', 'PGAPPNAME'),
    'sslmode': ('PGWIRE_SSLMODE', 'PGSSLMODE'),
    'connect_timeout': ('PGWIRE_CONNECT_TIMEOUT', 'PGCONNECT_TIMEOUT'),
    'socket_timeout': ('PGWIRE_SOCKET_TIMEOUT', None),
    'sync_notification': ('PGWIRE_SYNC_NOTIFICATION', None),
    'copy_buffer_size': ('PGWIRE_COPY_BUFFER_SIZE', None),
    'notification_poll_interval': ('PGWIRE_NOTIFICATION_POLL_INTERVAL', None),
    'client_encoding': ('PGWIRE_CLIENT_ENCODING', 'PGCLIENTENCODING'),
}

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


@dataclass
class ConnectionSettings:
    """Everything the connector needs to open one physical connection"""

    host: str = "localhost"
    port: int = DEFAULT_PORT
    user: str = "postgres"
    password: Optional[str] = None
    database: Optional[str] = None
    application_name: str = "pgwire_client"
    sslmode: str = "disable"
    connect_timeout: Optional[float] = 10.0
    socket_timeout: Optional[float] = None
    sync_notification: bool = False
    copy_buffer_size: int = DEFAULT_COPY_BUFFER_SIZE
    notification_poll_interval: float = 0.05
    client_encoding: str = "UTF8"
    sources: Dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        if self.sslmode not in SSL_MODES:
            raise ValueError(f"Unsupported sslmode {self.sslmode!r}, expected one of {SSL_MODES}")
        if self.copy_buffer_size <= 0:
            raise ValueError(f"copy_buffer_size must be positive, got {self.copy_buffer_size}")
        if self.notification_poll_interval <= 0:
            raise ValueError("notification_poll_interval must be positive")

    def startup_parameters(self) -> Dict[str, str]:
        """Parameters sent in the StartupMessage"""
        params = {
            'user': self.user,
            'application_name': self.application_name,
            'client_encoding': self.client_encoding,
        }
        if self.database:
            params['database'] = self.database
        return params

    @property
    def python_encoding(self) -> str:
        """Codec name matching the server client_encoding"""
        return _PG_TO_PYTHON_ENCODING.get(self.client_encoding.upper(), self.client_encoding)

    def with_overrides(self, **overrides: Any) -> "ConnectionSettings":
        settings = replace(self, **overrides)
        settings.sources = dict(self.sources)
        for key in overrides:
            settings.sources[key] = "override"
        return settings

    def describe(self) -> Dict[str, Any]:
        """Effective configuration for logging, with the password masked"""
        config = {}
        for f in fields(self):
            if f.name == 'sources':
                continue
            value = getattr(self, f.name)
            if f.name == 'password' and value:
                value = "***"
            config[f.name] = {'value': value, 'source': self.sources.get(f.name, 'default')}
        return config


_PG_TO_PYTHON_ENCODING = {
    'UTF8': 'utf-8',
    'UNICODE': 'utf-8',
    'SQL_ASCII': 'ascii',
    'LATIN1': 'latin-1',
    'WIN1252': 'cp1252',
}


def _convert(name: str, raw: str) -> Any:
    if name in ('port', 'copy_buffer_size'):
        return int(raw)
    if name in ('connect_timeout', 'socket_timeout'):
        return float(raw) if raw else None
    if name == 'notification_poll_interval':
        return float(raw)
    if name == 'sync_notification':
        return raw.strip().lower() in _TRUE_VALUES
    return raw


def settings_from_env(environ: Optional[Dict[str, str]] = None, **overrides: Any) -> ConnectionSettings:
    """
    Build ConnectionSettings from the environment.

    Args:
        environ: mapping to read instead of os.environ (used by tests)
        **overrides: explicit values, highest priority

    Returns:
        ConnectionSettings with ``sources`` describing each value's origin
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    sources: Dict[str, str] = {}

    for name, (pgwire_var, libpq_var) in _ENV_VARS.items():
        if pgwire_var in environ:
            values[name] = _convert(name, environ[pgwire_var])
            sources[name] = pgwire_var
        elif libpq_var and libpq_var in environ:
            values[name] = _convert(name, environ[libpq_var])
            sources[name] = libpq_var

    for name, value in overrides.items():
        values[name] = value
        sources[name] = "override"

    settings = ConnectionSettings(**values)
    settings.sources = sources
    return settings
