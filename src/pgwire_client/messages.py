"""
PostgreSQL v3 wire protocol codec (frontend side).

Builds the messages a client sends and parses the messages a backend
sends. Protocol reference: https://www.postgresql.org/docs/current/protocol.html

Every backend message is framed as:
- Byte1: message type
- Int32: length of the message contents including the length field itself
- Byte[]: payload
"""

import enum
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# PostgreSQL protocol constants
SSL_REQUEST_CODE = 80877103
CANCEL_REQUEST_CODE = 80877102
PROTOCOL_VERSION = 0x00030000  # PostgreSQL protocol version 3.0

# Frontend message types
MSG_QUERY = b'Q'
MSG_TERMINATE = b'X'
MSG_PASSWORD = b'p'
MSG_COPY_DATA = b'd'
MSG_COPY_DONE = b'c'
MSG_COPY_FAIL = b'f'

# Backend message types
MSG_AUTHENTICATION = b'R'
MSG_PARAMETER_STATUS = b'S'
MSG_BACKEND_KEY_DATA = b'K'
MSG_READY_FOR_QUERY = b'Z'
MSG_ERROR_RESPONSE = b'E'
MSG_NOTICE_RESPONSE = b'N'
MSG_NOTIFICATION_RESPONSE = b'A'
MSG_ROW_DESCRIPTION = b'T'
MSG_DATA_ROW = b'D'
MSG_COMMAND_COMPLETE = b'C'
MSG_EMPTY_QUERY_RESPONSE = b'I'
MSG_COPY_IN_RESPONSE = b'G'
MSG_COPY_OUT_RESPONSE = b'H'
MSG_COPY_BOTH_RESPONSE = b'W'
MSG_NEGOTIATE_PROTOCOL_VERSION = b'v'

# Transaction status reported by ReadyForQuery
STATUS_IDLE = b'I'
STATUS_IN_TRANSACTION = b'T'
STATUS_FAILED_TRANSACTION = b'E'

# Authentication types
AUTH_OK = 0
AUTH_CLEARTEXT_PASSWORD = 3
AUTH_MD5_PASSWORD = 5
AUTH_SASL = 10
AUTH_SASL_CONTINUE = 11
AUTH_SASL_FINAL = 12

# Copy format codes
FORMAT_TEXT = 0
FORMAT_BINARY = 1


def _message(msg_type: bytes, payload: bytes = b'') -> bytes:
    return msg_type + struct.pack('!I', len(payload) + 4) + payload


def _cstring(value: str, encoding: str = 'utf-8') -> bytes:
    return value.encode(encoding) + b'\x00'


# Frontend messages

def build_ssl_request() -> bytes:
    """SSLRequest: Int32(8) + Int32(80877103)"""
    return struct.pack('!II', 8, SSL_REQUEST_CODE)


def build_startup_message(params: Dict[str, str]) -> bytes:
    """
    StartupMessage: Int32 length + Int32 protocol version + name/value pairs.

    The parameter list is terminated by an extra zero byte.
    """
    body = struct.pack('!I', PROTOCOL_VERSION)
    for key, value in params.items():
        body += _cstring(key) + _cstring(value)
    body += b'\x00'
    return struct.pack('!I', len(body) + 4) + body


def build_cancel_request(backend_pid: int, backend_secret: int) -> bytes:
    """CancelRequest: Int32(16) + Int32(80877102) + pid + secret"""
    return struct.pack('!IIII', 16, CANCEL_REQUEST_CODE, backend_pid, backend_secret)


def build_query(sql: str, encoding: str = 'utf-8') -> bytes:
    return _message(MSG_QUERY, _cstring(sql, encoding))


def build_password_message(password: str) -> bytes:
    return _message(MSG_PASSWORD, _cstring(password))


def build_sasl_initial_response(mechanism: str, data: bytes) -> bytes:
    """SASLInitialResponse: mechanism name + Int32 length + initial response"""
    return _message(MSG_PASSWORD, _cstring(mechanism) + struct.pack('!I', len(data)) + data)


def build_sasl_response(data: bytes) -> bytes:
    return _message(MSG_PASSWORD, data)


def build_copy_data(data: bytes) -> bytes:
    """CopyData: 'd' + Int32 length + data"""
    return _message(MSG_COPY_DATA, data)


def build_copy_done() -> bytes:
    """CopyDone: 'c' + Int32(4)"""
    return _message(MSG_COPY_DONE)


def build_copy_fail(error_message: str, encoding: str = 'utf-8') -> bytes:
    """CopyFail: 'f' + Int32 length + error message string"""
    return _message(MSG_COPY_FAIL, _cstring(error_message, encoding))


def build_terminate() -> bytes:
    return _message(MSG_TERMINATE)


class CopyDirection(enum.Enum):
    IN = "in"
    OUT = "out"


# Backend messages

@dataclass(frozen=True)
class CopyFormat:
    """
    Format descriptor sent with CopyInResponse / CopyOutResponse.

    Int8 overall format (0 text, 1 binary), Int16 column count, then one
    Int16 format code per column.
    """

    is_binary: bool
    field_formats: Tuple[int, ...]

    @property
    def field_count(self) -> int:
        return len(self.field_formats)

    def field_is_binary(self, field_number: int) -> bool:
        if field_number < 0 or field_number >= len(self.field_formats):
            return False
        return self.field_formats[field_number] == FORMAT_BINARY

    @classmethod
    def parse(cls, body: bytes) -> "CopyFormat":
        overall, count = struct.unpack('!bH', body[:3])
        formats = struct.unpack(f'!{count}h', body[3:3 + 2 * count]) if count else ()
        return cls(is_binary=overall == FORMAT_BINARY, field_formats=tuple(formats))


@dataclass(frozen=True)
class Notification:
    """Asynchronous NotificationResponse (LISTEN/NOTIFY)"""

    pid: int
    channel: str
    payload: str


@dataclass(frozen=True)
class ColumnDescription:
    name: str
    table_oid: int
    column_number: int
    type_oid: int
    type_size: int
    type_modifier: int
    format_code: int


def _split_cstrings(data: bytes, encoding: str = 'utf-8') -> List[str]:
    return [part.decode(encoding, errors='replace') for part in data.split(b'\x00')]


def parse_error_fields(body: bytes, encoding: str = 'utf-8') -> Dict[str, str]:
    """
    ErrorResponse / NoticeResponse body: sequence of Byte1 field code +
    String value, terminated by a zero byte.
    """
    fields = {}
    pos = 0
    while pos < len(body) and body[pos:pos + 1] != b'\x00':
        code = chr(body[pos])
        end = body.index(b'\x00', pos + 1)
        fields[code] = body[pos + 1:end].decode(encoding, errors='replace')
        pos = end + 1
    return fields


def parse_authentication(body: bytes) -> Tuple[int, bytes]:
    """Authentication request: Int32 code + method specific data"""
    code = struct.unpack('!I', body[:4])[0]
    return code, body[4:]


def parse_sasl_mechanisms(data: bytes) -> List[str]:
    return [name for name in _split_cstrings(data) if name]


def parse_parameter_status(body: bytes, encoding: str = 'utf-8') -> Tuple[str, str]:
    parts = _split_cstrings(body, encoding)
    return parts[0], parts[1]


def parse_backend_key_data(body: bytes) -> Tuple[int, int]:
    return struct.unpack('!II', body[:8])


def parse_ready_for_query(body: bytes) -> bytes:
    return body[:1]


def parse_notification(body: bytes, encoding: str = 'utf-8') -> Notification:
    """NotificationResponse: Int32 pid + String channel + String payload"""
    pid = struct.unpack('!I', body[:4])[0]
    parts = _split_cstrings(body[4:], encoding)
    return Notification(pid=pid, channel=parts[0], payload=parts[1] if len(parts) > 1 else '')


def parse_command_complete(body: bytes, encoding: str = 'utf-8') -> str:
    return body.rstrip(b'\x00').decode(encoding, errors='replace')


def parse_row_description(body: bytes, encoding: str = 'utf-8') -> List[ColumnDescription]:
    """RowDescription: Int16 field count, then per field name + 18 bytes of metadata"""
    count = struct.unpack('!H', body[:2])[0]
    pos = 2
    columns = []
    for _ in range(count):
        end = body.index(b'\x00', pos)
        name = body[pos:end].decode(encoding, errors='replace')
        pos = end + 1
        table_oid, column_number, type_oid, type_size, type_modifier, format_code = struct.unpack(
            '!IhIhih', body[pos:pos + 18])
        pos += 18
        columns.append(ColumnDescription(name, table_oid, column_number, type_oid,
                                         type_size, type_modifier, format_code))
    return columns


def parse_data_row(body: bytes) -> Tuple[Optional[bytes], ...]:
    """DataRow: Int16 column count, then Int32 length (-1 for NULL) + bytes per column"""
    count = struct.unpack('!H', body[:2])[0]
    pos = 2
    values = []
    for _ in range(count):
        length = struct.unpack('!i', body[pos:pos + 4])[0]
        pos += 4
        if length == -1:
            values.append(None)
        else:
            values.append(bytes(body[pos:pos + length]))
            pos += length
    return tuple(values)


def rowcount_from_tag(tag: Optional[str]) -> int:
    """
    Affected row count from a CommandComplete tag.

    INSERT tags carry the oid before the count ("INSERT 0 5"); tags without
    a count (e.g. "CREATE TABLE") yield -1.
    """
    if not tag:
        return -1
    parts = tag.split()
    if len(parts) < 2 or not parts[-1].isdigit():
        return -1
    return int(parts[-1])
