"""
Engine created copy streams.

When a copy operation starts without a caller stream the COPY states
install one of these in the mediator: CopyInStream turns writes into
CopyData messages, CopyOutStream reads CopyData messages as bytes.
Closing or releasing a stream never sends anything to the server; the
copy operation's end()/cancel() does that.
"""

import io
from typing import Iterator, Optional


class CopyInStream(io.RawIOBase):
    """Writable byte sink forwarding each write as one CopyData message"""

    engine_owned = True

    def __init__(self, connector):
        super().__init__()
        self._connector = connector
        self.bytes_written = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self.closed:
            raise ValueError("write to a released COPY IN stream")
        if isinstance(data, str):
            data = data.encode(self._connector.encoding)
        data = bytes(data)
        if data:
            self._connector.send_copy_data(data)
            self.bytes_written += len(data)
        return len(data)

    def release(self) -> None:
        self.close()


class CopyOutStream(io.RawIOBase):
    """
    Readable byte source over the server's CopyData messages.

    Reaching end of data completes the COPY exchange on the connector.
    """

    engine_owned = True

    def __init__(self, connector):
        super().__init__()
        self._connector = connector
        self._pending = b''
        self._eof = False

    def readable(self) -> bool:
        return True

    def _next_chunk(self) -> Optional[bytes]:
        if self._eof:
            return None
        chunk = self._connector.receive_copy_data()
        if chunk is None:
            self._eof = True
        return chunk

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("read from a released COPY OUT stream")
        while not self._pending:
            chunk = self._next_chunk()
            if chunk is None:
                return 0
            self._pending = chunk
        count = min(len(buffer), len(self._pending))
        buffer[:count] = self._pending[:count]
        self._pending = self._pending[count:]
        return count

    def chunks(self) -> Iterator[bytes]:
        """
        Yield CopyData payloads as the server sent them.

        PostgreSQL sends one row per message for text and CSV formats.
        """
        if self.closed:
            raise ValueError("read from a released COPY OUT stream")
        if self._pending:
            pending, self._pending = self._pending, b''
            yield pending
        while True:
            chunk = self._next_chunk()
            if chunk is None:
                return
            yield chunk

    @property
    def at_eof(self) -> bool:
        return self._eof and not self._pending

    def release(self) -> None:
        self.close()
