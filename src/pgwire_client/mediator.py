"""
Per-connection exchange scratch area.

Writers of each field:
- copy_stream, copy_direction: copy operations (start/end/cancel) reserve
  and clear them together; the COPY states replace copy_stream when they
  install an engine created stream during start
- copy_buffer_size: the caller, before a copy starts
- notices: the state functions (reset at the start of every exchange)
"""

from typing import Any, List, Optional

from .config import DEFAULT_COPY_BUFFER_SIZE


class Mediator:
    """Hand-off point between copy operations and the protocol states"""

    __slots__ = ('copy_stream', 'copy_direction', '_copy_buffer_size', 'notices')

    def __init__(self, copy_buffer_size: int = DEFAULT_COPY_BUFFER_SIZE):
        self.copy_stream: Optional[Any] = None
        # CopyDirection the reserving operation expects; caller streams are only used for it
        self.copy_direction = None
        self._copy_buffer_size = DEFAULT_COPY_BUFFER_SIZE
        self.copy_buffer_size = copy_buffer_size
        self.notices: List[Any] = []

    @property
    def copy_buffer_size(self) -> int:
        return self._copy_buffer_size

    @copy_buffer_size.setter
    def copy_buffer_size(self, value: int) -> None:
        if not isinstance(value, int) or value <= 0:
            raise ValueError(f"copy_buffer_size must be a positive integer, got {value!r}")
        self._copy_buffer_size = value

    def reserve_copy(self, stream: Any, direction) -> None:
        self.copy_stream = stream
        self.copy_direction = direction

    def clear_copy(self) -> None:
        self.copy_stream = None
        self.copy_direction = None

    def reset_exchange(self) -> None:
        self.notices = []
