"""
Command execution interface.

A Command binds SQL text to a connector; CommandResult is the raw
envelope the protocol states fill while interpreting the server's
responses. Field values stay undecoded bytes.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from .messages import CopyDirection, rowcount_from_tag


@dataclass
class CommandResult:
    command_text: str
    tag: Optional[str] = None
    columns: List[Any] = field(default_factory=list)
    rows: List[Tuple[Optional[bytes], ...]] = field(default_factory=list)
    copy_direction: Optional[CopyDirection] = None
    error: Optional[Exception] = None
    notices: List[dict] = field(default_factory=list)

    @property
    def rowcount(self) -> int:
        return rowcount_from_tag(self.tag)

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]


class Command:
    """SQL text to run on a connector"""

    def __init__(self, text: str, connector):
        self.text = text
        self.connector = connector
        self.last_result: Optional[CommandResult] = None

    def execute(self) -> CommandResult:
        try:
            self.last_result = self.connector.execute(self.text)
        except Exception as e:
            result = getattr(e, 'result', None)
            if result is not None:
                self.last_result = result
            raise
        return self.last_result

    def execute_non_query(self) -> int:
        """Run the command and return the affected row count (-1 when unknown)"""
        return self.execute().rowcount

    def __repr__(self):
        return f"Command({self.text!r})"
