"""Parser for the OpenVPN management interface replies.

The interface is line oriented. A reply to ``state`` is one data line::

    1700000000,CONNECTED,SUCCESS,10.8.0.6,92.202.199.250

followed by ``END``. A reply to ``status`` is a block of ``label,value``
lines followed by ``END``. Either may be interleaved with asynchronous
notifications starting with ``>``. One-shot commands such as
``signal SIGTERM`` answer with a single ``SUCCESS:`` or ``ERROR:`` line.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import ProtocolParseError
from .models import ConnectionStatus, ManagementState

STATE_LINE = re.compile(r"^\d+,")

READ_BYTES_LABEL = "TCP/UDP read bytes"
WRITE_BYTES_LABEL = "TCP/UDP write bytes"


class LineKind(Enum):
    NOTIFICATION = "notification"
    END = "end"
    SUCCESS = "success"
    ERROR = "error"
    DATA = "data"


@dataclass(frozen=True)
class Line:
    kind: LineKind
    text: str


def tokenize(response: str) -> list[Line]:
    """Split a raw reply into classified, stripped, non-empty lines."""
    lines = []
    for raw in response.splitlines():
        text = raw.strip()
        if not text:
            continue
        if text.startswith(">"):
            kind = LineKind.NOTIFICATION
        elif text == "END":
            kind = LineKind.END
        elif text.startswith("SUCCESS:"):
            kind = LineKind.SUCCESS
        elif text.startswith("ERROR:"):
            kind = LineKind.ERROR
        else:
            kind = LineKind.DATA
        lines.append(Line(kind, text))
    return lines


def is_terminal(line: str) -> bool:
    """True if the line ends a reply."""
    text = line.strip()
    return text == "END" or text.startswith("SUCCESS:") or text.startswith("ERROR:")


@dataclass(frozen=True)
class StateReport:
    """Parsed reply to ``state``.

    The fourth field is the tunnel address assigned to this client, the
    fifth the relay's address, which is the public egress address.
    """
    timestamp: int
    state: ManagementState
    token: str
    description: str
    tunnel_ip: Optional[str]
    remote_ip: Optional[str]

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.state.connection_status


@dataclass(frozen=True)
class StatusReport:
    """Parsed reply to ``status``."""
    bytes_received: Optional[int]
    bytes_sent: Optional[int]


def _raise_on_error(lines: list[Line]) -> None:
    for line in lines:
        if line.kind is LineKind.ERROR:
            raise ProtocolParseError(f"Management interface error: {line.text}")


def _field(parts: list[str], index: int) -> Optional[str]:
    if len(parts) <= index:
        return None
    value = parts[index].strip()
    return value or None


def parse_state(response: str) -> StateReport:
    lines = tokenize(response)
    _raise_on_error(lines)
    for line in lines:
        if line.kind is not LineKind.DATA or not STATE_LINE.match(line.text):
            continue
        parts = line.text.split(",")
        token = parts[1].strip()
        return StateReport(
            timestamp=int(parts[0]),
            state=ManagementState.from_token(token),
            token=token,
            description=_field(parts, 2) or "",
            tunnel_ip=_field(parts, 3),
            remote_ip=_field(parts, 4),
        )
    raise ProtocolParseError("No state line in management response")


def _counter(text: str, label: str) -> Optional[int]:
    if label not in text:
        return None
    _, sep, value = text.partition(",")
    if not sep:
        return None
    try:
        return int(value.strip())
    except ValueError:
        raise ProtocolParseError(f"Invalid byte counter: {text}")


def parse_status(response: str) -> StatusReport:
    lines = tokenize(response)
    _raise_on_error(lines)
    received = sent = None
    for line in lines:
        if line.kind is not LineKind.DATA:
            continue
        if received is None:
            received = _counter(line.text, READ_BYTES_LABEL)
        if sent is None:
            sent = _counter(line.text, WRITE_BYTES_LABEL)
    if received is None and sent is None:
        raise ProtocolParseError("No byte counters in status response")
    return StatusReport(bytes_received=received, bytes_sent=sent)


def parse_command_result(response: str) -> bool:
    """True unless the reply carries an ``ERROR:`` line."""
    return all(line.kind is not LineKind.ERROR for line in tokenize(response))
