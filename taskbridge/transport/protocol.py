"""Wire format of the loopback notification protocol.

Newline-delimited ASCII, one command per line::

    PING            -> PONG
    <task id>       -> READY once the task resolves, ERR if unknown
    WATCH           -> stream of "<task id>" lines as tasks resolve
    anything else   -> ERR
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

PING = b"PING"
PONG = b"PONG"
READY = b"READY"
ERR = b"ERR"
WATCH = b"WATCH"

NEWLINE = b"\n"
MAX_LINE = 64


@dataclass(frozen=True, slots=True)
class Ping:
    pass


@dataclass(frozen=True, slots=True)
class Watch:
    pass


@dataclass(frozen=True, slots=True)
class WaitFor:
    task_id: int


@dataclass(frozen=True, slots=True)
class Invalid:
    raw: bytes


Request: TypeAlias = Ping | Watch | WaitFor | Invalid


def encode(token: bytes | int) -> bytes:
    if isinstance(token, int):
        token = str(token).encode("ascii")
    return token + NEWLINE


def parse_request(line: bytes) -> Request:
    """Decode one request line (terminator optional)."""
    token = line.strip()
    match token:
        case b"PING":
            return Ping()
        case b"WATCH":
            return Watch()
        case _ if token.isdigit() and len(token) <= MAX_LINE:
            return WaitFor(int(token))
        case _:
            return Invalid(token)


def parse_task_id(line: bytes) -> int | None:
    """Decode a pushed task id line. Returns None for anything that is not one."""
    token = line.strip()
    if not token.isdigit():
        return None
    return int(token)
