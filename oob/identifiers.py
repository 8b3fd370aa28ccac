"""
Time-ordered operation identifiers.

An identifier is 16 bytes:

- 4 bytes: big-endian unix seconds at creation
- 5 bytes: random value chosen once per process
- 7 bytes: big-endian counter, randomly seeded, incremented per identifier

Byte order equals creation order at one-second resolution, so sorting by the
binary form (sqlite compares BLOBs with memcmp) is sorting by creation time.
"""

import os
import secrets
import threading
from datetime import datetime, timezone
from typing import Optional, Union

ID_LENGTH = 16
_TIME_BYTES = 4
_PROCESS_BYTES = 5
_COUNTER_BYTES = 7
_COUNTER_MAX = 1 << (_COUNTER_BYTES * 8)

_lock = threading.Lock()
_process_random = secrets.token_bytes(_PROCESS_BYTES)
_process_pid = os.getpid()
_counter = secrets.randbelow(_COUNTER_MAX)


def _next_tail() -> bytes:
    global _counter, _process_random, _process_pid
    with _lock:
        # A forked child must not share the parent's random/counter pair.
        if os.getpid() != _process_pid:
            _process_pid = os.getpid()
            _process_random = secrets.token_bytes(_PROCESS_BYTES)
        _counter = (_counter + 1) % _COUNTER_MAX
        return _process_random + _counter.to_bytes(_COUNTER_BYTES, "big")


def _to_epoch_seconds(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = int(dt.timestamp())
    if seconds < 0 or seconds >= 1 << (_TIME_BYTES * 8):
        raise ValueError(f"timestamp out of range for identifier: {dt.isoformat()}")
    return seconds


class OperationId:
    """Globally unique, creation-ordered identifier."""

    __slots__ = ("_binary",)

    def __init__(self, value: Optional[Union[str, bytes, "OperationId"]] = None):
        if value is None:
            seconds = _to_epoch_seconds(datetime.now(timezone.utc))
            self._binary = seconds.to_bytes(_TIME_BYTES, "big") + _next_tail()
        elif isinstance(value, OperationId):
            self._binary = value.binary
        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            if len(raw) != ID_LENGTH:
                raise ValueError(f"identifier must be {ID_LENGTH} bytes, got {len(raw)}")
            self._binary = raw
        elif isinstance(value, str):
            if len(value) != ID_LENGTH * 2:
                raise ValueError(f"identifier must be {ID_LENGTH * 2} hex characters")
            try:
                self._binary = bytes.fromhex(value)
            except ValueError:
                raise ValueError(f"identifier is not valid hex: {value!r}")
        else:
            raise TypeError(f"cannot build identifier from {type(value).__name__}")

    @classmethod
    def from_hex(cls, value: str) -> "OperationId":
        return cls(value)

    @classmethod
    def from_bytes(cls, value: bytes) -> "OperationId":
        return cls(value)

    @classmethod
    def from_datetime(cls, dt: datetime) -> "OperationId":
        """Smallest identifier for the second containing ``dt``.

        Every identifier generated during or after that second compares
        greater or equal, so it works as an exclusive upper bound for
        "created before dt" queries.
        """
        seconds = _to_epoch_seconds(dt)
        return cls(seconds.to_bytes(_TIME_BYTES, "big") + bytes(ID_LENGTH - _TIME_BYTES))

    @classmethod
    def is_valid(cls, value: str) -> bool:
        try:
            cls(value)
        except (ValueError, TypeError):
            return False
        return True

    @property
    def binary(self) -> bytes:
        return self._binary

    @property
    def hex(self) -> str:
        return self._binary.hex()

    @property
    def timestamp(self) -> int:
        return int.from_bytes(self._binary[:_TIME_BYTES], "big")

    @property
    def generation_time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def __str__(self) -> str:
        return self.hex

    def __repr__(self) -> str:
        return f"OperationId('{self.hex}')"

    def __eq__(self, other) -> bool:
        if isinstance(other, OperationId):
            return self._binary == other._binary
        return NotImplemented

    def __lt__(self, other: "OperationId") -> bool:
        if not isinstance(other, OperationId):
            return NotImplemented
        return self._binary < other._binary

    def __le__(self, other: "OperationId") -> bool:
        if not isinstance(other, OperationId):
            return NotImplemented
        return self._binary <= other._binary

    def __gt__(self, other: "OperationId") -> bool:
        if not isinstance(other, OperationId):
            return NotImplemented
        return self._binary > other._binary

    def __ge__(self, other: "OperationId") -> bool:
        if not isinstance(other, OperationId):
            return NotImplemented
        return self._binary >= other._binary

    def __hash__(self) -> int:
        return hash(self._binary)
