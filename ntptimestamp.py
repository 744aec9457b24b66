import struct
import time

from abc import ABC, abstractmethod

UNIX_TO_NTP = 2208988800  # seconds between 1900-01-01 and 1970-01-01
FRAC_SCALE = 2**32
USEC_PER_SEC = 1_000_000


class NTPtimestamp:
    """64-bit NTP fixed point time: 32 bit seconds since 1900 + 32 bit binary fraction"""
    _FORMAT = "!I I"
    _SIZE = struct.calcsize(_FORMAT)

    def __init__(self, whole=0, frac=0):
        for field, value in (('whole', whole), ('frac', frac)):
            if not (0 <= value <= 0xFFFFFFFF):
                raise ValueError(f"{field}: {value} outside valid range (0-{0xFFFFFFFF})")
        self.whole = whole
        self.frac = frac

    @classmethod
    def from_host(cls, seconds: int, microseconds: int) -> "NTPtimestamp":
        return host_to_ntp(seconds, microseconds)

    def to_host(self) -> tuple:
        return ntp_to_host(self)

    def to_bytes(self) -> bytes:
        return struct.pack(self._FORMAT, self.whole, self.frac)

    @classmethod
    def from_bytes(cls, data):
        if len(data) != cls._SIZE:
            raise ValueError(f"Invalid timestamp size. Expected: {cls._SIZE}, got: {len(data)}")
        return cls(*struct.unpack(cls._FORMAT, data))

    def __eq__(self, other):
        if not isinstance(other, NTPtimestamp):
            return False
        return (self.whole, self.frac) == (other.whole, other.frac)

    def __repr__(self) -> str:
        return f"NTPtimestamp(whole={self.whole}, frac=0x{self.frac:08x})"


def ntp_to_host(ts: NTPtimestamp) -> tuple:
    """NTP timestamp -> (seconds since 1970, microseconds), fraction truncated"""
    seconds = ts.whole - UNIX_TO_NTP
    microseconds = (ts.frac * USEC_PER_SEC) // FRAC_SCALE
    return seconds, microseconds


def host_to_ntp(seconds: int, microseconds: int) -> NTPtimestamp:
    """(seconds since 1970, microseconds) -> NTP timestamp, fraction rounded

    Seconds past the end of era 0 (Feb 2036) wrap around, as they do on the wire.
    """
    if not (0 <= microseconds < USEC_PER_SEC):
        raise ValueError(f"microseconds: {microseconds} outside valid range (0-{USEC_PER_SEC - 1})")
    whole = (seconds + UNIX_TO_NTP) & 0xFFFFFFFF
    frac = (microseconds * FRAC_SCALE + USEC_PER_SEC // 2) // USEC_PER_SEC
    return NTPtimestamp(whole, frac)


class HostClock(ABC):
    @abstractmethod
    def now(self) -> tuple:
        """current host time as (seconds since 1970, microseconds)"""
        pass


class SystemClock(HostClock):
    def now(self) -> tuple:
        """wall clock time"""
        seconds, nanoseconds = divmod(time.time_ns(), 1_000_000_000)
        return seconds, nanoseconds // 1000


class MockClock(HostClock):
    def __init__(self, seconds=0, microseconds=0, step=0):
        self.seconds = seconds
        self.microseconds = microseconds
        self.step = step  # microseconds added after every reading

    def now(self) -> tuple:
        """deterministic time for testing"""
        current = (self.seconds, self.microseconds)
        self.advance(self.step)
        return current

    def advance(self, microseconds: int) -> None:
        carry, self.microseconds = divmod(self.microseconds + microseconds, USEC_PER_SEC)
        self.seconds += carry
