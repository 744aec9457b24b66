import struct
from enum import IntEnum

from ntptimestamp import NTPtimestamp, host_to_ntp

# client request header, kept bit-exact: servers check version and mode
REQUEST_LEAP = 3  # unsynchronized
REQUEST_VERSION = 4
REQUEST_POLL = 4  # 2^4 = 16 seconds
REQUEST_PRECISION = -6  # ~15ms
REQUEST_ROOTDELAY = 256  # raw 32 bit value
REQUEST_ROOTDISPERSION = 256


class NTPmode(IntEnum):
    RESERVE = 0
    ACTIVE = 1
    PASSIVE = 2
    CLIENT = 3
    SERVER = 4
    BROADCAST = 5
    CONTROL = 6
    PRIVATE = 7


class MalformedPacket(ValueError):
    """datagram too short to hold an NTP header"""
    pass


class NTPpacket:
    _FORMAT = "!B B b b I I I I I I I I I I I"
    _SIZE = struct.calcsize(_FORMAT)
    _RANGES = {
        'leap': (0, 3), # 2 bits
        'version': (0, 7), # 3 bits
        'stratum': (0, 255), # 8 bits, unsigned. valid range: 1-15
        'poll': (-128, 127), # 8 bits, signed. log(poll) seconds
        'precision': (-128, 127), # 8 bits, signed. log(precision) seconds
        'rootdelay': (0, 0xFFFFFFFF), # 32 bits, unsigned
        'rootdispersion': (0, 0xFFFFFFFF), # 32 bit
        'refid': (0, 0xFFFFFFFF), # 32 bit string or IP address
    }
    _TIMESTAMPS = ('ref', 'org', 'rec', 'xmt')

    def __init__(
        self,
        leap=0,
        version=4,
        mode=NTPmode.CLIENT,
        stratum=0,
        poll=0,
        precision=0,
        rootdelay=0,
        rootdispersion=0,
        refid=0,
        ref=None,
        org=None,
        rec=None,
        xmt=None,
    ):
        # range check
        args = locals()
        args.pop('self')
        for field, (min_val, max_val) in self._RANGES.items():
            value = args[field]
            if not (min_val <= value <= max_val):
                raise ValueError(f"{field}: {value} outside valid range ({min_val}-{max_val})")
        args['mode'] = NTPmode(mode)
        for field in self._TIMESTAMPS:
            if args[field] is None:
                args[field] = NTPtimestamp()

        for field, value in args.items():
            setattr(self, field, value)

    @classmethod
    def request(cls, now: tuple) -> "NTPpacket":
        """client request carrying host time `now` as transmit timestamp"""
        return cls(
            leap=REQUEST_LEAP,
            version=REQUEST_VERSION,
            mode=NTPmode.CLIENT,
            stratum=0,
            poll=REQUEST_POLL,
            precision=REQUEST_PRECISION,
            rootdelay=REQUEST_ROOTDELAY,
            rootdispersion=REQUEST_ROOTDISPERSION,
            xmt=host_to_ntp(*now),
        )

    def to_bytes(self):
        li_vn_mode = (self.leap << 6) | (self.version << 3) | self.mode.value
        return struct.pack(
            self._FORMAT,
            li_vn_mode,
            self.stratum,
            self.poll,
            self.precision,
            self.rootdelay,
            self.rootdispersion,
            self.refid,
            self.ref.whole,
            self.ref.frac,
            self.org.whole,
            self.org.frac,
            self.rec.whole,
            self.rec.frac,
            self.xmt.whole,
            self.xmt.frac,
        )

    @classmethod
    def from_bytes(cls, data):
        """decode NTP header, trailing extension fields and MAC are ignored"""
        if len(data) < cls._SIZE:
            raise MalformedPacket(f"Datagram too short. Expected at least: {cls._SIZE}, got: {len(data)}")
        unpacked = struct.unpack_from(cls._FORMAT, data)
        li_vn_mode = unpacked[0]
        return cls(
            leap=(li_vn_mode >> 6) & 0b11,
            version=(li_vn_mode >> 3) & 0b111,
            mode=NTPmode(li_vn_mode & 0b111),
            stratum=unpacked[1],
            poll=unpacked[2],
            precision=unpacked[3],
            rootdelay=unpacked[4],
            rootdispersion=unpacked[5],
            refid=unpacked[6],
            ref=NTPtimestamp(unpacked[7], unpacked[8]),
            org=NTPtimestamp(unpacked[9], unpacked[10]),
            rec=NTPtimestamp(unpacked[11], unpacked[12]),
            xmt=NTPtimestamp(unpacked[13], unpacked[14]),
        )

    def __eq__(self, other):
        if not isinstance(other, NTPpacket):
            return False
        return vars(self) == vars(other)

    def __repr__(self) -> str:
        return (
            f"NTPpacket(leap={self.leap}, ver={self.version}, mode={self.mode.name}, "
            f"stratum={self.stratum}, poll={self.poll}, precision={self.precision}, "
            f"refid={self.refid:08x}, org={self.org}, rec={self.rec}, xmt={self.xmt})"
        )


def encode_request(now: tuple) -> bytes:
    """48 byte client request stamped with host time `now`"""
    return NTPpacket.request(now).to_bytes()


def decode_reply(data: bytes) -> NTPpacket:
    """passive decode, no validation of stratum, mode or checksum"""
    return NTPpacket.from_bytes(data)
