import logging
import socket
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

from ntppacket import MalformedPacket, decode_reply, encode_request
from ntptimestamp import SystemClock, ntp_to_host

NTP_PORT = 123
DEFAULT_INTERVAL = 1.0  # seconds between requests
DEFAULT_POLL_TIMEOUT = 0.5  # seconds a read blocks before checking for shutdown
RECV_BUFSIZE = 1024  # room for extension fields and MAC
TIME_FORMAT = "%m-%d-%Y %H:%M:%S"
UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

formatter = logging.Formatter(
    fmt='%(asctime)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logconsole = logging.StreamHandler()
logconsole.setLevel(logging.DEBUG)
logconsole.setFormatter(formatter)


class ResolutionError(OSError):
    pass

class ConnectError(OSError):
    pass

class ReadFailure(OSError):
    """receive path broken, ends the session"""
    pass


def resolve(hostname: str) -> str:
    """hostname -> IPv4 address string"""
    try:
        return socket.gethostbyname(hostname)
    except (socket.gaierror, UnicodeError) as e:
        raise ResolutionError(f"Cannot resolve host '{hostname}': {e}") from e


class UDPChannel:
    """UDP socket connected to a single NTP server"""
    def __init__(self, address: str, port: int = NTP_PORT, timeout: float = DEFAULT_POLL_TIMEOUT):
        self.peer = (address, port)
        self.sock = None
        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.sock.settimeout(timeout)
            self.sock.connect(self.peer)
        except OSError as e:
            if self.sock:
                self.sock.close()
            raise ConnectError(f"Cannot open channel to {address}:{port}: {e}") from e

    def send(self, data: bytes) -> None:
        self.sock.send(data)

    def receive(self, bufsize: int = RECV_BUFSIZE) -> bytes:
        """blocks up to the poll timeout, raises socket.timeout when nothing arrived"""
        return self.sock.recv(bufsize)

    def close(self) -> None:
        if self.sock:
            self.sock.close()
            self.sock = None


def format_host_time(seconds: int, microseconds: int, tz=None) -> str:
    """(seconds since 1970, microseconds) -> 'MM-DD-YYYY HH:MM:SS.ffffff', local time unless tz given"""
    moment = (UNIX_EPOCH + timedelta(seconds=seconds)).astimezone(tz)
    return f"{moment.strftime(TIME_FORMAT)}.{microseconds:06d}"


class ReplyRecord:
    """host times reported for a single server reply"""
    def __init__(self, originate, receive, transmit, arrival):
        self.originate = originate
        self.receive = receive
        self.transmit = transmit
        self.arrival = arrival

    @classmethod
    def from_packet(cls, packet, arrival):
        return cls(
            originate=ntp_to_host(packet.org),
            receive=ntp_to_host(packet.rec),
            transmit=ntp_to_host(packet.xmt),
            arrival=arrival,
        )

    def __str__(self) -> str:
        return self.format()

    def format(self, tz=None) -> str:
        times = (self.originate, self.receive, self.transmit, self.arrival)
        return ", ".join(format_host_time(*t, tz=tz) for t in times)

    def __repr__(self) -> str:
        return (
            f"ReplyRecord(originate={self.originate}, receive={self.receive}, "
            f"transmit={self.transmit}, arrival={self.arrival})"
        )


def print_record(record: ReplyRecord) -> None:
    print(record, file=sys.stderr, flush=True)


class Transmitter:
    """send one request per tick, never waits for replies"""
    def __init__(self, channel, clock, interval=DEFAULT_INTERVAL):
        self.channel = channel
        self.clock = clock
        self.interval = interval
        self.sent = 0
        self.send_errors = 0
        self.logger = logging.getLogger(type(self).__name__)

    def run(self, stop_event: threading.Event) -> None:
        self.logger.debug(f"Sending requests every {self.interval}s")
        next_tick = time.monotonic()
        while not stop_event.is_set():
            self.send_one()
            next_tick += self.interval
            delay = next_tick - time.monotonic()
            if delay < 0:
                # fell behind, restart schedule from now
                next_tick = time.monotonic()
                delay = 0
            stop_event.wait(delay)
        self.logger.debug(f"Transmitter stopped after {self.sent} requests")

    def send_one(self) -> bool:
        request = encode_request(self.clock.now())
        try:
            self.channel.send(request)
        except OSError as e:
            self.send_errors += 1
            self.logger.warning(f"Send failed: {e}")
            return False
        self.sent += 1
        return True


class Receiver:
    """report the timestamps of every reply as it arrives"""
    def __init__(self, channel, clock, report=None, count=0):
        self.channel = channel
        self.clock = clock
        self.report = report or print_record
        self.count = count  # stop after this many replies, 0 runs until cancelled
        self.received = 0
        self.malformed = 0
        self.logger = logging.getLogger(type(self).__name__)

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                data = self.channel.receive()
            except socket.timeout:
                continue
            except OSError as e:
                self.logger.error(f"Receive failed: {e}")
                raise ReadFailure(f"Error reading from socket: {e}") from e
            arrival = self.clock.now()
            self.handle_datagram(data, arrival)
            if self.count and self.received >= self.count:
                self.logger.debug(f"Received {self.received} replies, done")
                return

    def handle_datagram(self, data: bytes, arrival: tuple) -> bool:
        try:
            packet = decode_reply(data)
        except MalformedPacket as e:
            self.malformed += 1
            self.logger.warning(f"Dropped malformed reply: {e}")
            return False
        self.logger.debug(packet)
        self.received += 1
        self.report(ReplyRecord.from_packet(packet, arrival))
        return True


class NTPsession:
    """run transmitter and receiver concurrently over one shared channel"""
    def __init__(self, channel, clock=None, interval=DEFAULT_INTERVAL, count=0, report=None, verbose=None):
        self.channel = channel
        self.clock = clock or SystemClock()
        self.stop_event = threading.Event()
        self.transmitter = Transmitter(channel, self.clock, interval)
        self.receiver = Receiver(channel, self.clock, report, count)
        self.error = None
        self._close_lock = threading.Lock()

        self.logger = logging.getLogger(type(self).__name__)
        if verbose is not None or self.logger.level == logging.NOTSET:
            self.set_verbose(verbose or 0)

    def run(self) -> int:
        """block until the receiver finishes, fails or the session is stopped"""
        threads = [
            threading.Thread(target=self._run_transmitter, name="ntp-transmitter", daemon=True),
            threading.Thread(target=self._run_receiver, name="ntp-receiver", daemon=True),
        ]
        for thread in threads:
            thread.start()
        self.logger.info(f"Session started with {self._peer_name()}")
        try:
            receiver_thread = threads[1]
            while receiver_thread.is_alive():
                receiver_thread.join(0.2)
        except KeyboardInterrupt:
            self.logger.info("Interrupted.")
            raise
        finally:
            self.stop()
            for thread in threads:
                thread.join()
            self.close()
            self.logger.info(
                f"Session ended. Sent: {self.transmitter.sent}, received: {self.receiver.received}, "
                f"malformed: {self.receiver.malformed}, send errors: {self.transmitter.send_errors}"
            )
        if self.error:
            raise self.error
        return self.receiver.received

    def _run_transmitter(self):
        try:
            self.transmitter.run(self.stop_event)
        except Exception as e:
            self.logger.error(f"Unhandled exception in transmitter: {e}", exc_info=True)
            self.error = self.error or e
            self.stop_event.set()

    def _run_receiver(self):
        try:
            self.receiver.run(self.stop_event)
        except ReadFailure as e:
            self.error = e
        except Exception as e:
            self.logger.error(f"Unhandled exception: {e}", exc_info=True)
            self.error = e
        finally:
            self.stop_event.set()

    def stop(self):
        """signal both loops to finish at their next suspension point"""
        if not self.stop_event.is_set():
            self.logger.debug("Stopping session...")
            self.stop_event.set()

    def close(self):
        with self._close_lock:
            if self.channel is not None:
                self.channel.close()
                self.channel = None
                self.logger.debug("Channel closed.")

    def _peer_name(self):
        peer = getattr(self.channel, "peer", None)
        return f"{peer[0]}:{peer[1]}" if peer else "server"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        self.close()
        return False

    def set_verbose(self, level):
        level_config = {
            0: {"session": logging.INFO, "loops": logging.WARNING},
            1: {"session": logging.DEBUG, "loops": logging.INFO},
            2: {"session": logging.DEBUG, "loops": logging.DEBUG},
        }
        config = level_config[min(max(level, 0), 2)]
        for logger, key in ((self.logger, "session"), (self.transmitter.logger, "loops"), (self.receiver.logger, "loops")):
            if logconsole not in logger.handlers:
                logger.addHandler(logconsole)
            logger.setLevel(config[key])
