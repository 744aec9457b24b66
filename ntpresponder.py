import asyncio
import logging
import signal
import threading

from ntppacket import NTPmode, NTPpacket
from ntpsession import logconsole
from ntptimestamp import NTPtimestamp, SystemClock, host_to_ntp

REFID_LOCL = 0x4C4F434C  # 'LOCL' = "undisciplined local clock"
REFERENCE_AGE = 8  # seconds since the pretend last clock update


class NTPresponder(asyncio.DatagramProtocol):
    """answer client mode requests with server mode replies, for loopback testing"""
    def __init__(self, host=None, port=None, clock=None, verbose=0):
        self.host = host or "127.0.0.1"
        self.port = 123 if port is None else port
        self.clock = clock or SystemClock()
        self.transport = None
        self.loop = None
        self.stop_event = None
        self.ready = threading.Event()
        self.answered = 0
        self.error = None
        self.thread = None

        self.logger = logging.getLogger(type(self).__name__)
        if logconsole not in self.logger.handlers:
            self.logger.addHandler(logconsole)
        self.set_verbose(verbose)

    def handle_datagram(self, datagram, addr):
        """discard non-ntp and non-client traffic, answer the rest"""
        client = addr[0]
        try:
            request = NTPpacket.from_bytes(datagram)
        except ValueError:
            self.logger.debug(f"{client}: Dropped non-ntp datagram")
            return None
        if request.mode != NTPmode.CLIENT:
            self.logger.debug(f"{client}: Dropped {request.mode.name} mode datagram")
            return None
        return self.handle_ntp(request, addr)

    def handle_ntp(self, request: NTPpacket, addr) -> NTPpacket:
        """server reply, ref: RFC 4330"""
        received = host_to_ntp(*self.clock.now())
        reference = NTPtimestamp((received.whole - REFERENCE_AGE) & 0xFFFFFFFF, 0)
        reply = NTPpacket(
            leap=0,
            version=request.version,
            mode=NTPmode.SERVER,
            stratum=15,
            poll=request.poll,
            precision=-5,  # ~30ms
            rootdelay=0x1000,
            rootdispersion=0x1000,
            refid=REFID_LOCL,
            ref=reference,
            org=request.xmt,
            rec=received,
            xmt=host_to_ntp(*self.clock.now()),
        )
        self.logger.debug(f"{addr[0]}: Answering request, org={reply.org}")
        return reply

    def start_background(self, timeout=5):
        """start responder in background thread, returns once the socket is bound"""
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run_event_loop, name="ntp-responder", daemon=True)
        self.thread.start()
        if not self.ready.wait(timeout):
            raise TimeoutError(f"Responder did not start within {timeout}s")
        if self.error:
            raise self.error

    def _run_event_loop(self):
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_until_complete(self.start())
        except OSError as e:
            self.error = e
            self.logger.error(f"Responder failed: {e}")
        finally:
            self.ready.set()
            self.loop.close()

    def stop(self, timeout=5):
        """shutdown background event loop"""
        if self.loop and self.stop_event and not self.loop.is_closed():
            try:
                self.loop.call_soon_threadsafe(self._resolve_stop)
            except RuntimeError:
                self.logger.debug("Event loop already closed.")
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout)

    def _resolve_stop(self):
        if not self.stop_event.done():
            self.logger.debug("Resolving stop_event future")
            self.stop_event.set_result(None)

    async def start(self):
        """normal responder start, runs until stopped"""
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=(self.host, self.port))
        self.port = self.transport.get_extra_info("sockname")[1]
        self.stop_event = loop.create_future()
        self.logger.info(f"Responder started on {self.host}:{self.port}")
        self.ready.set()

        if threading.current_thread() is threading.main_thread():
            try:
                loop.add_signal_handler(signal.SIGINT, self._shutdown)
                loop.add_signal_handler(signal.SIGTERM, self._shutdown)
            except (NotImplementedError, RuntimeError):
                self.logger.warning("Signal handling is not supported in this context.")

        try:
            await self.stop_event
        except asyncio.CancelledError:
            self.logger.info("Responder shutting down.")
        finally:
            self.transport.close()
            self.logger.info(f"Shutdown complete. Answered {self.answered} requests.")

    def _shutdown(self):
        self.logger.info("Received termination signal.")
        self._resolve_stop()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        reply = self.handle_datagram(data, addr)
        if reply:
            self.answered += 1
            self.transport.sendto(reply.to_bytes(), addr)

    def error_received(self, exc):
        self.logger.warning(f"Socket error: {exc}")

    def set_verbose(self, level):
        self.logger.setLevel(logging.DEBUG if level > 0 else logging.INFO)
