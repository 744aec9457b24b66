from ntpresponder import NTPresponder
from ntpsession import (
    DEFAULT_INTERVAL, DEFAULT_POLL_TIMEOUT, NTP_PORT,
    ConnectError, NTPsession, ReadFailure, ResolutionError, UDPChannel,
    logconsole, resolve,
)
from pathlib import Path
import argparse
import asyncio
import logging
import sys

try:
    __version__ = Path(__file__).parent.joinpath("VERSION").read_text().strip()
except FileNotFoundError:
    __version__ = "version ???" # VERSION file missing or unreadable

logger = logging.getLogger("ntpquery")
logger.addHandler(logconsole)


def build_parser():
    parser = argparse.ArgumentParser(description="ntpquery - peek at the timestamps of an NTP server")
    parser.add_argument("-p", "--port", type=int, default=NTP_PORT, help="Port number")
    parser.add_argument("-i", "--interval", type=float, default=DEFAULT_INTERVAL, help="Seconds between requests (client only)")
    parser.add_argument("-c", "--count", type=int, default=0, help="Exit after this many replies, 0 runs until interrupted (client only)")
    parser.add_argument("-t", "--timeout", type=float, default=DEFAULT_POLL_TIMEOUT, help="Socket poll timeout in seconds (client only)")
    parser.add_argument("-s", "--serve", action="store_true", help="Run loopback responder instead of querying [bind address] (default 127.0.0.1)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Verbose mode (repeatable)")
    parser.add_argument("remote", type=str, nargs='?', help="Time server host[:port]")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}", help="Show version and exit")
    return parser


def split_remote(remote, default_port):
    """RFC 3986 style host:port authority -> (host, port)"""
    hostname, _, port_string = remote.partition(":")
    try:
        port = int(port_string) if port_string else default_port
    except ValueError:
        raise ValueError(f"Invalid port: '{port_string}'")
    return hostname or None, port


def usage_error(parser, message):
    logger.error(message)
    parser.print_usage(sys.stderr)
    return 1


def serve(args, hostname, port):
    logger.info(f"ntpquery {__version__} starting in responder mode.")
    responder = NTPresponder(host=hostname, port=port, verbose=args.verbose)
    try:
        asyncio.run(responder.start())
    except OSError as e:
        logger.error(f"Cannot start responder: {e}")
        return 1
    return 0


def query(parser, args, hostname, port):
    try:
        address = resolve(hostname)
        channel = UDPChannel(address, port, timeout=args.timeout)
    except (ResolutionError, ConnectError) as e:
        return usage_error(parser, str(e))
    logger.debug(f"Resolved {hostname} to {address}")

    session = NTPsession(channel, interval=args.interval, count=args.count, verbose=args.verbose)
    try:
        session.run()
    except KeyboardInterrupt:
        return 0
    except ReadFailure as e:
        logger.error(e)
        return 1
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logger.setLevel(logging.DEBUG if args.verbose > 0 else logging.INFO)

    hostname, port = None, args.port
    if args.remote:
        try:
            hostname, port = split_remote(args.remote, args.port)
        except ValueError as e:
            return usage_error(parser, str(e))
    if not 1 <= port <= 65535 and not (args.serve and port == 0):
        return usage_error(parser, "Invalid port number")

    # responder mode
    if args.serve:
        return serve(args, hostname, port)

    # client mode
    if not hostname:
        return usage_error(parser, "Remote host required.")
    if args.interval <= 0 or args.timeout <= 0:
        return usage_error(parser, "Interval and timeout must be positive")
    if args.count < 0:
        return usage_error(parser, "Count must not be negative")
    return query(parser, args, hostname, port)


if __name__ == "__main__":
    sys.exit(main())
