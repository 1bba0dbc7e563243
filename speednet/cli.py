"""
speednet - network throughput tester

Usage - server:
    speednet server --port 4000

Usage - TCP upload with 4 parallel streams for 10 seconds:
    speednet client 192.0.2.1 --parallel 4 --time 10

Usage - UDP download shaped to 100 Mbit/s:
    speednet client 192.0.2.1 --udp --revert --bandwidth 100000000 --len 1400
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from .client import run_client
from .config import Direction, ServerConfig, TestConfig, TransportKind, load_env_overrides
from .constants import DEFAULT_BUFFER_LEN, DEFAULT_DURATION, DEFAULT_PARALLEL, DEFAULT_PORT
from .errors import SpeednetError
from .pktgenerator import ProgressUpdate
from .server import run_server

logger = logging.getLogger("Speednet")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def setup_logging(log_level: str = "INFO"):
    """
    Setup logging configuration

    Args:
        log_level: Logging level
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speednet",
        description="speednet - network throughput tester",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:

  # Server on the default port:
  speednet server

  # TCP upload, 4 streams, 30 seconds:
  speednet client 192.0.2.1 -P 4 -t 30

  # UDP download at 10 Mbit/s with DSCP EF:
  speednet client 192.0.2.1 -u -R -b 10000000 -d 46
        """
    )
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    client = subparsers.add_parser("client", help="Run in client mode, connecting to the specified server")
    client.add_argument("hostname", help="speednet server hostname")
    client.add_argument("-p", "--port", type=int, default=None,
                        help=f"speednet server control port (default: {DEFAULT_PORT})")
    client.add_argument("-u", "--udp", action="store_true",
                        help="Use UDP data streams")
    client.add_argument("-R", "--revert", action="store_true",
                        help="Server sends, client receives")
    client.add_argument("-d", "--dscp", type=int, default=None,
                        help="DSCP value for data streams")
    client.add_argument("-m", "--mark", type=int, default=None,
                        help="Firewall mark for data streams")
    client.add_argument("-B", "--bind", default=None,
                        help="Local address to bind to")
    client.add_argument("-b", "--bandwidth", type=int, default=None,
                        help="Target bandwidth in bits/sec (default: unlimited)")
    client.add_argument("-P", "--parallel", type=int, default=DEFAULT_PARALLEL,
                        help="Number of parallel streams")
    client.add_argument("-l", "--len", dest="length", type=int, default=DEFAULT_BUFFER_LEN,
                        help="Buffer length in bytes")
    client.add_argument("-t", "--time", type=int, default=DEFAULT_DURATION,
                        help="Test duration in seconds")
    client.add_argument("--json", action="store_true",
                        help="Print the stream reports as JSON")

    server = subparsers.add_parser("server", help="Run in server mode")
    server.add_argument("-B", "--bind", default=None,
                        help="Address to listen on (default: all, dual stack)")
    server.add_argument("-p", "--port", type=int, default=None,
                        help=f"Port to listen on (default: {DEFAULT_PORT})")

    return parser


def config_from_args(args: argparse.Namespace, port: int) -> TestConfig:
    """Build the test configuration from client arguments"""
    return TestConfig(
        hostname=args.hostname,
        port=port,
        transport=TransportKind.UDP if args.udp else TransportKind.TCP,
        direction=Direction.DOWNLOAD if args.revert else Direction.UPLOAD,
        dscp=args.dscp,
        mark=args.mark,
        bind=args.bind,
        bandwidth=args.bandwidth,
        parallel=args.parallel,
        length=args.length,
        time=args.time,
    )


def log_progress(stream_id: int, update: ProgressUpdate) -> None:
    if update.pktcount_expected:
        logger.info(
            f"[Client] stream {stream_id}: elapsed {update.elapsed_seconds}s "
            f"pkts {update.pktcount} expected {update.pktcount_expected}"
        )
    else:
        logger.info(
            f"[Client] stream {stream_id}: elapsed {update.elapsed_seconds}s "
            f"pkts {update.pktcount}"
        )


async def speednet_client(config: TestConfig, as_json: bool = False) -> int:
    report = await run_client(config, log_progress)

    if as_json:
        print(report.to_json())
    else:
        print(f"speednet test {report.test_id} to {config.hostname}:{config.port}")
        for stream in report.streams:
            print(f"  {stream.summary()}")
        print(f"  total: {report.total_bytes} bytes, {report.total_mbps:.2f} Mbps, "
              f"local cpu {report.cpu_utilization_local:.1f}%")
    return EXIT_OK


async def speednet_server(config: ServerConfig) -> int:
    await run_server(config)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    env = load_env_overrides()
    setup_logging(args.log_level or env.get("log_level", "INFO"))

    port = args.port if args.port is not None else env.get("port", DEFAULT_PORT)

    try:
        if args.command == "client":
            try:
                config = config_from_args(args, port)
            except ValidationError as e:
                print(f"Error: invalid client arguments:\n{e}")
                return EXIT_FAILURE
            return asyncio.run(speednet_client(config, args.json))

        bind = args.bind if args.bind is not None else env.get("bind")
        return asyncio.run(speednet_server(ServerConfig(bind=bind, port=port)))

    except KeyboardInterrupt:
        print("\nShutting down...")
        return EXIT_INTERRUPTED
    except SpeednetError as e:
        print(f"Fatal error: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
