"""CLI entry point for h2perf."""

import argparse
import asyncio
import logging
import ssl
import sys

from h2perf import __version__
from h2perf import http1
from h2perf.api import create_app
from h2perf.certs import generate_self_signed_cert
from h2perf.client import run_client
from h2perf.config import ServerConfig
from h2perf.transport import serve

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger("h2perf")

DEFAULT_CERT = ServerConfig.certfile
DEFAULT_KEY = ServerConfig.keyfile


def build_parser():
    parser = argparse.ArgumentParser(
        prog="h2perf",
        description="HTTP/2+TLS server for JavaScript performance testing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  h2perf gencert --ip-addr 127.0.0.1           # Write testdata/cert.pem and key.pem
  h2perf server -A 127.0.0.1 -p 4444           # Serve HTTP/2 (GET/PUT /api/{size})
  h2perf server --http1                        # Serve the same API over HTTP/1.1
  h2perf client -p 4444 --size 1048576 -n 10   # Time ten 1 MiB downloads
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    server = commands.add_parser("server", help="Run the benchmark server")
    server.add_argument("-A", "--address", default=ServerConfig.address, help="Listen IP address (default: %(default)s)")
    server.add_argument("-p", "--port", type=int, help="Listen TCP port (default: 4444, or 4443 with --http1)")
    server.add_argument("--cert", default=DEFAULT_CERT, metavar="FILE", help="TLS certificate (default: %(default)s)")
    server.add_argument("--key", default=DEFAULT_KEY, metavar="FILE", help="TLS private key (default: %(default)s)")
    server.add_argument(
        "--static-dir",
        metavar="DIR",
        help="Serve static files from DIR (default: ./static/http2, or ./static/http1 with --http1)",
    )
    server.add_argument("--http1", action="store_true", help="Serve HTTP/1.1+TLS instead of HTTP/2")
    server.add_argument(
        "--request-timeout",
        type=float,
        default=ServerConfig.request_timeout,
        metavar="SECONDS",
        help="Reset HTTP/2 streams still running after SECONDS, 0 disables (default: %(default)s)",
    )

    gencert = commands.add_parser("gencert", help="Generate a self-signed certificate for local testing")
    gencert.add_argument("--cert", default=DEFAULT_CERT, metavar="FILE", help="Certificate output (default: %(default)s)")
    gencert.add_argument("--key", default=DEFAULT_KEY, metavar="FILE", help="Private key output (default: %(default)s)")
    gencert.add_argument("--ip-addr", default="127.0.0.1", metavar="ADDR", help="IP address to certify (default: %(default)s)")
    gencert.add_argument("--hostname", default="localhost", help="DNS name to certify (default: %(default)s)")
    gencert.add_argument("--days", type=int, default=30, help="Validity in days (default: %(default)s)")

    client = commands.add_parser("client", help="Time GET or PUT transfers against a running server")
    client.add_argument("-A", "--address", default=ServerConfig.address, help="Server address (default: %(default)s)")
    client.add_argument("-p", "--port", type=int, default=ServerConfig.port, help="Server port (default: %(default)s)")
    client.add_argument("--size", type=int, default=1 << 20, help="Bytes per transfer (default: %(default)s)")
    client.add_argument("-n", "--iterations", type=int, default=1, help="Number of transfers (default: %(default)s)")
    client.add_argument("--upload", action="store_true", help="PUT instead of GET")
    client.add_argument("--cert", default=DEFAULT_CERT, metavar="FILE", help="Trust this certificate (default: %(default)s)")
    client.add_argument("--insecure", action="store_true", help="Skip certificate verification")
    client.add_argument("-o", "--output", metavar="PATH", help="Append the summary to a .csv or .xlsx file")
    return parser


def run_server_command(args):
    config = ServerConfig(
        address=args.address,
        port=args.port if args.port is not None else (http1.DEFAULT_PORT if args.http1 else ServerConfig.port),
        certfile=args.cert,
        keyfile=args.key,
        static_dir=args.static_dir or (http1.DEFAULT_STATIC_DIR if args.http1 else ServerConfig.static_dir),
        request_timeout=args.request_timeout,
    )
    app = create_app(config.static_dir)
    try:
        if args.http1:
            http1.run_server(app, config)
        else:
            asyncio.run(serve(app, config))
    except (ValueError, OSError) as e:
        logger.error(f"Cannot start server on {config.bind}: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("interrupted")


def run_gencert_command(args):
    try:
        generate_self_signed_cert(args.cert, args.key, ip_addr=args.ip_addr, hostname=args.hostname, days=args.days)
    except (ValueError, OSError) as e:
        logger.error(f"Cannot generate certificate: {e}")
        sys.exit(1)


def run_client_command(args):
    if args.insecure:
        verify = False
    else:
        try:
            verify = ssl.create_default_context(cafile=args.cert)
        except OSError as e:
            logger.error(f"Cannot load certificate {args.cert}: {e} (use --insecure to skip verification)")
            sys.exit(1)
    summary = run_client(
        args.address,
        args.port,
        args.size,
        args.iterations,
        upload=args.upload,
        verify=verify,
        output=args.output,
    )
    if summary["Failed Transfers"]:
        sys.exit(1)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == "server":
        run_server_command(args)
    elif args.command == "gencert":
        run_gencert_command(args)
    elif args.command == "client":
        run_client_command(args)


if __name__ == "__main__":
    main()
