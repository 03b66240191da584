import argparse
import os
import sys
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

from .app import ServerContext
from .config import (
    PROG_NAME,
    UNLIMITED,
    UPLOAD_PAGE_PATH,
    OfferConfig,
    __version__,
    default_log_file,
    default_max_bytes,
    default_port,
    default_temp_dir,
    parse_credentials,
)
from .errors import ConfigError, OfferError
from .logs import configure_logging, get_logger
from .payload import resolve_payload
from .server import OfferServer

logger = get_logger("offer.lifecycle")


def parse_address(value: str, default_port_value: int) -> Tuple[str, int]:
    """Split ``host:port``; either side may be empty."""

    host, sep, port_text = value.rpartition(":")
    if not sep:
        host, port_text = value, ""
    host = host.strip("[]") or "0.0.0.0"
    if not port_text:
        return host, default_port_value
    try:
        return host, int(port_text)
    except ValueError as error:
        raise ConfigError(f"{value}: invalid address") from error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="Offer a file (or standard input) over HTTP for a limited number of requests.",
    )
    parser.add_argument("source", nargs="?", default=None, help="file to offer, - or nothing for stdin")
    parser.add_argument("-a", "--address", default=f":{default_port()}", help="server address:port")
    parser.add_argument("-b", "--buffer-size", type=int, default=default_max_bytes(), help="buffer size in bytes")
    parser.add_argument("-k", "--keep", action="store_true", help="don't remove stored stdin file")
    parser.add_argument("--tempdir", default=str(default_temp_dir()), help="temporary directory for storing stdin in a file")
    parser.add_argument("-f", "--filename", default=None, help="Content-Disposition attachment filename")
    parser.add_argument("-n", "--count", type=int, default=UNLIMITED, help="number of requests to serve before exiting (-1 for unlimited)")
    parser.add_argument("-s", "--stream", action="store_true", help="stream stdin to a single request without buffering")
    parser.add_argument("-r", "--receive", action="store_true", help="receive uploads instead of offering a file")
    parser.add_argument("-o", "--output", default="-", help="receive destination: -, a directory or a file path")
    parser.add_argument("-t", "--timeout", type=float, default=0.0, help="seconds before shutting down, 0 for never")
    parser.add_argument("-u", "--user", default=None, metavar="USER:PASS", help="require basic authentication")
    parser.add_argument("--log", action="store_true", help="enable verbose logging")
    parser.add_argument("--version", action="version", version=f"{PROG_NAME} {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> OfferConfig:
    host, port = parse_address(args.address, default_port())
    return OfferConfig(
        host=host,
        port=port,
        source=args.source,
        max_bytes=args.buffer_size,
        keep=args.keep,
        temp_dir=Path(args.tempdir),
        filename=args.filename,
        count=args.count,
        stream=args.stream,
        receive=args.receive,
        output=args.output,
        timeout=args.timeout,
        credentials=parse_credentials(args.user),
        verbose=args.log,
        log_file=default_log_file(),
    ).validate()


def run(config: OfferConfig, stdin: BinaryIO) -> str:
    if config.receive:
        context = ServerContext.build(config, upload_page=UPLOAD_PAGE_PATH.read_bytes())
    else:
        context = ServerContext.build(config, payload=resolve_payload(config, stdin))
    return OfferServer(context).serve()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ConfigError as error:
        print(f"{PROG_NAME}: {error}", file=sys.stderr)
        return 1

    configure_logging(config.verbose, config.log_file)
    logger.info("%s %s pid %d", PROG_NAME, __version__, os.getpid())

    try:
        run(config, sys.stdin.buffer)
    except (OfferError, OSError) as error:
        logger.error("run_failed error=%s", error)
        print(f"{PROG_NAME}: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
