"""Command-line entry points: the daemon and the client that feeds it."""

from __future__ import annotations

import argparse
import os
import queue
import socket
import stat
import sys
import threading
from collections.abc import Callable
from typing import BinaryIO, TextIO

from grafsy.client import Client, _dial
from grafsy.config import CONFIG_PATH, ConfigError, load_config
from grafsy.monitoring import Monitoring
from grafsy.server import Server

VERSION = "dev"
_CHUNK_SIZE = 65536

_CLIENT_DESCRIPTION = (
    "Reads metrics from files or STDIN and writes to grafsy LocalBind address.\n"
    "If STDIN contains something, then files will be ignored"
)


def _start(fatal: queue.Queue[BaseException], target: Callable[[], None]) -> None:
    def guarded() -> None:
        try:
            target()
        except BaseException as err:  # reported to main()
            fatal.put(err)

    threading.Thread(target=guarded, daemon=True).start()


def main(argv: list[str] | None = None) -> int:
    """Run the grafsy daemon."""
    parser = argparse.ArgumentParser(prog="grafsy")
    parser.add_argument("-c", dest="config", default=CONFIG_PATH, help="Path to config file.")
    parser.add_argument("-v", dest="version", action="store_true", help="Print version and exit")
    args = parser.parse_args(argv)

    if args.version:
        print(f"Version: {VERSION}")
        return 0

    try:
        conf = load_config(args.config)
    except ConfigError as err:
        print(err)
        return 1

    try:
        lc = conf.generate_local_config()
    except ConfigError as err:
        print(err)
        return 2

    mon = Monitoring(conf, lc)
    client = Client(conf, lc, mon)
    server = Server(conf, lc, mon)

    fatal: queue.Queue[BaseException] = queue.Queue()
    for target in (mon.run, server.run, client.run):
        _start(fatal, target)
    err = fatal.get()
    lc.logger.error("%s", err)
    print(err)
    return 1


def _stdin_has_data(stream: TextIO | BinaryIO) -> bool:
    """Whether standard input is a pipe or file rather than a terminal."""
    try:
        fd = stream.fileno()
    except (OSError, ValueError, AttributeError):
        return True
    return not stat.S_ISCHR(os.fstat(fd).st_mode)


def _copy(source: BinaryIO, conn: socket.socket) -> None:
    while chunk := source.read(_CHUNK_SIZE):
        conn.sendall(chunk)


def client_main(argv: list[str] | None = None) -> int:
    """Send metrics from files or standard input to the local grafsy daemon."""
    parser = argparse.ArgumentParser(
        prog="grafsy-client",
        usage="%(prog)s [args] [file1 [fileN...]]\n   Or: metrics-generator | %(prog)s [args]",
        description=_CLIENT_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", dest="config", default=CONFIG_PATH, help="Path to config file.")
    parser.add_argument("-v", dest="version", action="store_true", help="Print version and exit")
    parser.add_argument("-w", dest="timeout", type=int, default=50, help="Timeout")
    parser.add_argument("files", nargs="*", help=argparse.SUPPRESS)
    args = parser.parse_args(argv)

    if args.version:
        print(f"Version: {VERSION}")
        return 0

    try:
        conf = load_config(args.config)
    except ConfigError as err:
        print(err, file=sys.stderr)
        return 1

    try:
        conn = _dial(conf.local_bind, args.timeout)
    except OSError as err:
        print(f"Fail to establish connection: {err}", file=sys.stderr)
        return 1

    with conn:
        stdin = sys.stdin
        try:
            piped = _stdin_has_data(stdin)
        except OSError as err:
            print(f"Error in STDIN: {err}", file=sys.stderr)
            return 1

        if piped:
            _copy(getattr(stdin, "buffer", stdin), conn)
            return 0

        if not args.files:
            parser.print_help(sys.stderr)

        for file_name in args.files:
            try:
                handle = open(file_name, "rb")
            except OSError as err:
                print(f"Failed to open file {file_name}: {err}", file=sys.stderr)
                continue
            with handle:
                _copy(handle, conn)
    return 0