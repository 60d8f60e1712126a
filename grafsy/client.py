"""Sending buffered metrics to the carbon servers, with a retry file per server."""

from __future__ import annotations

import os
import queue
import socket
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import BinaryIO

from grafsy.config import Config, LocalConfig, _split_host_port
from grafsy.metric import count_lines, read_metrics_from_file
from grafsy.monitoring import Monitoring
from grafsy.server import _lookup_port, _take
from grafsy.supervisor import Supervisor

_RETRY_DIR_MODE = 0o750
_RETRY_FILE_MODE = 0o600
_DISTRIBUTE_INTERVAL = 1


def _dial(address: str, timeout: float) -> socket.socket:
    """Open a TCP connection to ``host:port`` within ``timeout`` seconds."""
    try:
        host, port_text = _split_host_port(address)
        port = _lookup_port(port_text)
    except ValueError as err:
        raise OSError(str(err)) from err
    return socket.create_connection((host or "localhost", port), timeout=timeout)


def _open_retry(path: str) -> BinaryIO:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, _RETRY_FILE_MODE)
    return os.fdopen(fd, "ab")


def _encode(metric: str) -> bytes:
    return (metric + "\n").encode("utf-8", "surrogateescape")


@dataclass
class Client:
    """Distributes metrics to one queue per carbon server and sends them periodically."""

    conf: Config
    lc: LocalConfig
    mon: Monitoring
    main_queues: dict[str, queue.Queue[str]] = field(init=False, repr=False)
    mon_queues: dict[str, queue.Queue[str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.main_queues = {
            addr: queue.Queue(maxsize=self.lc.main_queue.maxsize) for addr in self.conf.carbon_addrs
        }
        self.mon_queues = {
            addr: queue.Queue(maxsize=self.lc.monitoring_queue.maxsize)
            for addr in self.conf.carbon_addrs
        }

    def _retry_path(self, carbon_addr: str) -> str:
        return os.path.join(self.conf.retry_dir, carbon_addr)

    def create_retry_dir(self) -> None:
        """Create the directory that holds the retry files."""
        os.makedirs(self.conf.retry_dir, mode=_RETRY_DIR_MODE, exist_ok=True)

    def save_slice_to_retry(self, metrics: list[str], carbon_addr: str) -> None:
        """Append ``metrics`` to the retry file of ``carbon_addr`` and trim it.

        Raises ``OSError`` when the retry file cannot be opened; the metrics
        are then counted as dropped.
        """
        logger = self.lc.logger
        logger.info("Resaving %d metrics back to the retry-file", len(metrics))
        try:
            handle = _open_retry(self._retry_path(carbon_addr))
        except OSError as err:
            logger.error("%s", err)
            self.mon.increase_client(carbon_addr, "dropped", len(metrics))
            raise

        dropped = 0
        with handle:
            for metric in metrics:
                try:
                    handle.write(_encode(metric))
                except OSError as err:
                    logger.error("%s", err)
                    dropped += 1
        if dropped:
            self.mon.increase_client(carbon_addr, "dropped", dropped)
        self.remove_old_data_from_retry_file(carbon_addr)

    def save_queue_to_retry(self, queue: queue.Queue[str], size: int, carbon_addr: str) -> int:
        """Move up to ``size`` metrics from ``queue`` to the retry file.

        A ``size`` of 0 moves everything currently queued. Returns the number
        of metrics saved.
        """
        logger = self.lc.logger
        if size == 0:
            size = queue.qsize()
        logger.info("Saving %d metrics from channel to the retry-file", size)

        handle: BinaryIO | None
        try:
            handle = _open_retry(self._retry_path(carbon_addr))
        except OSError as err:
            logger.error("%s", err)
            handle = None

        saved = dropped = 0
        try:
            for metric in _take(queue, size):
                if handle is None:
                    dropped += 1
                    continue
                try:
                    handle.write(_encode(metric))
                    saved += 1
                except OSError as err:
                    logger.error("%s", err)
                    dropped += 1
        finally:
            if handle is not None:
                with suppress(OSError):
                    handle.close()

        if dropped:
            self.mon.increase_client(carbon_addr, "dropped", dropped)
        if saved:
            self.mon.increase_client(carbon_addr, "saved", saved)
        with suppress(OSError):
            self.remove_old_data_from_retry_file(carbon_addr)
        return saved

    def remove_old_data_from_retry_file(self, carbon_addr: str) -> None:
        """Keep only the first ``file_metric_size`` lines of the retry file."""
        path = self._retry_path(carbon_addr)
        limit = self.lc.file_metric_size
        current = count_lines(path)
        if current <= limit:
            return
        self.lc.logger.warning(
            "I can not save to %s more, than %d. I will have to drop the rest (%d)",
            path,
            limit,
            current - limit,
        )
        try:
            whole = read_metrics_from_file(path)
        except OSError:
            whole = []
        self.save_slice_to_retry(whole[:limit], carbon_addr)

    def try_to_send(self, metric: str, carbon_addr: str, conn: socket.socket) -> None:
        """Send one metric over ``conn``, substituting the hostname placeholder."""
        metric = metric.replace("HOSTNAME", self.lc.hostname)
        try:
            conn.sendall(_encode(metric))
        except OSError as err:
            self.lc.logger.error("Write to server failed: %s", err)
            raise
        self.mon.increase_client(carbon_addr, "sent", 1)

    def _resave(self, metrics: list[str], carbon_addr: str) -> None:
        with suppress(OSError):
            self.save_slice_to_retry(metrics, carbon_addr)

    def send_once(self, carbon_addr: str) -> int:
        """Send the retry file, then monitoring and main metrics to one server.

        Anything that cannot be sent is kept in the retry file. Returns the
        number of metrics sent.
        """
        logger = self.lc.logger
        retry_path = self._retry_path(carbon_addr)
        mon_queue = self.mon_queues[carbon_addr]
        main_queue = self.main_queues[carbon_addr]

        try:
            conn = _dial(carbon_addr, self.conf.connect_timeout)
        except OSError as err:
            logger.error("Can not connect to graphite server: %s", err)
            self.save_queue_to_retry(mon_queue, mon_queue.qsize(), carbon_addr)
            self.save_queue_to_retry(main_queue, main_queue.qsize(), carbon_addr)
            with suppress(OSError):
                self.remove_old_data_from_retry_file(carbon_addr)
            return 0

        sent = 0
        failed = False
        with conn:
            write_timeout = self.conf.client_send_interval - self.conf.connect_timeout - 1
            if write_timeout > 0:
                conn.settimeout(write_timeout)
            else:
                logger.error("Can not set deadline for connection: %d seconds", write_timeout)
                failed = True

            if not failed:
                try:
                    retry_metrics = read_metrics_from_file(retry_path)
                except OSError:
                    retry_metrics = []
                for index, metric in enumerate(retry_metrics):
                    rest = retry_metrics[index:]
                    if index >= self.lc.main_buffer_size:
                        logger.info(
                            "Can read only %d metrics from %s. Rest %d will be kept for the next run",
                            index,
                            retry_path,
                            len(rest),
                        )
                        self._resave(rest, carbon_addr)
                        break
                    try:
                        self.try_to_send(metric, carbon_addr, conn)
                    except OSError:
                        logger.error(
                            "Error happened in the middle of writing retry metrics. Resaving %d metrics",
                            len(rest),
                        )
                        self._resave(rest, carbon_addr)
                        failed = True
                        break
                    sent += 1
                    self.mon.increase_client(carbon_addr, "from_retry", 1)

            size = mon_queue.qsize()
            if failed:
                self.save_queue_to_retry(mon_queue, size, carbon_addr)
            else:
                for index, metric in enumerate(_take(mon_queue, size)):
                    try:
                        self.try_to_send(metric, carbon_addr, conn)
                    except OSError:
                        logger.error(
                            "Error happened in the middle of writing monitoring metrics. Saving..."
                        )
                        self.save_queue_to_retry(mon_queue, size - index, carbon_addr)
                        failed = True
                        break
                    sent += 1

            size = main_queue.qsize()
            if failed:
                self.save_queue_to_retry(main_queue, size, carbon_addr)
            else:
                for index, metric in enumerate(_take(main_queue, size)):
                    try:
                        self.try_to_send(metric, carbon_addr, conn)
                    except OSError:
                        logger.error(
                            "Error happened in the middle of writing metrics. Saving %d metrics",
                            size - index,
                        )
                        self.save_queue_to_retry(main_queue, size - index, carbon_addr)
                        break
                    sent += 1
        return sent

    def run_backend(self, carbon_addr: str) -> None:
        """Send to one carbon server every send interval, forever."""
        while True:
            self.send_once(carbon_addr)
            time.sleep(self.conf.client_send_interval)

    def distribute_once(self) -> int:
        """Copy the queued main and monitoring metrics to every server's queues.

        Returns the number of metrics taken from the shared queues.
        """
        taken = 0
        for source, targets in (
            (self.lc.main_queue, self.main_queues),
            (self.lc.monitoring_queue, self.mon_queues),
        ):
            for metric in _take(source, source.qsize()):
                taken += 1
                for carbon_addr in self.conf.carbon_addrs:
                    try:
                        targets[carbon_addr].put_nowait(metric)
                    except queue.Full:
                        self.mon.increase_client(carbon_addr, "dropped", 1)
        return taken

    def run(self) -> None:
        """Start a sender per carbon server and distribute metrics, forever."""
        self.create_retry_dir()
        for carbon_addr in self.conf.carbon_addrs:
            threading.Thread(target=self.run_backend, args=(carbon_addr,), daemon=True).start()

        supervisor = Supervisor(self.conf.supervisor)
        while True:
            supervisor.notify()
            self.distribute_once()
            time.sleep(_DISTRIBUTE_INTERVAL)