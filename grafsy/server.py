"""Receiving, validating and aggregating incoming metrics."""

from __future__ import annotations

import math
import os
import queue
import re
import socket
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any

from grafsy.config import Config, LocalConfig, _split_host_port
from grafsy.metric import MetricData, read_metrics_from_file
from grafsy.monitoring import Monitoring

_TEMPLATE_REF = re.compile(r"\$(?:(\$)|\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))")


def _expand(template: str, match: re.Match[str]) -> str:
    """Expand ``$1``, ``${name}`` and ``$$`` references in a replacement template."""

    def substitute(ref: re.Match[str]) -> str:
        if ref.group(1):
            return "$"
        name = ref.group(2) or ref.group(3)
        try:
            value = match.group(int(name) if name.isdigit() else name)
        except IndexError:
            return ""
        return value or ""

    return _TEMPLATE_REF.sub(substitute, template)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return f"{value:.2f}"


def _parse_float(text: str) -> float:
    if "_" in text:
        raise ValueError(f"invalid number {text!r}")
    return float(text)


def _take(source: queue.Queue[str], count: int) -> Iterator[str]:
    """Yield up to ``count`` items that are already in ``source``."""
    for _ in range(count):
        try:
            yield source.get_nowait()
        except queue.Empty:
            return


def _lookup_port(text: str) -> int:
    if not text:
        return 0
    if text.isdecimal():
        port = int(text)
        if port > 0xFFFF:
            raise ValueError(f"invalid port {text!r}")
        return port
    return socket.getservbyname(text, "tcp")


def _lookup_ips(host: str) -> list[tuple[int, str, int]]:
    if not host:
        raise OSError(f"lookup {host}: no such host")
    found = []
    for family, _, _, _, sockaddr in socket.getaddrinfo(host, None, type=socket.SOCK_STREAM):
        if family == socket.AF_INET6:
            found.append((family, sockaddr[0], sockaddr[3]))
        elif family == socket.AF_INET:
            found.append((family, sockaddr[0], 0))
    return found


def _listen(family: int, sockaddr: tuple[Any, ...]) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


@dataclass
class Server:
    """Receives metrics from the network and from the metric directory."""

    conf: Config
    lc: LocalConfig
    mon: Monitoring

    def overwrite_name(self, metric: str) -> str:
        """Apply the first overwrite rule whose expression matches ``metric``."""
        for pattern, rule in zip(self.lc.overwrite_regexp, self.conf.overwrite):
            if pattern.search(metric):
                return pattern.sub(lambda match: _expand(rule.replace_with, match), metric)
        return metric

    def clean_and_use_incoming_data(self, metrics: list[str]) -> None:
        """Validate metrics and put each into the aggregation or the main queue."""
        dropped = 0
        aggregated = 0
        logger = self.lc.logger
        for raw in metrics:
            metric = self.overwrite_name(raw)
            if self.lc.allowed_metrics.search(metric):
                if self.lc.aggr_regexp.search(metric):
                    try:
                        self.lc.aggr_queue.put_nowait(metric)
                        aggregated += 1
                    except queue.Full:
                        logger.warning("Too many metrics in aggregating channel, drop metric: %s", metric)
                        dropped += 1
                else:
                    try:
                        self.lc.main_queue.put_nowait(metric)
                    except queue.Full:
                        logger.warning("Too many metrics in main channel, drop metric: %s", metric)
                        dropped += 1
            elif metric:
                self.mon.increase_server("invalid", 1)
                logger.info("Removing bad metric '%s' from the list", metric)
        if dropped:
            self.mon.increase_all_clients("dropped", dropped)
        if aggregated:
            self.mon.increase_all_clients("aggregated", aggregated)

    def aggregate_once(self, timestamp: int | None = None) -> list[str]:
        """Aggregate the metrics waiting for aggregation into the main queue.

        Returns the aggregated lines that were queued.
        """
        stamp = int(time.time()) if timestamp is None else int(timestamp)
        conf = self.conf
        logger = self.lc.logger
        working: dict[str, MetricData] = {}

        for metric in _take(self.lc.aggr_queue, self.lc.aggr_queue.qsize()):
            parts = metric.split()
            if len(parts) < 2:
                logger.warning("Can not parse metric %s", metric)
                continue
            name, raw_value = parts[0], parts[1]
            try:
                value = _parse_float(raw_value)
            except ValueError:
                logger.warning("Can not parse value of metric %s: %s", name, raw_value)
                continue

            data = working.get(name)
            exists = data is not None
            if data is None:
                data = working[name] = MetricData()

            if name.startswith(conf.sum_prefix):
                data.value += value
            elif name.startswith(conf.avg_prefix):
                data.value += value
                data.amount += 1
            elif name.startswith(conf.min_prefix):
                if not exists or data.value > value:
                    data.value = value
            elif name.startswith(conf.max_prefix):
                if data.value < value:
                    data.value = value

        queued = []
        dropped = 0
        for name, data in working.items():
            value = data.value
            prefix = ""
            if name.startswith(conf.sum_prefix):
                prefix = conf.sum_prefix
            elif name.startswith(conf.avg_prefix):
                value = data.value / data.amount
                prefix = conf.avg_prefix
            elif name.startswith(conf.min_prefix):
                prefix = conf.min_prefix
            elif name.startswith(conf.max_prefix):
                prefix = conf.max_prefix

            line = f"{name.replace(prefix, '')} {_format_value(value)} {stamp}"
            try:
                self.lc.main_queue.put_nowait(line)
                queued.append(line)
            except queue.Full:
                logger.warning(
                    "Too many metrics in the main queue (%d). I can not append aggregated metrics",
                    self.lc.main_queue.qsize(),
                )
                dropped += 1
        if dropped:
            self.mon.increase_all_clients("dropped", dropped)
        return queued

    def handle_request(self, conn: socket.socket) -> None:
        """Read newline-separated metrics from ``conn`` until it closes."""
        with conn, conn.makefile("rb") as reader:
            while True:
                self.mon.increase_server("net", 1)
                try:
                    line = reader.readline()
                except OSError:
                    line = b""
                text = line.decode("utf-8", "surrogateescape")
                self.clean_and_use_incoming_data([text.replace("\r", "").replace("\n", "")])
                if not line.endswith(b"\n"):
                    return

    def handle_dir_metrics_once(self) -> int:
        """Consume every file in the metric directory; return the number of metrics read."""
        total = 0
        for name in sorted(os.listdir(self.conf.metric_dir)):
            try:
                metrics = read_metrics_from_file(os.path.join(self.conf.metric_dir, name))
            except OSError:
                metrics = []
            self.mon.increase_server("dir", len(metrics))
            self.clean_and_use_incoming_data(metrics)
            total += len(metrics)
        return total

    def resolve_bind(self) -> list[tuple[int, tuple[Any, ...]]]:
        """Resolve the bind address to ``(family, sockaddr)`` pairs for every IP."""
        logger = self.lc.logger
        try:
            host, port_text = _split_host_port(self.conf.local_bind)
        except ValueError as err:
            logger.error("Failed to split bind address: %s", err)
            raise
        try:
            ips = _lookup_ips(host)
        except OSError as err:
            logger.error("Failed to lookup IPs: %s", err)
            raise
        try:
            port = _lookup_port(port_text)
        except (OSError, ValueError) as err:
            logger.error("Failed to lookup port: %s", err)
            raise

        addresses: dict[tuple[int, tuple[Any, ...]], None] = {}
        for family, ip, scope in ips:
            sockaddr: tuple[Any, ...] = (
                (ip, port, 0, scope) if family == socket.AF_INET6 else (ip, port)
            )
            addresses[(family, sockaddr)] = None
        return list(addresses)

    def run(self) -> None:
        """Listen, read the metric directory and aggregate until a fatal error."""
        fatal: queue.Queue[BaseException] = queue.Queue()
        with ExitStack() as stack:
            for family, sockaddr in self.resolve_bind():
                try:
                    listener = _listen(family, sockaddr)
                except OSError as err:
                    self.lc.logger.error("Failed to run server: %s", err)
                    raise
                stack.enter_context(listener)
                self.lc.logger.info("Server is running")
                self._start(fatal, self._serve, listener)
            self._start(fatal, self._dir_loop)
            self._start(fatal, self._aggregate_loop)
            raise fatal.get()

    @staticmethod
    def _start(fatal: queue.Queue[BaseException], target: Callable[..., None], *args: Any) -> None:
        def guarded() -> None:
            try:
                target(*args)
            except BaseException as err:  # reported to run()
                fatal.put(err)

        threading.Thread(target=guarded, daemon=True).start()

    def _serve(self, listener: socket.socket) -> None:
        while True:
            try:
                conn, _ = listener.accept()
            except OSError as err:
                self.lc.logger.error("Error accepting: %s", err)
                raise
            threading.Thread(target=self.handle_request, args=(conn,), daemon=True).start()

    def _dir_loop(self) -> None:
        while True:
            self.handle_dir_metrics_once()
            time.sleep(self.conf.client_send_interval)

    def _aggregate_loop(self) -> None:
        while True:
            self.aggregate_once()
            time.sleep(self.conf.aggr_interval)