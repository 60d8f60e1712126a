"""Self-monitoring statistics that the daemon reports to its carbon servers."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, fields

from grafsy.config import Config, LocalConfig

MONITORING_INTERVAL = 60


@dataclass
class ServerStat:
    """Where the metrics the daemon received came from."""

    dir: int = 0
    invalid: int = 0
    net: int = 0


@dataclass
class ClientStat:
    """What happened to metrics on their way to one carbon server."""

    dropped: int = 0
    from_retry: int = 0
    saved: int = 0
    sent: int = 0
    aggregated: int = 0


_SERVER_FIELDS = frozenset(item.name for item in fields(ServerStat))
_CLIENT_FIELDS = frozenset(item.name for item in fields(ClientStat))


class Monitoring:
    """Thread-safe counters that are periodically turned into metrics."""

    def __init__(self, conf: Config, lc: LocalConfig) -> None:
        self.conf = conf
        self.lc = lc
        self.server_stat = ServerStat()
        self.client_stat: dict[str, ClientStat] = {
            carbon_addr: ClientStat() for carbon_addr in conf.carbon_addrs
        }
        self._lock = threading.RLock()

    def increase_server(self, field: str, value: int) -> None:
        """Add ``value`` to the server statistic named ``field``."""
        if field not in _SERVER_FIELDS:
            raise ValueError(f"unknown server statistic {field!r}")
        with self._lock:
            setattr(self.server_stat, field, getattr(self.server_stat, field) + value)

    def increase_client(self, carbon_addr: str, field: str, value: int) -> None:
        """Add ``value`` to the statistic named ``field`` of one carbon server."""
        if field not in _CLIENT_FIELDS:
            raise ValueError(f"unknown client statistic {field!r}")
        with self._lock:
            stat = self.client_stat.setdefault(carbon_addr, ClientStat())
            setattr(stat, field, getattr(stat, field) + value)

    def increase_all_clients(self, field: str, value: int) -> None:
        """Add ``value`` to the statistic named ``field`` of every carbon server."""
        for carbon_addr in self.conf.carbon_addrs:
            self.increase_client(carbon_addr, field, value)

    def generate_own_monitoring(self, now: int | None = None) -> list[str]:
        """Queue the current statistics as metrics and return the generated lines."""
        stamp = int(time.time()) if now is None else int(now)
        path = f"{self.conf.monitoring_path}.grafsy"
        with self._lock:
            server = self.server_stat
            lines = [
                f"{path}.got.net {server.net} {stamp}",
                f"{path}.got.dir {server.dir} {stamp}",
                f"{path}.invalid {server.invalid} {stamp}",
            ]
            for carbon_addr in self.conf.carbon_addrs:
                name = carbon_addr.replace(".", "_")
                stat = self.client_stat.setdefault(carbon_addr, ClientStat())
                lines.extend(
                    [
                        f"{path}.{name}.dropped {stat.dropped} {stamp}",
                        f"{path}.{name}.from_retry {stat.from_retry} {stamp}",
                        f"{path}.{name}.saved {stat.saved} {stamp}",
                        f"{path}.{name}.sent {stat.sent} {stamp}",
                        f"{path}.{name}.aggregated {stat.aggregated} {stamp}",
                    ]
                )

        for metric in lines:
            try:
                self.lc.monitoring_queue.put_nowait(metric)
            except queue.Full:
                self.lc.logger.warning("Too many metrics in the MON queue! This is very bad")
                self.increase_all_clients("dropped", 1)
        return lines

    def clean(self) -> None:
        """Reset every statistic to zero."""
        with self._lock:
            for carbon_addr in self.conf.carbon_addrs:
                self.client_stat[carbon_addr] = ClientStat()
            self.server_stat = ServerStat()

    def run(self) -> None:
        """Report statistics once a minute, forever."""
        with self._lock:
            self.client_stat = {
                carbon_addr: ClientStat() for carbon_addr in self.conf.carbon_addrs
            }
        while True:
            self.generate_own_monitoring()
            with self._lock:
                for carbon_addr in self.conf.carbon_addrs:
                    dropped = self.client_stat.setdefault(carbon_addr, ClientStat()).dropped
                    if dropped:
                        self.lc.logger.warning(
                            "Too many metrics in the main buffer of %s server. "
                            "Had to drop incommings: %d",
                            carbon_addr,
                            dropped,
                        )
                self.clean()
            time.sleep(MONITORING_INTERVAL)