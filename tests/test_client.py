import os
import queue
import socket
import threading

import pytest

from grafsy.client import Client
from grafsy.config import Config
from grafsy.metric import count_lines, read_metrics_from_file
from grafsy.monitoring import Monitoring

TEST_METRICS = [
    "test.oleg.test 8 1500000000",
    "whoop.whoop 11 1500000000",
]


def _make_client(tmp_path, carbon_addrs=("localhost:2003", "localhost:2004")):
    conf = Config(
        client_send_interval=10,
        metrics_per_second=10,
        carbon_addrs=list(carbon_addrs),
        connect_timeout=1,
        local_bind="127.0.0.1:0",
        log=str(tmp_path / "log" / "grafsy.log"),
        metric_dir=str(tmp_path / "metrics"),
        retry_dir=str(tmp_path / "retry"),
        retry_keep_secs=100,
        sum_prefix="SUM.",
        avg_prefix="AVG.",
        min_prefix="MIN.",
        max_prefix="MAX.",
        aggr_interval=1,
        aggr_per_second=10,
        hostname="testhost",
        monitoring_path="HOSTNAME",
        allowed_metrics=r"^[-a-zA-Z0-9_\.]+\s[-0-9\.eE+]+\s[0-9]{10}$",
    )
    lc = conf.generate_local_config()
    client = Client(conf, lc, Monitoring(conf, lc))
    client.create_retry_dir()
    return client


def _collect(listener):
    received = []

    def run():
        conn, _ = listener.accept()
        with conn, conn.makefile("rb") as reader:
            received.extend(line.decode().rstrip("\n") for line in reader)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, received


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    sock.settimeout(10)
    with sock:
        yield sock


def test_retry_round_trip(tmp_path):
    client = _make_client(tmp_path)
    addr = client.conf.carbon_addrs[0]
    client.save_slice_to_retry(TEST_METRICS, addr)
    metrics = read_metrics_from_file(os.path.join(client.conf.retry_dir, addr))
    assert sorted(metrics) == sorted(TEST_METRICS)


def test_save_slice_fails_without_retry_dir(tmp_path):
    client = _make_client(tmp_path)
    client.conf.retry_dir = str(tmp_path / "missing")
    addr = client.conf.carbon_addrs[0]
    with pytest.raises(OSError):
        client.save_slice_to_retry(TEST_METRICS, addr)
    assert client.mon.client_stat[addr].dropped == 2


def test_remove_old_data_keeps_first_lines(tmp_path):
    client = _make_client(tmp_path)
    client.lc.file_metric_size = 3
    addr = client.conf.carbon_addrs[0]
    metrics = [f"m{i} 1 1500000000" for i in range(5)]
    client.save_slice_to_retry(metrics, addr)
    path = os.path.join(client.conf.retry_dir, addr)
    assert count_lines(path) == 3
    assert read_metrics_from_file(path) == metrics[:3]


def test_save_queue_partial(tmp_path):
    client = _make_client(tmp_path)
    addr = client.conf.carbon_addrs[0]
    source = queue.Queue()
    for metric in ["a 1 1500000000", "b 2 1500000000", "c 3 1500000000"]:
        source.put(metric)
    assert client.save_queue_to_retry(source, 2, addr) == 2
    assert source.qsize() == 1
    assert client.mon.client_stat[addr].saved == 2
    path = os.path.join(client.conf.retry_dir, addr)
    assert read_metrics_from_file(path) == ["a 1 1500000000", "b 2 1500000000"]


def test_save_queue_zero_size_saves_everything(tmp_path):
    client = _make_client(tmp_path)
    addr = client.conf.carbon_addrs[0]
    source = queue.Queue()
    for metric in TEST_METRICS:
        source.put(metric)
    assert client.save_queue_to_retry(source, 0, addr) == len(TEST_METRICS)
    assert source.empty()


def test_save_queue_without_retry_dir_drops(tmp_path):
    client = _make_client(tmp_path)
    client.conf.retry_dir = str(tmp_path / "missing")
    addr = client.conf.carbon_addrs[0]
    source = queue.Queue()
    for metric in TEST_METRICS:
        source.put(metric)
    assert client.save_queue_to_retry(source, 0, addr) == 0
    assert source.empty()
    assert client.mon.client_stat[addr].dropped == 2


def test_try_to_send(tmp_path):
    client = _make_client(tmp_path)
    left, right = socket.socketpair()
    with right:
        with left:
            for metric in TEST_METRICS:
                client.try_to_send(metric, "localhost:0", left)
        with right.makefile("rb") as reader:
            received = [line.decode().rstrip("\n") for line in reader]
    assert received == TEST_METRICS
    assert client.mon.client_stat["localhost:0"].sent == 2


def test_try_to_send_replaces_hostname(tmp_path):
    client = _make_client(tmp_path)
    left, right = socket.socketpair()
    with right:
        with left:
            client.try_to_send("HOSTNAME.cpu 1 1500000000", "localhost:0", left)
        data = right.recv(1024)
    assert data == b"testhost.cpu 1 1500000000\n"
    assert client.mon.client_stat["localhost:0"].sent == 1


def test_try_to_send_on_closed_socket(tmp_path):
    client = _make_client(tmp_path)
    left, right = socket.socketpair()
    right.close()
    left.close()
    with pytest.raises(OSError):
        client.try_to_send(TEST_METRICS[0], "localhost:0", left)


def test_distribute_once(tmp_path):
    client = _make_client(tmp_path)
    for metric in TEST_METRICS:
        client.lc.main_queue.put(metric)
    client.lc.monitoring_queue.put("mon 1 1500000000")
    assert client.distribute_once() == 3
    for addr in client.conf.carbon_addrs:
        assert client.main_queues[addr].qsize() == 2
        assert client.mon_queues[addr].get_nowait() == "mon 1 1500000000"


def test_distribute_once_counts_drops(tmp_path):
    client = _make_client(tmp_path)
    first, second = client.conf.carbon_addrs
    client.main_queues[first] = queue.Queue(maxsize=1)
    for metric in TEST_METRICS:
        client.lc.main_queue.put(metric)
    client.distribute_once()
    assert client.main_queues[first].qsize() == 1
    assert client.main_queues[second].qsize() == 2
    assert client.mon.client_stat[first].dropped == 1
    assert client.mon.client_stat[second].dropped == 0


def test_send_once_order(tmp_path, listener):
    port = listener.getsockname()[1]
    addr = f"127.0.0.1:{port}"
    client = _make_client(tmp_path, [addr])
    client.save_slice_to_retry(["retry.m 1 1500000000"], addr)
    client.mon_queues[addr].put("mon.m 2 1500000000")
    client.main_queues[addr].put("main.m 3 1500000000")

    thread, received = _collect(listener)
    assert client.send_once(addr) == 3
    thread.join(10)
    assert received == ["retry.m 1 1500000000", "mon.m 2 1500000000", "main.m 3 1500000000"]
    assert client.mon.client_stat[addr].from_retry == 1
    assert client.mon.client_stat[addr].sent == 3
    assert not os.path.exists(os.path.join(client.conf.retry_dir, addr))


def test_send_once_limits_retry_metrics(tmp_path, listener):
    port = listener.getsockname()[1]
    addr = f"127.0.0.1:{port}"
    client = _make_client(tmp_path, [addr])
    client.lc.main_buffer_size = 1
    retry = [f"r{i} 1 1500000000" for i in range(3)]
    client.save_slice_to_retry(retry, addr)

    thread, received = _collect(listener)
    client.send_once(addr)
    thread.join(10)
    assert received == retry[:1]
    assert read_metrics_from_file(os.path.join(client.conf.retry_dir, addr)) == retry[1:]


def test_send_once_connection_refused_saves(tmp_path):
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    addr = f"127.0.0.1:{port}"
    client = _make_client(tmp_path, [addr])
    client.mon_queues[addr].put(TEST_METRICS[0])
    client.main_queues[addr].put(TEST_METRICS[1])

    assert client.send_once(addr) == 0
    assert client.mon.client_stat[addr].saved == 2
    saved = read_metrics_from_file(os.path.join(client.conf.retry_dir, addr))
    assert sorted(saved) == sorted(TEST_METRICS)