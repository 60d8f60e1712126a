import os
import queue
import stat
import struct

import pytest

from grafsy.config import (
    Config,
    ConfigError,
    LocalConfig,
    Overwrite,
    load_config,
    set_acl,
)

TEST_METRICS = [
    "test.oleg.test 8 1500000000",
    "whoop.whoop 11 1500000000",
]


def _write_config(tmp_path, extra="", **overrides):
    values = {
        "clientSendInterval": "60",
        "metricsPerSecond": "10000",
        "connectTimeout": "7",
        "aggrInterval": "60",
        "aggrPerSecond": "100",
        "carbonAddrs": '["localhost:2003", "localhost:2004"]',
    }
    values.update(overrides)
    lines = [f"{key} = {value}" for key, value in values.items()]
    lines += [
        'supervisor = ""',
        'localBind = "127.0.0.1:3002"',
        f'log = "{(tmp_path / "log" / "grafsy.log").as_posix()}"',
        f'metricDir = "{(tmp_path / "metrics").as_posix()}"',
        "useACL = false",
        f'retryDir = "{(tmp_path / "retry").as_posix()}"',
        'sumPrefix = "SUM."',
        'avgPrefix = "AVG."',
        'minPrefix = "MIN."',
        'maxPrefix = "MAX."',
        r'''allowedMetrics = '^[-a-zA-Z0-9_\.]+ [-0-9\.eE+]+ [0-9]{10}$' ''',
    ]
    path = tmp_path / "grafsy.toml"
    path.write_text("\n".join(lines) + "\n" + extra)
    return path


@pytest.fixture
def conf(tmp_path):
    return load_config(_write_config(tmp_path))


def test_load_config_reads_values(conf):
    assert conf.client_send_interval == 60
    assert conf.carbon_addrs == ["localhost:2003", "localhost:2004"]
    assert conf.sum_prefix == "SUM."
    assert conf.use_acl is False


def test_load_config_defaults(conf):
    assert conf.retry_keep_secs == 600
    assert conf.monitoring_path == "HOSTNAME"


def test_load_config_keeps_explicit_retry_keep_secs(tmp_path):
    conf = load_config(_write_config(tmp_path, retryKeepSecs="42"))
    assert conf.retry_keep_secs == 42


@pytest.mark.parametrize(
    "key", ["clientSendInterval", "aggrInterval", "aggrPerSecond", "metricsPerSecond", "connectTimeout"]
)
def test_load_config_rejects_non_positive(tmp_path, key):
    with pytest.raises(ConfigError, match="must be greater than 0"):
        load_config(_write_config(tmp_path, **{key: "0"}))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(tmp_path / "absent.toml")


def test_load_config_invalid_toml(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text("clientSendInterval = = 1\n")
    with pytest.raises(ConfigError, match="failed to parse config file"):
        load_config(path)


def test_load_config_wrong_type(tmp_path):
    with pytest.raises(ConfigError, match="failed to parse config file"):
        load_config(_write_config(tmp_path, clientSendInterval='"ten"'))


def test_load_config_keys_are_case_insensitive(tmp_path):
    conf = load_config(_write_config(tmp_path, extra='MonitoringPath = "servers.HOSTNAME"\n'))
    assert conf.monitoring_path == "servers.HOSTNAME"


def test_load_config_overwrite_rules(tmp_path):
    extra = '[[overwrite]]\nreplaceWhatRegexp = "^foo"\nreplaceWith = "bar"\n'
    conf = load_config(_write_config(tmp_path, extra=extra))
    assert conf.overwrite == [Overwrite("^foo", "bar")]


def test_generate_local_config(conf):
    lc = conf.generate_local_config()
    assert isinstance(lc, LocalConfig)
    assert lc.main_buffer_size == 600000
    assert lc.aggr_buf_size == 6000
    assert lc.file_metric_size == 6000000


@pytest.mark.parametrize("backends", range(6))
def test_monitoring_queue_capacity(conf, backends):
    conf.carbon_addrs = ["localhost:2003"] * backends
    lc = conf.generate_local_config()
    server_stat_metrics, client_stat_metrics = 3, 5
    assert lc.monitoring_queue.maxsize == server_stat_metrics + backends * client_stat_metrics
    assert lc.main_queue.maxsize == lc.main_buffer_size + lc.monitoring_queue.maxsize
    assert lc.aggr_queue.maxsize == lc.aggr_buf_size


def test_queues_are_bounded(conf):
    conf.carbon_addrs = []
    lc = conf.generate_local_config()
    for index in range(lc.monitoring_queue.maxsize):
        lc.monitoring_queue.put_nowait(str(index))
    with pytest.raises(queue.Full):
        lc.monitoring_queue.put_nowait("extra")


def test_hostname_alias(conf):
    conf.hostname = "alias"
    assert conf.generate_local_config().hostname == "alias"


def test_hostname_has_no_dots(conf):
    assert "." not in conf.generate_local_config().hostname


def test_aggregation_and_allowed_regexps(conf):
    lc = conf.generate_local_config()
    assert lc.aggr_regexp.search("SUM.foo 1 1500000000")
    assert lc.aggr_regexp.search("foo.bar 1 1500000000") is None
    assert lc.allowed_metrics.search(TEST_METRICS[0])
    assert lc.allowed_metrics.search("bad metric") is None


def test_log_to_stdout(conf):
    conf.log = "-"
    lc = conf.generate_local_config()
    assert lc.logger.handlers[0].stream is not None
    assert lc.hostname


def test_log_file_and_metric_dir_created(conf, tmp_path):
    lc = conf.generate_local_config()
    assert lc.file_metric_size == 6000000
    assert len(lc.logger.handlers) >= 1
    lc.logger.info("hello")
    for handler in lc.logger.handlers:
        handler.flush()
    assert "hello" in (tmp_path / "log" / "grafsy.log").read_text()
    mode = os.stat(tmp_path / "metrics").st_mode
    assert stat.S_IMODE(mode) == 0o1777


def test_unresolvable_carbon_address(conf):
    conf.carbon_addrs = ["missing-port"]
    with pytest.raises(ConfigError, match="Could not resolve an address from CarbonAddrs"):
        conf.prepare_environment()


def test_generate_local_config_wraps_environment_errors(conf):
    conf.carbon_addrs = ["a:b:c"]
    with pytest.raises(ConfigError, match="Can not prepare environment"):
        conf.generate_local_config()


def test_generate_regexps_for_overwrite(conf):
    conf.overwrite = [Overwrite("^test.*test ", "does not matter")]
    regexps = conf.overwrite_regexps()
    assert len(regexps) == 1
    assert regexps[0].search(TEST_METRICS[0])


def test_invalid_overwrite_regexp(conf):
    conf.overwrite = [Overwrite("(", "x")]
    with pytest.raises(ConfigError):
        conf.overwrite_regexps()


def test_set_acl_writes_default_acl(monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(os, "setxattr", lambda *args: calls.append(args), raising=False)
    set_acl(str(tmp_path))
    assert len(calls) == 1
    path, name, value = calls[0]
    assert (path, name) == (str(tmp_path), "system.posix_acl_default")
    assert struct.unpack("<I", value[:4]) == (2,)
    entries = [(tag, perm) for tag, perm, _ in struct.iter_unpack("<HHI", value[4:])]
    assert entries == [(0x01, 6), (0x04, 6), (0x10, 4), (0x20, 4)]


def test_set_acl_failure(monkeypatch, tmp_path):
    def fail(*args):
        raise OSError("not supported")

    monkeypatch.setattr(os, "setxattr", fail, raising=False)
    with pytest.raises(ConfigError, match="Unable to set acl"):
        set_acl(str(tmp_path))


def test_prepare_environment_wraps_acl_failure(monkeypatch, conf):
    def fail(*args):
        raise OSError("not supported")

    monkeypatch.setattr(os, "setxattr", fail, raising=False)
    conf.use_acl = True
    with pytest.raises(ConfigError, match="Can not set ACLs for dir"):
        conf.prepare_environment()


def test_default_config_is_empty():
    conf = Config()
    assert conf.carbon_addrs == [] and conf.overwrite == []
    assert conf.client_send_interval == 0