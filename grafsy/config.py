"""User configuration and the runtime settings derived from it."""

from __future__ import annotations

import logging
import os
import queue
import re
import socket
import stat
import struct
import sys
import tomllib
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable

CONFIG_PATH = "/etc/grafsy/grafsy.toml"

_METRIC_DIR_MODE = 0o777 | stat.S_ISVTX
_LOG_FILE_MODE = 0o660
_DEFAULT_ACL = "user::rw group::rw mask::r other::r"

# POSIX ACL extended attribute layout.
_ACL_XATTR_NAME = "system.posix_acl_default"
_ACL_VERSION = 2
_ACL_UNDEFINED_ID = 0xFFFFFFFF
_ACL_USER_OBJ = 0x01
_ACL_USER = 0x02
_ACL_GROUP_OBJ = 0x04
_ACL_GROUP = 0x08
_ACL_MASK = 0x10
_ACL_OTHER = 0x20
_ACL_PERMS = {"r": 4, "w": 2, "x": 1, "-": 0}


class ConfigError(Exception):
    """The configuration cannot be loaded or applied."""


@dataclass
class Overwrite:
    """A rule replacing the part of a metric matched by a regular expression."""

    replace_what_regexp: str = ""
    replace_with: str = ""


@dataclass
class Config:
    """Configuration specified by the user."""

    supervisor: str = ""
    client_send_interval: int = 0
    metrics_per_second: int = 0
    carbon_addrs: list[str] = field(default_factory=list)
    connect_timeout: int = 0
    local_bind: str = ""
    log: str = ""
    metric_dir: str = ""
    use_acl: bool = False
    retry_dir: str = ""
    retry_keep_secs: int = 0
    sum_prefix: str = ""
    avg_prefix: str = ""
    min_prefix: str = ""
    max_prefix: str = ""
    aggr_interval: int = 0
    aggr_per_second: int = 0
    hostname: str = ""
    monitoring_path: str = ""
    allowed_metrics: str = ""
    overwrite: list[Overwrite] = field(default_factory=list)

    def prepare_environment(self) -> None:
        """Create the directories the daemon needs and check carbon addresses."""
        if not os.path.exists(self.metric_dir):
            with suppress(OSError):
                os.makedirs(self.metric_dir)
        with suppress(OSError):
            os.chmod(self.metric_dir, _METRIC_DIR_MODE)

        if self.use_acl:
            try:
                set_acl(self.metric_dir)
            except ConfigError as err:
                raise ConfigError(f"Can not set ACLs for dir {self.metric_dir}: {err}") from err

        if self.log != "-":
            log_dir = os.path.dirname(self.log) or "."
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as err:
                raise ConfigError(f"Can not create logfile's dir {log_dir}: {err}") from err

        for carbon_addr in self.carbon_addrs:
            try:
                host, port = _split_host_port(carbon_addr)
                socket.getaddrinfo(host or None, port or 0, type=socket.SOCK_STREAM)
            except (OSError, ValueError, UnicodeError) as err:
                raise ConfigError(f"Could not resolve an address from CarbonAddrs: {err}") from err

    def overwrite_regexps(self) -> list[re.Pattern[str]]:
        """Compile the regular expressions of the overwrite rules, in order."""
        return [_compile(rule.replace_what_regexp) for rule in self.overwrite]

    def generate_local_config(self) -> LocalConfig:
        """Prepare the environment and build the runtime settings."""
        try:
            self.prepare_environment()
        except ConfigError as err:
            raise ConfigError(f"Can not prepare environment: {err}") from err

        aggr_buf_size = self.aggr_per_second * self.aggr_interval
        main_buffer_size = self.metrics_per_second * self.client_send_interval

        hostname = self.hostname
        if not hostname:
            try:
                hostname = socket.gethostname()
            except OSError as err:
                raise ConfigError(f"Can not resolve the hostname: {err}") from err
            hostname = hostname.replace(".", "_")

        # 3 server statistics plus 5 statistics per carbon backend.
        monitor_metrics = 3 + len(self.carbon_addrs) * 5

        aggr_pattern = (
            f"^({self.avg_prefix}|{self.sum_prefix}|{self.min_prefix}|{self.max_prefix})..*"
        )
        return LocalConfig(
            hostname=hostname,
            main_buffer_size=main_buffer_size,
            aggr_buf_size=aggr_buf_size,
            file_metric_size=self.metrics_per_second * self.retry_keep_secs,
            logger=self._make_logger(),
            allowed_metrics=_compile(self.allowed_metrics),
            aggr_regexp=_compile(aggr_pattern),
            overwrite_regexp=self.overwrite_regexps(),
            main_queue=queue.Queue(maxsize=main_buffer_size + monitor_metrics),
            aggr_queue=queue.Queue(maxsize=aggr_buf_size),
            monitoring_queue=queue.Queue(maxsize=monitor_metrics),
        )

    def _make_logger(self) -> logging.Logger:
        if self.log == "-":
            handler = logging.StreamHandler(sys.stdout)
        else:
            try:
                fd = os.open(self.log, os.O_WRONLY | os.O_CREAT | os.O_APPEND, _LOG_FILE_MODE)
                stream = os.fdopen(fd, "a", encoding="utf-8")
            except OSError as err:
                raise ConfigError(f"Can not open file {self.log}: {err}") from err
            handler = logging.StreamHandler(stream)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s.%(msecs)03d %(filename)s:%(lineno)d: %(message)s",
                datefmt="%Y/%m/%d %H:%M:%S",
            )
        )
        logger = logging.Logger("grafsy", logging.INFO)
        logger.addHandler(handler)
        return logger


@dataclass
class LocalConfig:
    """Runtime settings generated from a :class:`Config`."""

    hostname: str
    main_buffer_size: int
    aggr_buf_size: int
    file_metric_size: int
    logger: logging.Logger = field(repr=False)
    allowed_metrics: re.Pattern[str]
    aggr_regexp: re.Pattern[str]
    overwrite_regexp: list[re.Pattern[str]]
    main_queue: queue.Queue[str] = field(repr=False)
    aggr_queue: queue.Queue[str] = field(repr=False)
    monitoring_queue: queue.Queue[str] = field(repr=False)


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as err:
        raise ConfigError(f"Invalid regular expression {pattern!r}: {err}") from err


def _split_host_port(address: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into its parts."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        host, rest = address[1:end], address[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        return host, rest[1:]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {address}: too many colons in address")
    return host, port


def _check_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"failed to parse config file: {key} must be an integer")
    return value


def _check_str(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"failed to parse config file: {key} must be a string")
    return value


def _check_bool(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"failed to parse config file: {key} must be a boolean")
    return value


def _check_str_list(key: str, value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"failed to parse config file: {key} must be a list of strings")
    return list(value)


def _check_overwrite(key: str, value: Any) -> list[Overwrite]:
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise ConfigError(f"failed to parse config file: {key} must be a list of tables")
    rules = []
    for table in value:
        rule = Overwrite()
        for name, item in table.items():
            match name.lower():
                case "replacewhatregexp":
                    rule.replace_what_regexp = _check_str(name, item)
                case "replacewith":
                    rule.replace_with = _check_str(name, item)
        rules.append(rule)
    return rules


_FIELDS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "supervisor": ("supervisor", _check_str),
    "clientsendinterval": ("client_send_interval", _check_int),
    "metricspersecond": ("metrics_per_second", _check_int),
    "carbonaddrs": ("carbon_addrs", _check_str_list),
    "connecttimeout": ("connect_timeout", _check_int),
    "localbind": ("local_bind", _check_str),
    "log": ("log", _check_str),
    "metricdir": ("metric_dir", _check_str),
    "useacl": ("use_acl", _check_bool),
    "retrydir": ("retry_dir", _check_str),
    "retrykeepsecs": ("retry_keep_secs", _check_int),
    "sumprefix": ("sum_prefix", _check_str),
    "avgprefix": ("avg_prefix", _check_str),
    "minprefix": ("min_prefix", _check_str),
    "maxprefix": ("max_prefix", _check_str),
    "aggrinterval": ("aggr_interval", _check_int),
    "aggrpersecond": ("aggr_per_second", _check_int),
    "hostname": ("hostname", _check_str),
    "monitoringpath": ("monitoring_path", _check_str),
    "allowedmetrics": ("allowed_metrics", _check_str),
    "overwrite": ("overwrite", _check_overwrite),
}


def load_config(config_file: str | os.PathLike[str]) -> Config:
    """Load and validate a TOML configuration file."""
    try:
        with open(config_file, "rb") as handle:
            data = handle.read()
    except OSError as err:
        raise ConfigError(f"failed to read config file: {err}") from err

    try:
        document = tomllib.loads(data.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as err:
        raise ConfigError(f"failed to parse config file: {err}") from err

    conf = Config()
    for key, value in document.items():
        target = _FIELDS.get(key.lower())
        if target is None:
            continue
        attribute, check = target
        setattr(conf, attribute, check(key, value))

    if (
        conf.client_send_interval < 1
        or conf.aggr_interval < 1
        or conf.aggr_per_second < 1
        or conf.metrics_per_second < 1
        or conf.connect_timeout < 1
    ):
        raise ConfigError(
            "ClientSendInterval, AggrInterval, AggrPerSecond, ClientSendInterval, "
            "MetricsPerSecond, ConnectTimeout must be greater than 0"
        )

    if conf.retry_keep_secs <= 0:
        conf.retry_keep_secs = conf.client_send_interval * 10

    if not conf.monitoring_path:
        conf.monitoring_path = "HOSTNAME"

    return conf


def _encode_acl(text: str) -> bytes:
    """Encode a short-form ACL text as a POSIX ACL extended attribute value."""
    entries = []
    for spec in text.split():
        parts = spec.split(":")
        if len(parts) != 3:
            raise ConfigError(f"Unable to parse acl: invalid entry {spec!r}")
        tag_name, qualifier, perms = parts
        try:
            perm = sum(_ACL_PERMS[char] for char in set(perms))
        except KeyError:
            raise ConfigError(f"Unable to parse acl: invalid permissions {perms!r}") from None
        if tag_name in ("user", "u"):
            tag = _ACL_USER if qualifier else _ACL_USER_OBJ
        elif tag_name in ("group", "g"):
            tag = _ACL_GROUP if qualifier else _ACL_GROUP_OBJ
        elif tag_name in ("mask", "m") and not qualifier:
            tag = _ACL_MASK
        elif tag_name in ("other", "o") and not qualifier:
            tag = _ACL_OTHER
        else:
            raise ConfigError(f"Unable to parse acl: invalid entry {spec!r}")
        if qualifier:
            if not qualifier.isdigit():
                raise ConfigError(f"Unable to parse acl: invalid qualifier {qualifier!r}")
            ident = int(qualifier)
        else:
            ident = _ACL_UNDEFINED_ID
        entries.append((tag, perm, ident))
    entries.sort(key=lambda entry: (entry[0], entry[2]))
    return struct.pack("<I", _ACL_VERSION) + b"".join(
        struct.pack("<HHI", tag, perm, ident) for tag, perm, ident in entries
    )


def set_acl(metric_dir: str) -> None:
    """Set a default ACL on ``metric_dir`` so files created there stay readable.

    Does nothing on systems without extended attribute support.
    """
    setxattr = getattr(os, "setxattr", None)
    if setxattr is None:
        return
    value = _encode_acl(_DEFAULT_ACL)
    try:
        setxattr(metric_dir, _ACL_XATTR_NAME, value)
    except OSError as err:
        raise ConfigError(f"Unable to set acl: {err}") from err