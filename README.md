# grafsy

A very light proxy for Graphite metrics.

grafsy runs on each server, receives carbon plaintext metrics locally,
buffers them, aggregates those carrying a special prefix, drops metrics
that do not match an allowed pattern, and periodically forwards
everything to one or more carbon servers. Metrics that cannot be sent
are kept in a per-server retry file and sent on a later attempt.

It needs nothing beyond the Python standard library (Python 3.11 or later).

## Installation

```
pip install .
```

## Running the daemon

```
grafsy -c /etc/grafsy/grafsy.toml
```

Options:

- `-c PATH` – configuration file (default `/etc/grafsy/grafsy.toml`)
- `-v` – print `Version: dev` and exit

`grafsy` exits with status 1 when the configuration cannot be loaded,
2 when the environment cannot be prepared (directories, log file,
unresolvable carbon addresses, invalid regular expressions), and 1 if one
of its workers fails while running.

The daemon:

- listens on `localBind` (every address the host name resolves to; named
  ports are accepted) for plaintext metrics, one per line;
- every `clientSendInterval` seconds reads every file found in `metricDir`,
  feeds its lines in and removes the file;
- rewrites a metric with the first `overwrite` rule whose expression
  matches it (`$1` and `${name}` refer to groups in `replaceWith`);
- drops and counts as invalid any non-empty metric that does not match
  `allowedMetrics`;
- every `aggrInterval` seconds collapses metrics whose names start with
  `sumPrefix`, `avgPrefix`, `minPrefix` or `maxPrefix` into one value each
  (sum, average, minimum, maximum), removes the prefix from the name and
  queues `name value timestamp` with the value to two decimals;
- every `clientSendInterval` seconds connects to each address in
  `carbonAddrs` and sends first the retry file (at most
  `metricsPerSecond * clientSendInterval` lines of it; the rest stays for
  the next run), then its own monitoring metrics, then the main queue;
  whatever cannot be sent goes to the retry file `retryDir/<address>`;
- once a minute reports its own statistics under `<monitoringPath>.grafsy`:
  `got.net`, `got.dir`, `invalid`, and per carbon server (dots in the
  address turned into underscores) `dropped`, `from_retry`, `saved`,
  `sent` and `aggregated`; the counters are then reset.

The word `HOSTNAME` in any metric sent is replaced with the host name
(dots turned into underscores) or with `hostname` from the configuration.

## Sending metrics

```
grafsy-client file1 file2
some-metrics-generator | grafsy-client
```

`grafsy-client` reads the same configuration file to find `localBind` and
writes the contents of the given files to the daemon. When standard input
is not a terminal, it sends standard input instead and ignores the files.
With neither, it prints its usage. Options: `-c PATH`, `-v`, and
`-w SECONDS` for the connection timeout (default 50).

## Configuration

A TOML file; key names are matched without regard to case. For example:

```toml
supervisor = "systemd"
clientSendInterval = 10
metricsPerSecond = 10000
carbonAddrs = ["localhost:2003"]
connectTimeout = 7
localBind = "127.0.0.1:3002"
log = "/var/log/grafsy/grafsy.log"
metricDir = "/tmp/grafsy"
useACL = false
retryDir = "/tmp/grafsy/retry"
retryKeepSecs = 100
sumPrefix = "SUM."
avgPrefix = "AVG."
minPrefix = "MIN."
maxPrefix = "MAX."
aggrInterval = 60
aggrPerSecond = 100
monitoringPath = "servers.HOSTNAME.software"
allowedMetrics = "^[-0-9a-zA-Z_]{3,100}\\.[-0-9a-zA-Z_.]{1,250} [-0-9.eE+]{1,40} [0-9]{10}$"

[[overwrite]]
replaceWhatRegexp = "^SUM.*test"
replaceWith = "does_not_matter"
```

`clientSendInterval`, `aggrInterval`, `aggrPerSecond`, `metricsPerSecond`
and `connectTimeout` must all be greater than zero. `retryKeepSecs`
defaults to ten send intervals and `monitoringPath` to `HOSTNAME`. Set
`log = "-"` to log to standard output. `metricDir` is created if missing
and made world-writable with the sticky bit; with `useACL = true` a
default POSIX ACL is also set on it where the system supports extended
attributes. With `supervisor = "systemd"` the daemon sends `WATCHDOG=1`
to `NOTIFY_SOCKET` every second.

The in-memory buffers hold `metricsPerSecond * clientSendInterval`
metrics for sending and `aggrPerSecond * aggrInterval` for aggregation;
metrics arriving when a buffer is full are dropped and counted. A retry
file keeps at most `metricsPerSecond * retryKeepSecs` lines; lines
beyond that are dropped.

## Using it as a library

```python
from grafsy.config import load_config
from grafsy.monitoring import Monitoring
from grafsy.server import Server
from grafsy.client import Client

conf = load_config("grafsy.toml")      # raises grafsy.config.ConfigError
lc = conf.generate_local_config()
mon = Monitoring(conf, lc)
server = Server(conf, lc, mon)
client = Client(conf, lc, mon)
```

`Monitoring`, `Server` and `Client` each have a `run()` method that loops
forever; the `grafsy` command starts all three. Single steps are
available as well: `Server.clean_and_use_incoming_data()`,
`Server.aggregate_once()`, `Server.handle_dir_metrics_once()`,
`Client.distribute_once()`, `Client.send_once()` and
`Monitoring.generate_own_monitoring()`. `grafsy.metric` has
`read_metrics_from_file()` (reads and removes a file) and `count_lines()`.

## Limitations

- There is no graceful shutdown: metrics still in memory when the process
  stops are lost rather than written to the retry files.
- The daemon does not detach itself or write a pid file; run it under a
  supervisor.
- Writing the ACL for `useACL` works only where `os.setxattr` exists;
  elsewhere the option does nothing.