# nodemetrics

`nodemetrics` reads the kernel's view of a Linux host from `/proc` and `/sys`.
It turns what it reads into metrics and renders them in the Prometheus text exposition format.
It uses only the standard library.

## Collectors

Each collector lives in its own module and covers one area of the system.
On import, a module registers its collector under a name in the default registry, `nodemetrics.registry.REGISTRY`.

| Name        | Module                   | Reads                                               | Default  |
|-------------|--------------------------|-----------------------------------------------------|----------|
| `arp`       | `nodemetrics.arp`        | `/proc/net/arp`, entries per device                 | enabled  |
| `bcache`    | `nodemetrics.bcache`     | `/sys/fs/bcache`                                    | enabled  |
| `bonding`   | `nodemetrics.bonding`    | `/sys/class/net`, bonding masters and slaves        | enabled  |
| `btrfs`     | `nodemetrics.btrfs`      | `/sys/fs/btrfs`                                     | enabled  |
| `buddyinfo` | `nodemetrics.buddyinfo`  | `/proc/buddyinfo`                                   | disabled |
| `conntrack` | `nodemetrics.conntrack`  | `/proc/sys/net/netfilter`, `/proc/net/stat`         | enabled  |
| `cpu`       | `nodemetrics.cpu`        | `/proc/stat`, `/proc/cpuinfo`, thermal throttles    | enabled  |
| `cpufreq`   | `nodemetrics.cpufreq`    | `/sys/devices/system/cpu/cpu*/cpufreq`              | enabled  |
| `diskstats` | `nodemetrics.diskstats`  | `/proc/diskstats`, `/sys/block/*/queue`             | enabled  |
| `drbd`      | `nodemetrics.drbd`       | `/proc/drbd`                                        | disabled |
| `drm`       | `nodemetrics.drm`        | `/sys/class/drm/card*/device` (amdgpu cards)        | disabled |
| `edac`      | `nodemetrics.edac`       | `/sys/devices/system/edac/mc`                       | enabled  |
| `entropy`   | `nodemetrics.entropy`    | `/proc/sys/kernel/random`                           | enabled  |

Every metric name starts with `node_`. Examples are `node_cpu_seconds_total`, `node_disk_read_bytes_total` and `node_arp_entries`.

## Usage

```python
import nodemetrics.arp
import nodemetrics.cpu
import nodemetrics.diskstats
import nodemetrics.drbd
from nodemetrics.metrics import format_text
from nodemetrics.registry import REGISTRY, Settings

REGISTRY.set_enabled("drbd", True)
node = REGISTRY.new_node_collector(Settings())
print(format_text(node.collect()), end="")
```

`Registry.new_node_collector(settings, *names)` builds a `NodeCollector` from the enabled collectors.
If you pass names, it builds only those collectors. A name that is not registered raises `ValueError`, and so does the name of a disabled collector.
A registry creates each collector once and reuses it in later calls.
Some collectors check in their constructor that the proc or sys root is a directory, and raise `OSError` if it is not.

`NodeCollector.collect()` runs the collectors in parallel threads. It returns a list of their metrics.
Two extra gauges come with each collector:

- `node_scrape_collector_duration_seconds`: how long the collector ran.
- `node_scrape_collector_success`: 1 if the collector succeeded, 0 if it raised.

A collector that raises does not stop the others. Its failure is logged through the standard `logging` module. A `NoDataError` is logged at debug level only.

`format_text(metrics)` renders the metrics in the text exposition format:

- It groups the samples by metric name and sorts them by name and by label values.
- It writes `# HELP` and `# TYPE` lines for each name.
- It raises `ValueError` if a name turns up with a different help text, type or label names.
- It raises `ValueError` if the same name and label values occur twice.

### Registry controls

- `Registry.set_enabled(name, enabled)` enables or disables a collector explicitly.
- `Registry.disable_defaults()` turns off every collector that has not been set explicitly.
- `Registry.is_enabled(name)` reports the current state of a collector.
- `register_collector(name, default_enabled, factory)` adds a factory to the default registry. A `Registry` refuses a name that is already registered.

### Settings

`Settings` is a dataclass passed to every collector factory. Its fields are:

| Field                       | Default          | Meaning                                                                   |
|-----------------------------|------------------|---------------------------------------------------------------------------|
| `proc_path`                 | `/proc`          | root of the proc filesystem                                               |
| `sys_path`                  | `/sys`           | root of the sys filesystem                                                |
| `bcache_priority_stats`     | `False`          | also read the priority statistics of bcache cache devices                 |
| `cpu_guest`                 | `True`           | export `node_cpu_guest_seconds_total`                                     |
| `cpu_info`                  | `False`          | export `node_cpu_info`                                                    |
| `cpu_flags_include`         | `""`             | regular expression for `node_cpu_flag_info`; a non-empty value also enables CPU info |
| `cpu_bugs_include`          | `""`             | regular expression for `node_cpu_bug_info`; a non-empty value also enables CPU info  |
| `diskstats_ignored_devices` | loop, ram, partitions and the like | regular expression of devices that diskstats skips      |

Point `proc_path` and `sys_path` at a copy of those trees to collect from fixtures instead of the live system.
`Settings.proc_file(*parts)` and `Settings.sys_file(*parts)` join path parts onto the two roots.

### Parsing on its own

The parsing and reading functions work without a collector. They take the lines of a file or a directory root, so they run on any platform when given fixture data.

- `parse_arp_entries`
- `parse_cpu_stats`, `parse_cpu_info`
- `parse_diskstats`, `read_logical_block_size`
- `parse_buddyinfo`
- `parse_conntrack_stat`, `read_conntrack_statistics`
- `read_bonding_stats`
- `read_btrfs_stats`
- `read_bcache_stats`, `dehumanize`
- `read_system_cpufreq`
- `read_amdgpu_stats`
- `read_kernel_random`
- `DrbdCollector.parse`

`nodemetrics.registry.read_uint(path)` reads one unsigned 64-bit integer from a file.

## Writing a collector

A collector subclasses `Collector` and yields `Metric` objects from `update()`.
If there is nothing to report, for example because a kernel module is not loaded, it raises `NoDataError`.

`TypedDesc` pairs a `Desc` with a `ValueType`. `TypedDesc.metric(value, *labels)` then builds a metric.
`build_fq_name` joins a namespace, a subsystem and a name with underscores and skips the empty parts.

```python
from nodemetrics.metrics import Desc, TypedDesc, ValueType, build_fq_name
from nodemetrics.registry import Collector, read_uint, register_collector


class PidMaxCollector(Collector):
    def __init__(self, settings):
        self.settings = settings
        self.value = TypedDesc(
            Desc(build_fq_name("node", "", "pid_max"), "Highest process id.", ()),
            ValueType.GAUGE,
        )

    def update(self):
        yield self.value.metric(read_uint(self.settings.proc_file("sys", "kernel", "pid_max")))


register_collector("pid_max", True, PidMaxCollector)
```

## What it does not do

The package is a library only. It has no command-line program and no HTTP server that answers scrapes; serving the output of `format_text` is left to the caller.
Its collectors read Linux `/proc` and `/sys` layouts only. There are no collectors for other operating systems, and none for areas of the system beyond the table above.

## Requirements

Python 3.10 or newer. Live collection needs Linux.