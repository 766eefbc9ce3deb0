"""Linux bcache statistics from sysfs."""

from __future__ import annotations

import glob
import os
import stat
from dataclasses import dataclass, field
from typing import Iterator, NamedTuple

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, register_collector

SUBSYSTEM = "bcache"

_MULTIPLIERS = {
    "k": float(1 << 10),
    "M": float(1 << 20),
    "G": float(1 << 30),
    "T": float(1 << 40),
    "P": float(1 << 50),
    "E": float(1 << 60),
    "Z": float(1 << 70),
    "Y": float(1 << 80),
}


@dataclass(frozen=True)
class PeriodStats:
    """Cache statistics for one period (stats_total and the like)."""

    bypassed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_bypass_hits: int = 0
    cache_bypass_misses: int = 0
    cache_miss_collisions: int = 0
    cache_readaheads: int = 0


@dataclass(frozen=True)
class WritebackRateDebug:
    """Values of a backing device's writeback_rate_debug file."""

    rate: int = 0
    dirty: int = 0
    target: int = 0
    proportional: int = 0
    integral: int = 0
    change: int = 0
    next_io: int = 0


@dataclass(frozen=True)
class BcacheBdev:
    """A backing device of a bcache set."""

    name: str
    dirty_data: int = 0
    total: PeriodStats = field(default_factory=PeriodStats)
    writeback_rate_debug: WritebackRateDebug = field(default_factory=WritebackRateDebug)


@dataclass(frozen=True)
class BcacheCache:
    """A cache device of a bcache set."""

    name: str
    io_errors: int = 0
    metadata_written: int = 0
    written: int = 0
    priority_unused_percent: int = 0
    priority_metadata_percent: int = 0


@dataclass(frozen=True)
class BcacheStats:
    """Statistics of one bcache set, named by its UUID."""

    name: str
    average_key_size: int = 0
    btree_cache_size: int = 0
    cache_available_percent: int = 0
    congested: int = 0
    root_usage_percent: int = 0
    tree_depth: int = 0
    active_journal_entries: int = 0
    btree_nodes: int = 0
    btree_read_average_duration_ns: int = 0
    cache_read_races: int = 0
    bdevs: tuple[BcacheBdev, ...] = ()
    caches: tuple[BcacheCache, ...] = ()


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError as err:
        raise ValueError(f"invalid number {text!r}") from err


def parse_pseudo_float(text: str) -> float:
    """Parse a bcache human-readable mantissa whose fraction counts 1024ths in hundredths."""
    parts = text.split(".")
    int_part = _parse_float(parts[0])
    if len(parts) == 1:
        return int_part
    frac_part = _parse_float(parts[1])
    # The fraction is a number between 0 and 1023 divided by 100; restore
    # the proper order (".1" and ".10" differ, and ".10" > ".9").
    return int_part + frac_part / 10.24


def dehumanize(text: str) -> int:
    """Convert a bcache human-readable value such as '1.5k' to an integer."""
    if not text:
        raise ValueError("zero-length reply")
    last = text[-1]
    if last > "9":
        multiplier = _MULTIPLIERS.get(last, 0.0)
        mantissa = parse_pseudo_float(text[:-1])
    else:
        multiplier = 1.0
        mantissa = _parse_float(text)
    return int(mantissa * multiplier)


def _dehumanize_signed(text: str) -> int:
    value = dehumanize(text.removeprefix("-"))
    return -value if text.startswith("-") else value


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8") as stream:
        return stream.read()


def _read_value(directory: str, name: str) -> int:
    return dehumanize(_read_text(os.path.join(directory, name)).removesuffix("\n"))


def _parse_writeback_rate_debug(text: str) -> WritebackRateDebug:
    values: dict[str, int] = {}
    for line in text.splitlines():
        key, sep, rest = line.partition(":")
        fields = rest.split()
        if not sep or not fields:
            continue
        raw = fields[-1]
        key = key.strip()
        if key == "rate":
            values["rate"] = dehumanize(raw.removesuffix("/sec"))
        elif key == "dirty":
            values["dirty"] = dehumanize(raw)
        elif key == "target":
            values["target"] = dehumanize(raw)
        elif key == "proportional":
            values["proportional"] = _dehumanize_signed(raw)
        elif key == "integral":
            values["integral"] = _dehumanize_signed(raw)
        elif key == "change":
            values["change"] = _dehumanize_signed(raw.removesuffix("/sec"))
        elif key == "next io":
            values["next_io"] = int(raw.removesuffix("ms"))
    return WritebackRateDebug(**values)


def _parse_priority_stats(text: str) -> tuple[int, int]:
    unused = metadata = 0
    for line in text.splitlines():
        fields = line.split()
        if not fields:
            continue
        if line.startswith("Unused:"):
            unused = int(fields[-1].removesuffix("%"))
        elif line.startswith("Metadata:"):
            metadata = int(fields[-1].removesuffix("%"))
    return unused, metadata


def _read_bdev(path: str) -> BcacheBdev:
    total_dir = os.path.join(path, "stats_total")
    total = PeriodStats(
        bypassed=_read_value(total_dir, "bypassed"),
        cache_bypass_hits=_read_value(total_dir, "cache_bypass_hits"),
        cache_bypass_misses=_read_value(total_dir, "cache_bypass_misses"),
        cache_hits=_read_value(total_dir, "cache_hits"),
        cache_miss_collisions=_read_value(total_dir, "cache_miss_collisions"),
        cache_misses=_read_value(total_dir, "cache_misses"),
        cache_readaheads=_read_value(total_dir, "cache_readaheads"),
    )
    return BcacheBdev(
        name=os.path.basename(path),
        dirty_data=_read_value(path, "dirty_data"),
        total=total,
        writeback_rate_debug=_parse_writeback_rate_debug(
            _read_text(os.path.join(path, "writeback_rate_debug"))
        ),
    )


def _read_cache(path: str, priority_stats: bool) -> BcacheCache:
    unused = metadata = 0
    if priority_stats:
        unused, metadata = _parse_priority_stats(
            _read_text(os.path.join(path, "priority_stats"))
        )
    return BcacheCache(
        name=os.path.basename(path),
        io_errors=_read_value(path, "io_errors"),
        metadata_written=_read_value(path, "metadata_written"),
        written=_read_value(path, "written"),
        priority_unused_percent=unused,
        priority_metadata_percent=metadata,
    )


def _read_set(path: str, priority_stats: bool) -> BcacheStats:
    internal = os.path.join(path, "internal")
    return BcacheStats(
        name=os.path.basename(path),
        average_key_size=_read_value(path, "average_key_size"),
        btree_cache_size=_read_value(path, "btree_cache_size"),
        cache_available_percent=_read_value(path, "cache_available_percent"),
        congested=_read_value(path, "congested"),
        root_usage_percent=_read_value(path, "root_usage_percent"),
        tree_depth=_read_value(path, "tree_depth"),
        active_journal_entries=_read_value(internal, "active_journal_entries"),
        btree_nodes=_read_value(internal, "btree_nodes"),
        btree_read_average_duration_ns=_read_value(internal, "btree_read_average_duration_us"),
        cache_read_races=_read_value(internal, "cache_read_races"),
        bdevs=tuple(
            _read_bdev(p) for p in sorted(glob.glob(os.path.join(path, "bdev[0-9]*")))
        ),
        caches=tuple(
            _read_cache(p, priority_stats)
            for p in sorted(glob.glob(os.path.join(path, "cache[0-9]*")))
        ),
    )


def read_bcache_stats(sys_path: str, priority_stats: bool) -> list[BcacheStats]:
    """Statistics of every bcache set under fs/bcache."""
    pattern = os.path.join(sys_path, "fs", "bcache", "*-*")
    return [_read_set(path, priority_stats) for path in sorted(glob.glob(pattern))]


class _BcacheMetric(NamedTuple):
    name: str
    help: str
    value: float
    value_type: ValueType
    extra_labels: tuple[str, ...] = ()
    extra_label_value: str = ""


def period_stats_metrics(stats: PeriodStats, label_value: str) -> list[_BcacheMetric]:
    """Metrics for one period of a backing device."""
    label = ("backing_device",)
    counter = ValueType.COUNTER
    return [
        _BcacheMetric("bypassed_bytes_total",
                      "Amount of IO (both reads and writes) that has bypassed the cache.",
                      float(stats.bypassed), counter, label, label_value),
        _BcacheMetric("cache_hits_total",
                      "Hits counted per individual IO as bcache sees them.",
                      float(stats.cache_hits), counter, label, label_value),
        _BcacheMetric("cache_misses_total",
                      "Misses counted per individual IO as bcache sees them.",
                      float(stats.cache_misses), counter, label, label_value),
        _BcacheMetric("cache_bypass_hits_total",
                      "Hits for IO intended to skip the cache.",
                      float(stats.cache_bypass_hits), counter, label, label_value),
        _BcacheMetric("cache_bypass_misses_total",
                      "Misses for IO intended to skip the cache.",
                      float(stats.cache_bypass_misses), counter, label, label_value),
        _BcacheMetric("cache_miss_collisions_total",
                      "Instances where data insertion from cache miss raced with write "
                      "(data already present).",
                      float(stats.cache_miss_collisions), counter, label, label_value),
        _BcacheMetric("cache_readaheads_total",
                      "Count of times readahead occurred.",
                      float(stats.cache_readaheads), counter, label, label_value),
    ]


def _set_metrics(s: BcacheStats, priority_stats: bool) -> list[_BcacheMetric]:
    gauge, counter = ValueType.GAUGE, ValueType.COUNTER
    metrics = [
        _BcacheMetric("average_key_size_sectors",
                      "Average data per key in the btree (sectors).",
                      float(s.average_key_size), gauge),
        _BcacheMetric("btree_cache_size_bytes",
                      "Amount of memory currently used by the btree cache.",
                      float(s.btree_cache_size), gauge),
        _BcacheMetric("cache_available_percent",
                      "Percentage of cache device without dirty data, usable for writeback "
                      "(may contain clean cached data).",
                      float(s.cache_available_percent), gauge),
        _BcacheMetric("congested", "Congestion.", float(s.congested), gauge),
        _BcacheMetric("root_usage_percent",
                      "Percentage of the root btree node in use (tree depth increases if too "
                      "high).",
                      float(s.root_usage_percent), gauge),
        _BcacheMetric("tree_depth", "Depth of the btree.", float(s.tree_depth), gauge),
        _BcacheMetric("active_journal_entries",
                      "Number of journal entries that are newer than the index.",
                      float(s.active_journal_entries), gauge),
        _BcacheMetric("btree_nodes", "Total nodes in the btree.", float(s.btree_nodes), gauge),
        _BcacheMetric("btree_read_average_duration_seconds",
                      "Average btree read duration.",
                      float(s.btree_read_average_duration_ns) * 1e-9, gauge),
        _BcacheMetric("cache_read_races_total",
                      "Counts instances where while data was being read from the cache, the "
                      "bucket was reused and invalidated - i.e. where the pointer was stale "
                      "after the read completed.",
                      float(s.cache_read_races), counter),
    ]

    for bdev in s.bdevs:
        label = ("backing_device",)
        debug = bdev.writeback_rate_debug
        metrics += [
            _BcacheMetric("dirty_data_bytes",
                          "Amount of dirty data for this backing device in the cache.",
                          float(bdev.dirty_data), gauge, label, bdev.name),
            _BcacheMetric("dirty_target_bytes",
                          "Current dirty data target threshold for this backing device in "
                          "bytes.",
                          float(debug.target), gauge, label, bdev.name),
            _BcacheMetric("writeback_rate",
                          "Current writeback rate for this backing device in bytes.",
                          float(debug.rate), gauge, label, bdev.name),
            _BcacheMetric("writeback_rate_proportional_term",
                          "Current result of proportional controller, part of writeback rate",
                          float(debug.proportional), gauge, label, bdev.name),
            _BcacheMetric("writeback_rate_integral_term",
                          "Current result of integral controller, part of writeback rate",
                          float(debug.integral), gauge, label, bdev.name),
            _BcacheMetric("writeback_change",
                          "Last writeback rate change step for this backing device.",
                          float(debug.change), gauge, label, bdev.name),
        ]
        metrics += period_stats_metrics(bdev.total, bdev.name)

    for cache in s.caches:
        label = ("cache_device",)
        metrics += [
            _BcacheMetric("io_errors",
                          "Number of errors that have occurred, decayed by io_error_halflife.",
                          float(cache.io_errors), gauge, label, cache.name),
            _BcacheMetric("metadata_written_bytes_total",
                          "Sum of all non data writes (btree writes and all other metadata).",
                          float(cache.metadata_written), counter, label, cache.name),
            _BcacheMetric("written_bytes_total",
                          "Sum of all data that has been written to the cache.",
                          float(cache.written), counter, label, cache.name),
        ]
        if priority_stats:
            metrics += [
                _BcacheMetric("priority_stats_unused_percent",
                              "The percentage of the cache that doesn't contain any data.",
                              float(cache.priority_unused_percent), gauge, label, cache.name),
                _BcacheMetric("priority_stats_metadata_percent",
                              "Bcache's metadata overhead.",
                              float(cache.priority_metadata_percent), gauge, label, cache.name),
            ]
    return metrics


class BcacheCollector(Collector):
    """Exposes Linux bcache statistics."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.sys_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.sys_path!r} is not a directory")
        self._settings = settings

    def update(self) -> Iterator[Metric]:
        priority = self._settings.bcache_priority_stats
        try:
            stats = read_bcache_stats(self._settings.sys_path, priority)
        except (OSError, ValueError) as err:
            raise RuntimeError(f"failed to retrieve bcache stats: {err}") from err
        for s in stats:
            for m in _set_metrics(s, priority):
                desc = Desc(
                    build_fq_name(NAMESPACE, SUBSYSTEM, m.name),
                    m.help,
                    ("uuid", *m.extra_labels),
                )
                label_values = (s.name, m.extra_label_value) if m.extra_label_value else (s.name,)
                yield Metric(desc, m.value_type, m.value, label_values)


register_collector("bcache", True, BcacheCollector)