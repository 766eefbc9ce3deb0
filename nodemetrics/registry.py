"""Collector registration, settings and the node collector that runs them."""

from __future__ import annotations

import abc
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name

_log = logging.getLogger(__name__)

SCRAPE_DURATION_DESC = Desc(
    build_fq_name(NAMESPACE, "scrape", "collector_duration_seconds"),
    "node_exporter: Duration of a collector scrape.",
    ("collector",),
)
SCRAPE_SUCCESS_DESC = Desc(
    build_fq_name(NAMESPACE, "scrape", "collector_success"),
    "node_exporter: Whether a collector succeeded.",
    ("collector",),
)

DEFAULT_IGNORED_DEVICES = r"^(ram|loop|fd|(h|s|v|xv)d[a-z]|nvme\d+n\d+p)\d+$"

_UINT64_LIMIT = 1 << 64


class NoDataError(Exception):
    """The collector found no data to collect, but had no other error."""

    def __init__(self, message: str = "collector returned no data") -> None:
        super().__init__(message)


@dataclass
class Settings:
    """Filesystem roots and per-collector options."""

    proc_path: str = "/proc"
    sys_path: str = "/sys"
    bcache_priority_stats: bool = False
    cpu_guest: bool = True
    cpu_info: bool = False
    cpu_flags_include: str = ""
    cpu_bugs_include: str = ""
    diskstats_ignored_devices: str = DEFAULT_IGNORED_DEVICES

    def proc_file(self, *args: str) -> str:
        return os.path.join(self.proc_path, *args)

    def sys_file(self, *args: str) -> str:
        return os.path.join(self.sys_path, *args)


def read_uint(path: str) -> int:
    """Read an unsigned 64-bit decimal integer from a file."""
    with open(path, encoding="ascii") as stream:
        text = stream.read().strip()
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"invalid unsigned integer {text!r} in {path}")
    value = int(text)
    if value >= _UINT64_LIMIT:
        raise ValueError(f"value {text} in {path} is out of range")
    return value


class Collector(abc.ABC):
    """A source of metrics."""

    @abc.abstractmethod
    def update(self) -> Iterable[Metric]:
        """Yield the current metrics; raise NoDataError when there is nothing to report."""


Factory = Callable[[Settings], Collector]


class Registry:
    """Known collectors with their enabled state and instantiated collectors."""

    def __init__(self) -> None:
        self._factories: dict[str, Factory] = {}
        self._enabled: dict[str, bool] = {}
        self._forced: set[str] = set()
        self._initiated: dict[str, Collector] = {}
        self._lock = threading.Lock()

    def register(self, name: str, default_enabled: bool, factory: Factory) -> Factory:
        if name in self._factories:
            raise ValueError(f"collector {name!r} is already registered")
        self._factories[name] = factory
        self._enabled[name] = bool(default_enabled)
        return factory

    def set_enabled(self, name: str, enabled: bool) -> None:
        """Explicitly enable or disable a collector."""
        if name not in self._enabled:
            raise ValueError(f"missing collector: {name}")
        self._enabled[name] = bool(enabled)
        self._forced.add(name)

    def disable_defaults(self) -> None:
        """Disable every collector that was not explicitly enabled or disabled."""
        for name in self._enabled:
            if name not in self._forced:
                self._enabled[name] = False

    def is_enabled(self, name: str) -> bool:
        if name not in self._enabled:
            raise ValueError(f"missing collector: {name}")
        return self._enabled[name]

    def new_node_collector(self, settings: Settings, *args: str) -> NodeCollector:
        """Build a NodeCollector from enabled collectors, limited to the given names if any."""
        wanted = set()
        for name in args:
            if name not in self._enabled:
                raise ValueError(f"missing collector: {name}")
            if not self._enabled[name]:
                raise ValueError(f"disabled collector: {name}")
            wanted.add(name)

        collectors: dict[str, Collector] = {}
        with self._lock:
            for name in sorted(self._enabled):
                if not self._enabled[name] or (wanted and name not in wanted):
                    continue
                collector = self._initiated.get(name)
                if collector is None:
                    collector = self._factories[name](settings)
                    self._initiated[name] = collector
                collectors[name] = collector
        return NodeCollector(collectors)


def _execute(name: str, collector: Collector) -> list[Metric]:
    metrics: list[Metric] = []
    begin = time.perf_counter()
    try:
        for metric in collector.update():
            metrics.append(metric)
    except NoDataError as err:
        duration = time.perf_counter() - begin
        _log.debug("collector %s returned no data after %fs: %s", name, duration, err)
        success = 0.0
    except Exception as err:  # a failing collector must not break the others
        duration = time.perf_counter() - begin
        _log.error("collector %s failed after %fs: %s", name, duration, err)
        success = 0.0
    else:
        duration = time.perf_counter() - begin
        _log.debug("collector %s succeeded after %fs", name, duration)
        success = 1.0
    metrics.append(Metric(SCRAPE_DURATION_DESC, ValueType.GAUGE, duration, (name,)))
    metrics.append(Metric(SCRAPE_SUCCESS_DESC, ValueType.GAUGE, success, (name,)))
    return metrics


class NodeCollector:
    """Runs a set of collectors concurrently and adds scrape metrics for each."""

    def __init__(self, collectors: dict[str, Collector]) -> None:
        self.collectors = dict(collectors)

    def describe(self) -> list[Desc]:
        return [SCRAPE_DURATION_DESC, SCRAPE_SUCCESS_DESC]

    def collect(self) -> list[Metric]:
        names = sorted(self.collectors)
        if not names:
            return []
        with ThreadPoolExecutor(max_workers=len(names)) as pool:
            batches = list(
                pool.map(lambda name: _execute(name, self.collectors[name]), names)
            )
        return [metric for batch in batches for metric in batch]


REGISTRY = Registry()


def register_collector(name: str, default_enabled: bool, factory: Factory) -> Factory:
    """Register a collector factory with the default registry."""
    return REGISTRY.register(name, default_enabled, factory)