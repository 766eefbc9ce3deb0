"""DRBD device statistics from /proc/drbd."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, NoDataError, Settings, register_collector

_log = logging.getLogger(__name__)

SUBSYSTEM = "drbd"

_UINT64_LIMIT = 1 << 64

_PAIR_NODES = ("local", "remote")


@dataclass(frozen=True)
class _NumericalMetric:
    desc: Desc
    value_type: ValueType
    multiplier: float


@dataclass(frozen=True)
class _StringPairMetric:
    desc: Desc
    value_ok: str


def _numerical(name: str, help_text: str, value_type: ValueType,
               multiplier: float) -> _NumericalMetric:
    return _NumericalMetric(
        Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, ("device",)),
        value_type,
        multiplier,
    )


def _string_pair(name: str, help_text: str, value_ok: str) -> _StringPairMetric:
    return _StringPairMetric(
        Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, ("device", "node")),
        value_ok,
    )


def _device_id(text: str) -> int | None:
    if not (text.isascii() and text.isdigit()):
        return None
    value = int(text)
    return value if value < _UINT64_LIMIT else None


class DrbdCollector(Collector):
    """Exposes DRBD replication and disk statistics."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        counter, gauge = ValueType.COUNTER, ValueType.GAUGE
        self._numerical = {
            "ns": _numerical("network_sent_bytes_total",
                             "Total number of bytes sent via the network.", counter, 1024),
            "nr": _numerical("network_received_bytes_total",
                             "Total number of bytes received via the network.", counter, 1),
            "dw": _numerical("disk_written_bytes_total",
                             "Net data written on local hard disk; in bytes.", counter, 1024),
            "dr": _numerical("disk_read_bytes_total",
                             "Net data read from local hard disk; in bytes.", counter, 1024),
            "al": _numerical("activitylog_writes_total",
                             "Number of updates of the activity log area of the meta data.",
                             counter, 1),
            "bm": _numerical("bitmap_writes_total",
                             "Number of updates of the bitmap area of the meta data.",
                             counter, 1),
            "lo": _numerical("local_pending",
                             "Number of open requests to the local I/O sub-system.", gauge, 1),
            "pe": _numerical("remote_pending",
                             "Number of requests sent to the peer, but that have not yet been "
                             "answered by the latter.", gauge, 1),
            "ua": _numerical("remote_unacknowledged",
                             "Number of requests received by the peer via the network "
                             "connection, but that have not yet been answered.", gauge, 1),
            "ap": _numerical("application_pending",
                             "Number of block I/O requests forwarded to DRBD, but not yet "
                             "answered by DRBD.", gauge, 1),
            "ep": _numerical("epochs", "Number of Epochs currently on the fly.", gauge, 1),
            "oos": _numerical("out_of_sync_bytes",
                              "Amount of data known to be out of sync; in bytes.", gauge, 1024),
        }
        self._string_pair = {
            "ro": _string_pair("node_role_is_primary",
                               "Whether the role of the node is in the primary state.",
                               "Primary"),
            "ds": _string_pair("disk_state_is_up_to_date",
                               "Whether the disk of the node is up to date.", "UpToDate"),
        }
        self._connected = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "connected"),
            "Whether DRBD is connected to the peer.",
            ("device",),
        )

    def parse(self, stream: Iterable[str]) -> Iterator[Metric]:
        """Yield metrics for the key:value words of /proc/drbd text."""
        device = "unknown"
        for line in stream:
            for word in line.split():
                kv = word.split(":")
                if len(kv) != 2:
                    _log.debug("skipping invalid key:value pair %r", word)
                    continue
                key, value = kv

                device_id = _device_id(key)
                if device_id is not None and value == "":
                    device = f"drbd{device_id}"
                    continue

                numerical = self._numerical.get(key)
                if numerical is not None:
                    try:
                        number = float(value)
                    except ValueError as err:
                        raise ValueError(f"invalid value {value!r} for {key}") from err
                    yield Metric(numerical.desc, numerical.value_type,
                                 number * numerical.multiplier, (device,))
                    continue

                pair = self._string_pair.get(key)
                if pair is not None:
                    states = value.split("/")
                    if len(states) < 2:
                        raise ValueError(f"expected local/remote pair for {key}, got {value!r}")
                    for node, state in zip(_PAIR_NODES, states):
                        okay = 1.0 if state == pair.value_ok else 0.0
                        yield Metric(pair.desc, ValueType.GAUGE, okay, (device, node))
                    continue

                if key == "cs":
                    connected = 1.0 if value == "Connected" else 0.0
                    yield Metric(self._connected, ValueType.GAUGE, connected, (device,))
                    continue

                _log.debug("unhandled key-value pair %s=%s", key, value)

    def update(self) -> Iterator[Metric]:
        path = self._settings.proc_file("drbd")
        try:
            stream = open(path, encoding="utf-8")
        except FileNotFoundError as err:
            _log.debug("stats file %s does not exist, skipping: %s", path, err)
            raise NoDataError() from err
        with stream:
            yield from self.parse(stream)


register_collector("drbd", False, DrbdCollector)