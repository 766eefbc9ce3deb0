"""Configured and active slaves of Linux bonding interfaces."""

from __future__ import annotations

import logging
import os
from typing import Iterator

from nodemetrics.metrics import (
    NAMESPACE,
    Desc,
    Metric,
    TypedDesc,
    ValueType,
    build_fq_name,
)
from nodemetrics.registry import Collector, NoDataError, Settings, register_collector

_log = logging.getLogger(__name__)


def _read(path: str) -> str:
    with open(path, encoding="utf-8") as stream:
        return stream.read()


def _read_mii_status(root: str, master: str, slave: str) -> str:
    try:
        return _read(os.path.join(root, master, f"lower_{slave}", "bonding_slave", "mii_status"))
    except FileNotFoundError:
        # some older kernels use the slave_ prefix
        return _read(os.path.join(root, master, f"slave_{slave}", "bonding_slave", "mii_status"))


def read_bonding_stats(root: str) -> dict[str, tuple[int, int]]:
    """Map each bonding master to (configured slaves, slaves that are up)."""
    status: dict[str, tuple[int, int]] = {}
    for master in _read(os.path.join(root, "bonding_masters")).split():
        slaves = _read(os.path.join(root, master, "bonding", "slaves")).split()
        up = sum(1 for slave in slaves if _read_mii_status(root, master, slave).strip() == "up")
        status[master] = (len(slaves), up)
    return status


class BondingCollector(Collector):
    """Exposes the number of configured and active slaves per bonding interface."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._slaves = TypedDesc(
            Desc(
                build_fq_name(NAMESPACE, "bonding", "slaves"),
                "Number of configured slaves per bonding interface.",
                ("master",),
            ),
            ValueType.GAUGE,
        )
        self._active = TypedDesc(
            Desc(
                build_fq_name(NAMESPACE, "bonding", "active"),
                "Number of active slaves per bonding interface.",
                ("master",),
            ),
            ValueType.GAUGE,
        )

    def update(self) -> Iterator[Metric]:
        status_dir = self._settings.sys_file("class", "net")
        try:
            stats = read_bonding_stats(status_dir)
        except FileNotFoundError as err:
            _log.debug("not collecting bonding, file does not exist: %s", status_dir)
            raise NoDataError() from err
        for master, (configured, active) in stats.items():
            yield self._slaves.metric(configured, master)
            yield self._active.metric(active, master)


register_collector("bonding", True, BondingCollector)