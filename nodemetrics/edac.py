"""EDAC memory error counts from sysfs."""

from __future__ import annotations

import glob
import os
import re
from typing import Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

SUBSYSTEM = "edac"

_MEM_CONTROLLER_RE = re.compile(r".*devices/system/edac/mc/mc([0-9]*)")
_MEM_CSROW_RE = re.compile(r".*devices/system/edac/mc/mc[0-9]*/csrow([0-9]*)")


def _desc(name: str, help_text: str, labels: tuple[str, ...]) -> Desc:
    return Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, labels)


def _read(path: str, what: str) -> int:
    try:
        return read_uint(path)
    except (OSError, ValueError) as err:
        raise RuntimeError(f"couldn't get {what}: {err}") from err


class EdacCollector(Collector):
    """Exposes correctable and uncorrectable memory error counts."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._ce_count = _desc("correctable_errors_total",
                               "Total correctable memory errors.", ("controller",))
        self._ue_count = _desc("uncorrectable_errors_total",
                               "Total uncorrectable memory errors.", ("controller",))
        self._csrow_ce_count = _desc("csrow_correctable_errors_total",
                                     "Total correctable memory errors for this csrow.",
                                     ("controller", "csrow"))
        self._csrow_ue_count = _desc("csrow_uncorrectable_errors_total",
                                     "Total uncorrectable memory errors for this csrow.",
                                     ("controller", "csrow"))

    def _counter(self, desc: Desc, value: int, *labels: str) -> Metric:
        return Metric(desc, ValueType.COUNTER, float(value), labels)

    def update(self) -> Iterator[Metric]:
        base = glob.escape(self._settings.sys_file("devices", "system", "edac", "mc"))
        for controller in sorted(glob.glob(os.path.join(base, "mc[0-9]*"))):
            match = _MEM_CONTROLLER_RE.search(controller)
            if match is None:
                raise RuntimeError(f"controller string didn't match regexp: {controller}")
            number = match.group(1)

            def read(name: str) -> int:
                return _read(os.path.join(controller, name),
                             f"{name} for controller {number}")

            yield self._counter(self._ce_count, read("ce_count"), number)
            yield self._counter(self._csrow_ce_count, read("ce_noinfo_count"), number, "unknown")
            yield self._counter(self._ue_count, read("ue_count"), number)
            yield self._counter(self._csrow_ue_count, read("ue_noinfo_count"), number, "unknown")

            csrows = sorted(glob.glob(os.path.join(glob.escape(controller), "csrow[0-9]*")))
            for csrow in csrows:
                csrow_match = _MEM_CSROW_RE.search(csrow)
                if csrow_match is None:
                    raise RuntimeError(f"csrow string didn't match regexp: {csrow}")
                row = csrow_match.group(1)
                where = f"for controller/csrow {number}/{row}"
                value = _read(os.path.join(csrow, "ce_count"), f"ce_count {where}")
                yield self._counter(self._csrow_ce_count, value, number, row)
                value = _read(os.path.join(csrow, "ue_count"), f"ue_count {where}")
                yield self._counter(self._csrow_ue_count, value, number, row)


register_collector("edac", True, EdacCollector)