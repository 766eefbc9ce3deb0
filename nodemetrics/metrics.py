"""Metric descriptors, metric samples and the Prometheus text exposition format."""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

NAMESPACE = "node"

_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class ValueType(enum.Enum):
    """Kind of value a metric carries."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores; an empty name gives ''."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class Desc:
    """Describes a metric: its name, help text and label names."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        labels = tuple(self.variable_labels)
        object.__setattr__(self, "variable_labels", labels)
        if not _METRIC_NAME.match(self.fq_name):
            raise ValueError(f"{self.fq_name!r} is not a valid metric name")
        for label in labels:
            if not _LABEL_NAME.match(label) or label.startswith("__"):
                raise ValueError(f"{label!r} is not a valid label name")
        if len(set(labels)) != len(labels):
            raise ValueError(f"duplicate label names in {labels!r}")


@dataclass(frozen=True)
class Metric:
    """A single sample: a descriptor, a value type, a value and label values."""

    desc: Desc
    value_type: ValueType
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        values = tuple(self.label_values)
        if len(values) != len(self.desc.variable_labels):
            raise ValueError(
                f"inconsistent label cardinality for {self.desc.fq_name}: "
                f"expected {len(self.desc.variable_labels)} label values "
                f"but got {len(values)}"
            )
        object.__setattr__(self, "label_values", values)
        object.__setattr__(self, "value", float(self.value))

    @property
    def name(self) -> str:
        return self.desc.fq_name

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.desc.variable_labels, self.label_values))


@dataclass(frozen=True)
class TypedDesc:
    """A descriptor bound to a fixed value type."""

    desc: Desc
    value_type: ValueType

    def metric(self, value: float, *args: str) -> Metric:
        return Metric(self.desc, self.value_type, value, args)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + exponent
    digits = digits.rstrip("0")
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp):02d}"
    if point <= 0:
        body = "0." + "0" * (-point) + digits
    elif point >= len(digits):
        body = digits + "0" * (point - len(digits))
    else:
        body = digits[:point] + "." + digits[point:]
    return sign + body


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def format_text(metrics: Iterable[Metric]) -> str:
    """Render metrics in the text exposition format, sorted by name and labels."""
    families: dict[str, tuple[Desc, ValueType, dict[tuple, Metric]]] = {}
    for metric in metrics:
        name = metric.name
        family = families.get(name)
        if family is None:
            family = (metric.desc, metric.value_type, {})
            families[name] = family
        desc, value_type, samples = family
        if desc.help != metric.desc.help or value_type is not metric.value_type:
            raise ValueError(f"metric {name} collected with inconsistent help or type")
        if desc.variable_labels != metric.desc.variable_labels:
            raise ValueError(f"metric {name} collected with inconsistent label names")
        if metric.label_values in samples:
            raise ValueError(
                f"metric {name} with label values {metric.label_values!r} collected twice"
            )
        samples[metric.label_values] = metric

    lines = []
    for name in sorted(families):
        desc, value_type, samples = families[name]
        lines.append(f"# HELP {name} {_escape_help(desc.help)}")
        lines.append(f"# TYPE {name} {value_type.value}")
        for label_values in sorted(samples):
            metric = samples[label_values]
            if label_values:
                pairs = ",".join(
                    f'{label}="{_escape_label(value)}"'
                    for label, value in zip(desc.variable_labels, label_values)
                )
                lines.append(f"{name}{{{pairs}}} {_format_value(metric.value)}")
            else:
                lines.append(f"{name} {_format_value(metric.value)}")
    return "".join(line + "\n" for line in lines)