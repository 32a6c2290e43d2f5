"""Value types exchanged with the monitoring API and the metrics APIs."""

from __future__ import annotations

import decimal
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .labels import Selector


@dataclass(frozen=True)
class Quantity:
    """An exact decimal amount; equal amounts compare equal whatever their scale."""

    amount: Decimal = Decimal(0)

    def __add__(self, other: object) -> "Quantity":
        if not isinstance(other, Quantity):
            return NotImplemented
        with decimal.localcontext() as ctx:
            ctx.prec = 80
            return Quantity(self.amount + other.amount)

    def __str__(self) -> str:
        with decimal.localcontext() as ctx:
            ctx.prec = 80
            for suffix, exponent in (("", 0), ("m", 3), ("u", 6), ("n", 9)):
                scaled = self.amount.scaleb(exponent)
                if scaled == scaled.to_integral_value():
                    return f"{int(scaled)}{suffix}"
            return format(self.amount.normalize(), "f")


def new_quantity(value: int) -> Quantity:
    """Return a quantity of value whole units."""
    return Quantity(Decimal(int(value)))


def new_milli_quantity(value: int) -> Quantity:
    """Return a quantity of value thousandths."""
    return new_scaled_quantity(value, -3)


def new_scaled_quantity(value: int, scale: int) -> Quantity:
    """Return a quantity of value times ten to the power scale."""
    with decimal.localcontext() as ctx:
        ctx.prec = 80
        return Quantity(Decimal(int(value)).scaleb(scale))


@dataclass
class TypedValue:
    int64_value: Optional[int] = None
    double_value: Optional[float] = None
    bool_value: Optional[bool] = None
    string_value: Optional[str] = None
    distribution_value: Optional[object] = None


@dataclass
class TimeInterval:
    start_time: str = ""
    end_time: str = ""


@dataclass
class Point:
    interval: TimeInterval = field(default_factory=TimeInterval)
    value: TypedValue = field(default_factory=TypedValue)


@dataclass
class MonitoredResource:
    type: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    type: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class TimeSeries:
    resource: MonitoredResource = field(default_factory=MonitoredResource)
    metric: Optional[Metric] = None
    metric_kind: str = ""
    value_type: str = ""
    points: list[Point] = field(default_factory=list)


@dataclass
class ListTimeSeriesResponse:
    time_series: list[TimeSeries] = field(default_factory=list)


@dataclass
class MetricDescriptor:
    type: str = ""
    metric_kind: str = ""
    value_type: str = ""


@dataclass
class ListMetricDescriptorsResponse:
    metric_descriptors: list[MetricDescriptor] = field(default_factory=list)


@dataclass(frozen=True)
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""


@dataclass(frozen=True)
class Pod:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)


@dataclass(frozen=True)
class Node:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)


@dataclass(frozen=True)
class GroupResource:
    group: str = ""
    resource: str = ""

    def __str__(self) -> str:
        if not self.group:
            return self.resource
        return f"{self.resource}.{self.group}"


@dataclass(frozen=True)
class ObjectReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    namespace: str = ""


@dataclass(frozen=True)
class MetricIdentifier:
    name: str = ""
    selector: Optional[Selector] = None


@dataclass
class MetricValue:
    """A custom metric value describing one object."""

    described_object: ObjectReference
    metric: MetricIdentifier
    timestamp: datetime
    value: Quantity


@dataclass
class ExternalMetricValue:
    """An external metric value with the labels of its series."""

    metric_name: str
    metric_labels: dict[str, str]
    timestamp: datetime
    value: Quantity


@dataclass(frozen=True)
class CustomMetricInfo:
    group_resource: GroupResource
    metric: str
    namespaced: bool


@dataclass(frozen=True)
class TimeInfo:
    timestamp: datetime
    window: timedelta


@dataclass(frozen=True)
class TimeSeriesListRequest:
    """Parameters of a time-series list call."""

    name: str
    filter: str = ""
    interval_start_time: str = ""
    interval_end_time: str = ""
    per_series_aligner: str = ""
    alignment_period: str = ""
    cross_series_reducer: str = ""


@dataclass(frozen=True)
class MetricDescriptorsListRequest:
    """Parameters of a metric-descriptor list call."""

    name: str
    filter: str = ""


class NoResourceMatchError(LookupError):
    """Raised when a resource has no registered kind."""


def _plural(singular: str) -> str:
    if not singular:
        return singular
    if singular.endswith("s"):
        return singular + "es"
    if singular.endswith("y"):
        return singular[:-1] + "ies"
    return singular + "s"


class RestMapper:
    """Maps resource names of the core group to their kinds."""

    def __init__(self) -> None:
        self._kinds: dict[tuple[str, str], str] = {}

    def add(self, kind: str) -> None:
        """Register a kind under its singular and plural resource names."""
        singular = kind.lower()
        self._kinds[("", singular)] = kind
        self._kinds[("", _plural(singular))] = kind

    def kind_for(self, group_resource: GroupResource) -> str:
        """Return the kind for a resource; raise NoResourceMatchError if unknown."""
        key = (group_resource.group, group_resource.resource.lower())
        try:
            return self._kinds[key]
        except KeyError:
            raise NoResourceMatchError(f"no matches for {group_resource}") from None