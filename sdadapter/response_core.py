"""Core (resource) metrics extracted from monitoring API responses."""

from __future__ import annotations

from .errors import new_bad_request, new_internal_error
from .models import ListTimeSeriesResponse, Point, Quantity, TimeInfo, new_quantity, new_scaled_quantity
from .response import POD_SCHEMA_KEY, _parse_rfc3339, metric_key
from .translator import Translator


def get_quantity_value(point: Point) -> Quantity:
    """Convert a point's value into a quantity; raise StatusError for other types."""
    value = point.value
    if value.int64_value is not None:
        return new_quantity(value.int64_value)
    if value.double_value is not None:
        return new_scaled_quantity(int(value.double_value * 1000 * 1000), -6)
    raise new_bad_request(
        f"Expected metric of type DoubleValue or Int64Value, but received TypedValue: {value}"
    )


class PodResult:
    """Per-pod container metric values and their time info, accumulated from responses."""

    def __init__(self, translator: Translator):
        self.translator = translator
        self.container_metric: dict[str, dict[str, Quantity]] = {}
        self.time_info: dict[str, TimeInfo] = {}

    def add_core_container_metric_from_response(self, response: ListTimeSeriesResponse) -> None:
        """Add each series of the response under its pod and container."""
        for series in response.time_series:
            if not series.points:
                raise new_internal_error("Empty time series returned from Stackdriver")
            point = series.points[0]
            value = get_quantity_value(point)
            pod_key = metric_key(self.translator, series, POD_SCHEMA_KEY)
            if pod_key not in self.container_metric:
                self.container_metric[pod_key] = {}
                end_time = _parse_rfc3339(point.interval.end_time)
                self.time_info[pod_key] = TimeInfo(end_time, self.translator.alignment_period)
            container_name = series.resource.labels.get("container_name")
            if container_name is None:
                raise new_internal_error("Container name is not present.")
            containers = self.container_metric[pod_key]
            if container_name in containers:
                raise new_internal_error("The same container appered two time in the response.")
            containers[container_name] = value


class NodeResult:
    """Per-node metric values and their time info, accumulated from responses."""

    def __init__(self, translator: Translator):
        self.translator = translator
        self.node_metric: dict[str, Quantity] = {}
        self.time_info: dict[str, TimeInfo] = {}

    def add_core_node_metric_from_response(self, response: ListTimeSeriesResponse) -> None:
        """Add each series of the response under its node."""
        for series in response.time_series:
            if not series.points:
                raise new_internal_error("Empty time series returned from Stackdriver")
            point = series.points[0]
            value = get_quantity_value(point)
            node_name = series.resource.labels.get("node_name", "")
            if node_name in self.node_metric:
                raise new_internal_error("The same node appered two time in the response.")
            self.node_metric[node_name] = value
            end_time = _parse_rfc3339(point.interval.end_time)
            self.time_info[node_name] = TimeInfo(end_time, self.translator.alignment_period)


def get_core_container_metric_from_response(
    translator: Translator, response: ListTimeSeriesResponse
) -> tuple[dict[str, dict[str, Quantity]], dict[str, TimeInfo]]:
    """Return container values keyed by pod, and time info keyed by pod."""
    result = PodResult(translator)
    result.add_core_container_metric_from_response(response)
    return result.container_metric, result.time_info


def get_core_node_metric_from_response(
    translator: Translator, response: ListTimeSeriesResponse
) -> tuple[dict[str, Quantity], dict[str, TimeInfo]]:
    """Return values and time info keyed by node name."""
    result = NodeResult(translator)
    result.add_core_node_metric_from_response(response)
    return result.node_metric, result.time_info