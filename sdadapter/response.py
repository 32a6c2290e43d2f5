"""Translation of monitoring API responses into custom and external metric values."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .errors import (
    new_bad_request,
    new_internal_error,
    new_metric_not_found_for_error,
)
from .filter_builder import quote
from .labels import Selector
from .models import (
    CustomMetricInfo,
    ExternalMetricValue,
    GroupResource,
    ListMetricDescriptorsResponse,
    ListTimeSeriesResponse,
    MetricIdentifier,
    MetricValue,
    ObjectMeta,
    ObjectReference,
    Quantity,
    TimeSeries,
    TypedValue,
    new_milli_quantity,
    new_quantity,
)
from .translator import Translator

logger = logging.getLogger(__name__)

POD_SCHEMA_KEY = "pods"
NODE_SCHEMA_KEY = "nodes"
API_VERSION_INTERNAL = "__internal"

_RFC3339_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)


def _parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; raise ValueError if it is malformed."""
    match = _RFC3339_RE.match(text)
    if match is None:
        raise ValueError(f"cannot parse {text!r} as RFC 3339 time")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    fraction, zone = match.group(7), match.group(8)
    microsecond = int((fraction[1:] + "000000")[:6]) if fraction else 0
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone.utc if not offset else timezone(sign * offset)
    return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=tz)


def _typed_value_quantity(value: TypedValue) -> Quantity:
    if value.int64_value is not None:
        return new_quantity(value.int64_value)
    if value.double_value is not None:
        return new_milli_quantity(int(value.double_value * 1000))
    raise new_bad_request(
        f"Expected metric of type DoubleValue or Int64Value, but received TypedValue: {value}"
    )


def escape_metric(metric_name: str) -> str:
    """Replace every '/' in a metric name with '|'."""
    return metric_name.replace("/", "|")


def get_metric_labels(series: TimeSeries) -> dict[str, str]:
    """Return the metric and resource labels of a series, with their prefixes."""
    labels: dict[str, str] = {}
    if series.metric is not None:
        labels.update({f"metric.labels.{k}": v for k, v in series.metric.labels.items()})
    labels["resource.type"] = series.resource.type
    labels.update({f"resource.labels.{k}": v for k, v in series.resource.labels.items()})
    return labels


def resource_key(translator: Translator, meta: ObjectMeta) -> str:
    """Return the key under which an object's metric values are stored."""
    if translator.use_new_resource_model:
        return f"{meta.namespace}:{meta.name}"
    return meta.uid


def metric_key(translator: Translator, series: TimeSeries, resource_schema: str) -> str:
    """Return the object key a series belongs to; raise StatusError for unknown types."""
    resource_labels = series.resource.labels
    if not translator.use_new_resource_model:
        return resource_labels.get("pod_id", "")
    metric_labels = series.metric.labels if series.metric is not None else {}
    resource_type = series.resource.type
    if resource_type in ("k8s_pod", "k8s_container"):
        # Containers share the pod key: only one container in a pod may provide a metric.
        return f"{resource_labels.get('namespace_name', '')}:{resource_labels.get('pod_name', '')}"
    if resource_type == "k8s_node":
        return ":" + resource_labels.get("node_name", "")
    if resource_type == "prometheus_target":
        if resource_schema == NODE_SCHEMA_KEY:
            return ":" + metric_labels.get("node", "")
        return f"{resource_labels.get('namespace', '')}:{metric_labels.get('pod', '')}"
    logger.error(
        'Expected resource type as one of ["k8s_pod", "k8s_container", "k8s_node", '
        '"prometheus_target"], but received %s',
        resource_type,
    )
    raise new_internal_error(f"Stackdriver returned incorrect resource type {quote(resource_type)}")


def _metric_values_from_response(
    translator: Translator,
    group_resource: GroupResource,
    response: ListTimeSeriesResponse,
) -> dict[str, Quantity]:
    values: dict[str, Quantity] = {}
    for series in response.time_series:
        if not series.points:
            raise new_internal_error("Empty time series returned from Stackdriver")
        # Points are returned newest first.
        point = series.points[0]
        key = metric_key(translator, series, str(group_resource))
        current = values.get(key, new_quantity(0))
        values[key] = current + _typed_value_quantity(point.value)
    return values


def _metric_for(
    translator: Translator,
    value: Quantity,
    group_resource: GroupResource,
    namespace: str,
    name: str,
    metric_name: str,
    metric_selector: Selector,
) -> MetricValue:
    kind = translator.mapper.kind_for(group_resource)
    selector: Optional[Selector] = None if metric_selector.empty() else metric_selector
    return MetricValue(
        described_object=ObjectReference(
            api_version=f"{group_resource.group}/{API_VERSION_INTERNAL}",
            kind=kind,
            name=name,
            namespace=namespace,
        ),
        metric=MetricIdentifier(name=metric_name, selector=selector),
        timestamp=translator.clock(),
        value=value,
    )


def get_resp_for_single_object(
    translator: Translator,
    response: ListTimeSeriesResponse,
    group_resource: GroupResource,
    metric_name: str,
    metric_selector: Selector,
    namespace: str,
    name: str,
) -> MetricValue:
    """Return the single metric value a response holds for one object."""
    values = _metric_values_from_response(translator, group_resource, response)
    if not values:
        raise new_metric_not_found_for_error(group_resource, metric_name, name)
    if len(values) > 1:
        raise new_internal_error(
            f"Expected exactly one value for resource {quote(name)} in namespace "
            f"{quote(namespace)}, but received {len(values)} values"
        )
    (value,) = values.values()
    return _metric_for(
        translator, value, group_resource, namespace, name, metric_name, metric_selector
    )


def get_resp_for_multiple_objects(
    translator: Translator,
    response: ListTimeSeriesResponse,
    items: Iterable[ObjectMeta],
    group_resource: GroupResource,
    metric_name: str,
    metric_selector: Selector,
) -> list[MetricValue]:
    """Return metric values for those of the given objects present in the response."""
    values = _metric_values_from_response(translator, group_resource, response)
    result: list[MetricValue] = []
    for item in items:
        key = resource_key(translator, item)
        if key not in values:
            logger.debug("Metric '%s' not found for pod '%s'", metric_name, item.name)
            continue
        result.append(
            _metric_for(
                translator,
                values[key],
                group_resource,
                item.namespace,
                item.name,
                metric_name,
                metric_selector,
            )
        )
    return result


def get_resp_for_external_metric(
    translator: Translator, response: ListTimeSeriesResponse, metric_name: str
) -> list[ExternalMetricValue]:
    """Return one external metric value per series in the response."""
    result: list[ExternalMetricValue] = []
    for series in response.time_series:
        if not series.points:
            raise new_internal_error("Empty time series returned from Stackdriver")
        point = series.points[0]
        try:
            end_time = _parse_rfc3339(point.interval.end_time)
        except ValueError:
            raise new_internal_error(
                f"Timeseries from Stackdriver has incorrect end time: {point.interval.end_time}"
            ) from None
        result.append(
            ExternalMetricValue(
                metric_name=metric_name,
                metric_labels=get_metric_labels(series),
                timestamp=end_time,
                value=_typed_value_quantity(point.value),
            )
        )
    return result


def get_metrics_from_descriptors(response: ListMetricDescriptorsResponse) -> list[CustomMetricInfo]:
    """Return metric infos for descriptors whose value type is INT64 or DOUBLE."""
    return [
        CustomMetricInfo(
            group_resource=GroupResource(group="", resource="*"),
            metric=escape_metric(descriptor.type),
            namespaced=True,
        )
        for descriptor in response.metric_descriptors
        if descriptor.value_type in ("INT64", "DOUBLE")
    ]


def check_metric_uniqueness_for_pod(
    translator: Translator, response: ListTimeSeriesResponse, metric_name: str
) -> None:
    """Raise StatusError unless each pod has at most one container with the metric."""
    containers: dict[str, str] = {}
    for series in response.time_series:
        name = metric_key(translator, series, POD_SCHEMA_KEY)
        container_name = series.resource.labels.get("container_name")
        if container_name is None:
            raise new_internal_error("container_name is missing")
        known = containers.setdefault(name, container_name)
        if known != container_name:
            hexed = [s.encode("utf-8").hex() for s in (known, container_name, metric_name, name)]
            raise new_bad_request(
                "Only one container in pod can have specific metric. "
                f"Containers {hexed[0]} {hexed[1]} have the same metric {hexed[2]} in pod {hexed[3]}"
            )