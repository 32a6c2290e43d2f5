"""Translation of metric queries into monitoring API list requests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol, Sequence

from cachetools import TTLCache

from .config import GceConfig
from .errors import (
    StatusError,
    new_bad_request,
    new_internal_error,
    new_label_not_allowed_error,
    new_no_such_metric_error,
    new_operation_not_supported_error,
)
from .filter_builder import quote
from .labels import Operator, Selector
from .models import (
    MetricDescriptor,
    MetricDescriptorsListRequest,
    Node,
    ObjectMeta,
    Pod,
    RestMapper,
    TimeSeriesListRequest,
)

ALLOWED_EXTERNAL_METRICS_LABEL_PREFIXES = (
    "metric.labels",
    "resource.labels",
    "metadata.system_labels",
    "metadata.user_labels",
)
ALLOWED_EXTERNAL_METRICS_FULL_LABEL_NAMES = ("resource.type", "reducer")
ALLOWED_CUSTOM_METRICS_LABEL_PREFIXES = ("metric.labels",)
ALLOWED_CUSTOM_METRICS_FULL_LABEL_NAMES = ("reducer",)
ALLOWED_REDUCERS = frozenset(
    {
        "REDUCE_NONE",
        "REDUCE_MEAN",
        "REDUCE_MIN",
        "REDUCE_MAX",
        "REDUCE_SUM",
        "REDUCE_STDDEV",
        "REDUCE_COUNT",
        "REDUCE_COUNT_TRUE",
        "REDUCE_COUNT_FALSE",
        "REDUCE_FRACTION_TRUE",
        "REDUCE_PERCENTILE_99",
        "REDUCE_PERCENTILE_95",
        "REDUCE_PERCENTILE_50",
        "REDUCE_PERCENTILE_05",
    }
)

ALL_NAMESPACES = ""
MAX_NUM_OF_ARGS_IN_ONE_OF_FILTER = 100
PROMETHEUS_METRIC_PREFIX = "prometheus.googleapis.com"

PROJECT_ID_LABEL = "resource.labels.project_id"
METRIC_KIND_CACHE_TTL = timedelta(minutes=5)

_EQUALITY = (Operator.EQUALS, Operator.DOUBLE_EQUALS)

Clock = Callable[[], datetime]


class MetricDescriptorSource(Protocol):
    """Anything able to fetch a metric descriptor by its full resource name."""

    def get_metric_descriptor(self, name: str) -> MetricDescriptor: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_rfc3339(moment: datetime) -> str:
    offset = moment.utcoffset()
    if offset is None or offset == timedelta(0):
        return moment.strftime("%Y-%m-%dT%H:%M:%SZ")
    return moment.replace(microsecond=0).isoformat()


def join_filters(*args: str) -> str:
    """Join the non-empty filters with AND."""
    return " AND ".join(f for f in args if f)


def is_allowed_label_name(
    label_name: str,
    allowed_label_prefixes: Iterable[str],
    allowed_full_label_names: Iterable[str],
) -> bool:
    """Report whether a label is under an allowed prefix or is an allowed full name."""
    if any(label_name.startswith(prefix + ".") for prefix in allowed_label_prefixes):
        return True
    return label_name in tuple(allowed_full_label_names)


def split_metric_label(label_name: str, allowed_label_prefixes: Iterable[str]) -> tuple[str, str]:
    """Split a label into its allowed prefix and the rest; raise StatusError if none fits."""
    for prefix in allowed_label_prefixes:
        if label_name.startswith(prefix + "."):
            return prefix, label_name[len(prefix) + 1 :]
    raise new_bad_request(f"Label name: {label_name} is not allowed.")


def quote_all(items: Iterable[str]) -> list[str]:
    """Return every item as a quoted string literal."""
    return [quote(item) for item in items]


def is_distribution(metric_selector: Selector) -> bool:
    """Report whether the selector chooses a reducer."""
    requirements, _ = metric_selector.requirements()
    return any(req.key == "reducer" for req in requirements)


class Translator:
    """Translates metric API queries into monitoring API requests."""

    def __init__(
        self,
        service: Optional[MetricDescriptorSource],
        config: GceConfig,
        req_window: timedelta,
        alignment_period: timedelta,
        mapper: Optional[RestMapper] = None,
        use_new_resource_model: bool = True,
        support_distributions: bool = False,
        metric_kind_cache_size: int = 0,
        clock: Optional[Clock] = None,
    ):
        self.service = service
        self.config = config
        self.req_window = req_window
        self.alignment_period = alignment_period
        self.mapper = mapper if mapper is not None else RestMapper()
        self.use_new_resource_model = use_new_resource_model
        self.support_distributions = support_distributions
        self.clock: Clock = clock or _utc_now
        self.metric_cache: Optional[TTLCache] = None
        if metric_kind_cache_size > 0:
            self.metric_cache = TTLCache(
                maxsize=metric_kind_cache_size,
                ttl=METRIC_KIND_CACHE_TTL.total_seconds(),
                timer=lambda: self.clock().timestamp(),
            )

    def get_external_metric_request(
        self,
        metric_name: str,
        metric_kind: str,
        metric_value_type: str,
        metric_selector: Selector,
    ) -> TimeSeriesListRequest:
        """Return the time-series request for an external metric."""
        if metric_value_type == "DISTRIBUTION" and not self.support_distributions:
            raise new_bad_request("Distributions are not supported")
        metric_project = self.get_external_metric_project(metric_selector)
        filter_for_metric = self._filter_for_metric(metric_name)
        if metric_selector.empty():
            return self.create_list_timeseries_request(
                filter_for_metric, metric_kind, metric_value_type, ""
            )
        filter_for_selector, reducer = self.filter_for_selector(
            metric_selector,
            ALLOWED_EXTERNAL_METRICS_LABEL_PREFIXES,
            ALLOWED_EXTERNAL_METRICS_FULL_LABEL_NAMES,
        )
        return self.create_list_timeseries_request_project(
            join_filters(filter_for_metric, filter_for_selector),
            metric_kind,
            metric_project,
            metric_value_type,
            reducer,
        )

    def list_metric_descriptors(
        self, fallback_for_container_metrics: bool = False
    ) -> MetricDescriptorsListRequest:
        """Return the request listing metric descriptors of this cluster."""
        if self.use_new_resource_model:
            query = join_filters(
                self._filter_for_cluster(),
                self._filter_for_any_resource(fallback_for_container_metrics),
            )
        else:
            query = join_filters(self._legacy_filter_for_cluster(), self._legacy_filter_for_any_pod())
        return MetricDescriptorsListRequest(name=f"projects/{self.config.project}", filter=query)

    def get_metric_kind(self, metric_name: str, metric_selector: Selector) -> tuple[str, str]:
        """Return the metric kind and value type of a metric, using a cache when set."""
        metric_project = self.config.project
        cache_key = f"{metric_project}-{metric_name}"
        if self.metric_cache is not None:
            cached = self.metric_cache.get(cache_key)
            if cached is not None:
                return cached
        requirements, selectable = metric_selector.requirements()
        if not selectable:
            raise new_bad_request(f"Label selector is impossible to match: {metric_selector}")
        for req in requirements:
            if req.key == PROJECT_ID_LABEL:
                if req.operator in _EQUALITY:
                    metric_project = req.values[0]
                    break
                raise new_label_not_allowed_error(
                    f"Project selector must use '=' or '==': You used {req.operator}"
                )
        try:
            descriptor = self.service.get_metric_descriptor(
                f"projects/{metric_project}/metricDescriptors/{metric_name}"
            )
        except Exception as err:
            raise new_no_such_metric_error(metric_name, err) from err
        result = (descriptor.metric_kind, descriptor.value_type)
        if self.metric_cache is not None:
            self.metric_cache[cache_key] = result
        return result

    def get_external_metric_project(self, metric_selector: Selector) -> str:
        """Return the project chosen by the selector, or the configured project."""
        requirements, _ = metric_selector.requirements()
        for req in requirements:
            if req.key == PROJECT_ID_LABEL:
                if req.operator in _EQUALITY:
                    return req.values[0]
                raise new_label_not_allowed_error(
                    f"Project selector must use '=' or '==': You used {req.operator}"
                )
        return self.config.project

    def filter_for_selector(
        self,
        metric_selector: Selector,
        allowed_label_prefixes: Sequence[str],
        allowed_full_label_names: Sequence[str],
    ) -> tuple[str, str]:
        """Return the filter for a label selector and the reducer it names, if any."""
        requirements, selectable = metric_selector.requirements()
        if not selectable:
            raise new_bad_request(f"Label selector is impossible to match: {metric_selector}")
        filters: list[str] = []
        reducer = ""
        for req in requirements:
            key, op, values = req.key, req.operator, list(req.values)
            if key == "reducer":
                if op not in _EQUALITY:
                    raise new_label_not_allowed_error(
                        f"Reducer must use '=' or '==': You used {op}"
                    )
                if len(values) != 1:
                    raise new_label_not_allowed_error("Reducer must select a single value")
                chosen = values[0]
                if chosen not in ALLOWED_REDUCERS:
                    raise new_label_not_allowed_error(
                        "Specified reducer is not supported: " + chosen
                    )
                reducer = chosen
                continue

            if op is Operator.DOES_NOT_EXIST:
                raise new_bad_request("Label selector with operator DoesNotExist is not allowed")
            if op is Operator.EXISTS:
                try:
                    prefix, suffix = split_metric_label(key, allowed_label_prefixes)
                except StatusError:
                    raise new_label_not_allowed_error(key) from None
                filters.append(f"{prefix} : {suffix}")
                continue
            if op not in (
                Operator.EQUALS,
                Operator.DOUBLE_EQUALS,
                Operator.NOT_EQUALS,
                Operator.IN,
                Operator.NOT_IN,
                Operator.GREATER_THAN,
                Operator.LESS_THAN,
            ):
                raise new_operation_not_supported_error(f"Selector with operator {quote(str(op))}")
            if not is_allowed_label_name(key, allowed_label_prefixes, allowed_full_label_names):
                raise new_label_not_allowed_error(key)

            if op in _EQUALITY:
                filters.append(f"{key} = {quote(values[0])}")
            elif op is Operator.NOT_EQUALS:
                filters.append(f"{key} != {quote(values[0])}")
            elif op is Operator.IN:
                if len(values) == 1:
                    filters.append(f"{key} = {values[0]}")
                else:
                    filters.append(f"{key} = one_of({','.join(quote_all(values))})")
            elif op is Operator.NOT_IN:
                if len(values) == 1:
                    filters.append(f"{key} != {values[0]}")
                else:
                    filters.append(f"NOT {key} = one_of({','.join(quote_all(values))})")
            else:
                try:
                    number = int(values[0])
                except ValueError:
                    raise new_internal_error(
                        f"Unexpected error: value {values[0]} could not be parsed to integer"
                    ) from None
                symbol = ">" if op is Operator.GREATER_THAN else "<"
                filters.append(f"{key} {symbol} {number}")
        return " AND ".join(filters), reducer

    def create_list_timeseries_request(
        self, query: str, metric_kind: str, metric_value_type: str, reducer: str
    ) -> TimeSeriesListRequest:
        """Return a time-series request in the configured project."""
        return self.create_list_timeseries_request_project(
            query, metric_kind, self.config.project, metric_value_type, reducer
        )

    def create_list_timeseries_request_project(
        self,
        query: str,
        metric_kind: str,
        metric_project: str,
        metric_value_type: str,
        reducer: str,
    ) -> TimeSeriesListRequest:
        """Return a time-series request in the given project, aligned for the metric kind."""
        end_time = self.clock()
        start_time = end_time - self.req_window
        aligner = "ALIGN_NEXT_OLDER"
        alignment_period = self.req_window
        if metric_kind in ("DELTA", "CUMULATIVE"):
            aligner = "ALIGN_RATE"
            alignment_period = self.alignment_period
        if metric_value_type == "DISTRIBUTION":
            aligner = "ALIGN_DELTA"
        return TimeSeriesListRequest(
            name=f"projects/{metric_project}",
            filter=query,
            interval_start_time=_format_rfc3339(start_time),
            interval_end_time=_format_rfc3339(end_time),
            per_series_aligner=aligner,
            alignment_period=f"{int(alignment_period.total_seconds())}s",
            cross_series_reducer=reducer or "",
        )

    def get_pod_items(self, pods: Iterable[Pod]) -> list[ObjectMeta]:
        """Return the metadata of each pod."""
        return [pod.metadata for pod in pods]

    def get_node_items(self, nodes: Iterable[Node]) -> list[ObjectMeta]:
        """Return the metadata of each node."""
        return [node.metadata for node in nodes]

    def _filter_for_cluster(self) -> str:
        return (
            f"resource.labels.project_id = {quote(self.config.project)} AND "
            f"resource.labels.cluster_name = {quote(self.config.cluster)} AND "
            f"resource.labels.location = {quote(self.config.location)}"
        )

    @staticmethod
    def _filter_for_metric(metric_name: str) -> str:
        return f"metric.type = {quote(metric_name)}"

    @staticmethod
    def _filter_for_any_resource(fallback_for_container_metrics: bool) -> str:
        if fallback_for_container_metrics:
            return 'resource.type = one_of("k8s_pod","k8s_node","k8s_container")'
        return 'resource.type = one_of("k8s_pod","k8s_node")'

    def _legacy_filter_for_cluster(self) -> str:
        # Location is skipped: it may be set incorrectly for the old resource model.
        return (
            f"resource.labels.project_id = {quote(self.config.project)} AND "
            f"resource.labels.cluster_name = {quote(self.config.cluster)} AND "
            'resource.labels.container_name = ""'
        )

    @staticmethod
    def _legacy_filter_for_any_pod() -> str:
        return 'resource.labels.pod_id != "" AND resource.labels.pod_id != "machine"'