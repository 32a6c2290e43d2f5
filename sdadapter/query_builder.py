"""Builder for time-series requests that target pods, containers or nodes."""

from __future__ import annotations

import copy
from typing import Iterable, Optional

from .errors import new_bad_request, new_internal_error
from .filter_builder import (
    CONTAINER_SCHEMA_KEY,
    LEGACY_SCHEMA_KEY,
    NODE_SCHEMA_KEY,
    POD_SCHEMA_KEY,
    PROMETHEUS_SCHEMA_KEY,
    SCHEMA_TYPES,
    FilterBuilder,
    new_filter_builder,
    quote,
)
from .labels import Selector, everything
from .models import Node, Pod, TimeSeriesListRequest
from .translator import (
    ALLOWED_CUSTOM_METRICS_FULL_LABEL_NAMES,
    ALLOWED_CUSTOM_METRICS_LABEL_PREFIXES,
    MAX_NUM_OF_ARGS_IN_ONE_OF_FILTER,
    PROMETHEUS_METRIC_PREFIX,
    Translator,
    join_filters,
)


class QueryBuilder:
    """Immutable builder of a time-series list request for custom metrics.

    Every ``with_*`` method returns a new builder; the original is unchanged.
    Exactly one of pods, pod names, nodes or node names should be given, and
    nodes cannot be combined with a namespace.
    """

    def __init__(self, translator: Optional[Translator], metric_name: str):
        self.translator = translator
        self.metric_name = metric_name
        self.metric_kind = ""
        self.metric_value_type = ""
        self.metric_selector: Selector = everything()
        self.namespace = ""
        self.pods: Optional[tuple[Pod, ...]] = None
        self.pod_names: tuple[str, ...] = ()
        self.nodes: Optional[tuple[Node, ...]] = None
        self.node_names: tuple[str, ...] = ()
        self.enforce_container_type = False

    def _replace(self, **changes) -> "QueryBuilder":
        clone = copy.copy(self)
        for name, value in changes.items():
            setattr(clone, name, value)
        return clone

    def with_metric_kind(self, metric_kind: str) -> "QueryBuilder":
        return self._replace(metric_kind=metric_kind)

    def with_metric_value_type(self, metric_value_type: str) -> "QueryBuilder":
        return self._replace(metric_value_type=metric_value_type)

    def with_metric_selector(self, metric_selector: Selector) -> "QueryBuilder":
        return self._replace(metric_selector=metric_selector)

    def with_namespace(self, namespace: str) -> "QueryBuilder":
        """Filter on a namespace; cannot be combined with nodes."""
        return self._replace(namespace=namespace)

    def with_pods(self, pods: Optional[Iterable[Pod]]) -> "QueryBuilder":
        return self._replace(pods=None if pods is None else tuple(pods))

    def with_pod_names(self, pod_names: Iterable[str]) -> "QueryBuilder":
        """Filter on pod names, used in the filter exactly as given."""
        return self._replace(pod_names=tuple(pod_names))

    def with_nodes(self, nodes: Optional[Iterable[Node]]) -> "QueryBuilder":
        return self._replace(nodes=None if nodes is None else tuple(nodes))

    def with_node_names(self, node_names: Iterable[str]) -> "QueryBuilder":
        return self._replace(node_names=tuple(node_names))

    def as_container_type(self) -> "QueryBuilder":
        """Query k8s_container series; valid only with the new resource model."""
        return self._replace(enforce_container_type=True)

    # pod and node helpers

    def _pods_empty(self) -> bool:
        return not self.pod_names and not self.pods

    def _pods_valid(self) -> bool:
        return not (self.pod_names and self.pods)

    def _quoted_pod_names(self) -> list[str]:
        if self.pods is None:
            return list(self.pod_names)
        return [quote(pod.metadata.name) for pod in self.pods]

    def _pod_ids(self) -> list[str]:
        if self.pods is None:
            return []
        return [quote(pod.metadata.uid) for pod in self.pods]

    def _nodes_empty(self) -> bool:
        return not self.node_names and not self.nodes

    def _nodes_valid(self) -> bool:
        return not (self.node_names and self.nodes)

    def _node_names(self) -> list[str]:
        if self.nodes is not None:
            return [node.metadata.name for node in self.nodes]
        return list(self.node_names)

    def _resource_names(self) -> list[str]:
        if self.translator.use_new_resource_model:
            if not self._pods_empty():
                return self._quoted_pod_names()
            return self._node_names()
        return self._pod_ids()

    def _validate(self) -> None:
        if self.translator is None:
            raise new_internal_error("QueryBuilder tries to build with translator value: nil")

        if not self._nodes_empty():
            if not self._nodes_valid():
                raise new_internal_error("invalid nodes parameter is set to QueryBuilder")
            if self.namespace != "":
                raise new_internal_error(
                    "both nodes and namespace are provided, expect only one of them."
                )
            if not self._pods_empty():
                raise new_internal_error("both nodes and pods are provided, expect only one of them.")
        else:
            if self._pods_empty():
                raise new_internal_error(
                    "no resources are specified for QueryBuilder, "
                    "expected one of nodes or pods should be used"
                )
            if not self._pods_valid():
                raise new_internal_error("invalid pods parameter is set to QueryBuilder")
            num_pods = len(self._quoted_pod_names())
            if num_pods > MAX_NUM_OF_ARGS_IN_ONE_OF_FILTER:
                raise new_internal_error(
                    f"QueryBuilder tries to build with {num_pods} pod list, "
                    f"but allowed limit is {MAX_NUM_OF_ARGS_IN_ONE_OF_FILTER} pods"
                )

        if self.metric_value_type == "DISTRIBUTION" and not self.translator.support_distributions:
            raise new_bad_request("distributions are not supported")

        if self.enforce_container_type and not self.translator.use_new_resource_model:
            raise new_internal_error(
                "illegal state! Container metrics works only with new resource model"
            )

    def _filter_builder(self) -> FilterBuilder:
        if not self.translator.use_new_resource_model:
            key = LEGACY_SCHEMA_KEY
        elif self.enforce_container_type:
            key = CONTAINER_SCHEMA_KEY
        elif self.metric_name.startswith(PROMETHEUS_METRIC_PREFIX):
            key = PROMETHEUS_SCHEMA_KEY
        elif self.namespace == "":
            key = NODE_SCHEMA_KEY
        else:
            key = POD_SCHEMA_KEY
        return new_filter_builder(SCHEMA_TYPES[key])

    def _compose_filter(self) -> str:
        config = self.translator.config
        builder = (
            self._filter_builder()
            .with_metric_type(self.metric_name)
            .with_project(config.project)
            .with_cluster(config.cluster)
        )
        resource_names = self._resource_names()
        if self.translator.use_new_resource_model:
            builder = builder.with_location(config.location)
            if not self._nodes_empty():
                return builder.with_nodes(resource_names).build()
            return builder.with_namespace(self.namespace).with_pods(resource_names).build()
        return builder.with_container().with_pods(resource_names).build()

    def build(self) -> TimeSeriesListRequest:
        """Validate the builder and return the request; raise StatusError if invalid."""
        self._validate()
        query = self._compose_filter()
        translator = self.translator
        if self.metric_selector.empty():
            return translator.create_list_timeseries_request(
                query, self.metric_kind, self.metric_value_type, ""
            )
        selector_filter, reducer = translator.filter_for_selector(
            self.metric_selector,
            ALLOWED_CUSTOM_METRICS_LABEL_PREFIXES,
            ALLOWED_CUSTOM_METRICS_FULL_LABEL_NAMES,
        )
        return translator.create_list_timeseries_request(
            join_filters(selector_filter, query),
            self.metric_kind,
            self.metric_value_type,
            reducer,
        )