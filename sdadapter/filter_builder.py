"""Composition of monitoring time-series filter strings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

POD_SCHEMA_KEY = "pod"
CONTAINER_SCHEMA_KEY = "container"
PROMETHEUS_SCHEMA_KEY = "prometheus"
NODE_SCHEMA_KEY = "node"
LEGACY_SCHEMA_KEY = "legacy"

POD_TYPE = "k8s_pod"
CONTAINER_TYPE = "k8s_container"
NODE_TYPE = "k8s_node"
PROMETHEUS_TYPE = "prometheus_target"
LEGACY_TYPE = "<not_allowed>"

MAX_PODS_IN_FILTER = 100

_SIMPLE_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    "\\": "\\\\",
    '"': '\\"',
}


def quote(value: str) -> str:
    """Return value as a double-quoted string literal with escapes."""
    parts = ['"']
    for ch in value:
        escaped = _SIMPLE_ESCAPES.get(ch)
        if escaped is not None:
            parts.append(escaped)
        elif ch == " " or ch.isprintable():
            parts.append(ch)
        else:
            code = ord(ch)
            if code < 0x80:
                parts.append(f"\\x{code:02x}")
            elif code < 0x10000:
                parts.append(f"\\u{code:04x}")
            else:
                parts.append(f"\\U{code:08x}")
    parts.append('"')
    return "".join(parts)


@dataclass(frozen=True)
class Schema:
    """Field names used in filters for one kind of monitored resource."""

    resource_type: str = ""
    metric_type: str = ""
    project: str = ""
    cluster: str = ""
    location: str = ""
    namespace: str = ""
    pods: str = ""
    nodes: str = ""


POD_SCHEMA = Schema(
    resource_type="resource.type",
    metric_type="metric.type",
    project="resource.labels.project_id",
    cluster="resource.labels.cluster_name",
    location="resource.labels.location",
    namespace="resource.labels.namespace_name",
    pods="resource.labels.pod_name",
)
CONTAINER_SCHEMA = POD_SCHEMA
LEGACY_POD_SCHEMA = Schema(
    resource_type="",
    metric_type="metric.type",
    project="resource.labels.project_id",
    cluster="resource.labels.cluster_name",
    location="resource.labels.location",
    namespace="resource.labels.namespace_name",
    pods="resource.labels.pod_id",
)
NODE_SCHEMA = Schema(
    resource_type="resource.type",
    metric_type="metric.type",
    project="resource.labels.project_id",
    cluster="resource.labels.cluster_name",
    location="resource.labels.location",
    nodes="resource.labels.node_name",
)
PROMETHEUS_SCHEMA = Schema(
    resource_type="resource.type",
    metric_type="metric.type",
    project="resource.labels.project_id",
    cluster="resource.labels.cluster",
    location="resource.labels.location",
    namespace="resource.labels.namespace",
    nodes="metric.labels.node",
    pods="metric.labels.pod",
)

SCHEMA_TYPES = {
    POD_SCHEMA_KEY: POD_TYPE,
    CONTAINER_SCHEMA_KEY: CONTAINER_TYPE,
    PROMETHEUS_SCHEMA_KEY: PROMETHEUS_TYPE,
    NODE_SCHEMA_KEY: NODE_TYPE,
    LEGACY_SCHEMA_KEY: LEGACY_TYPE,
}

_SCHEMAS_BY_TYPE = {
    POD_TYPE: POD_SCHEMA,
    CONTAINER_TYPE: CONTAINER_SCHEMA,
    PROMETHEUS_TYPE: PROMETHEUS_SCHEMA,
    NODE_TYPE: NODE_SCHEMA,
    LEGACY_TYPE: LEGACY_POD_SCHEMA,
}


@dataclass(frozen=True)
class FilterBuilder:
    """Immutable builder joining filter criteria with AND."""

    schema: Optional[Schema] = None
    filters: tuple[str, ...] = ()

    def _with(self, criterion: str) -> "FilterBuilder":
        return replace(self, filters=self.filters + (criterion,))

    def with_metric_type(self, metric_type: str) -> "FilterBuilder":
        return self._with(f"{self.schema.metric_type} = {quote(metric_type)}")

    def with_project(self, project: str) -> "FilterBuilder":
        return self._with(f"{self.schema.project} = {quote(project)}")

    def with_cluster(self, cluster: str) -> "FilterBuilder":
        return self._with(f"{self.schema.cluster} = {quote(cluster)}")

    def with_location(self, location: str) -> "FilterBuilder":
        return self._with(f"{self.schema.location} = {quote(location)}")

    def with_container(self) -> "FilterBuilder":
        """Restrict to pod-level series (legacy resource model only)."""
        return self._with(f"resource.labels.container_name = {quote('')}")

    def with_namespace(self, namespace: str) -> "FilterBuilder":
        """Add a namespace criterion; an empty namespace is ignored."""
        if not namespace:
            return self
        return self._with(f"{self.schema.namespace} = {quote(namespace)}")

    def with_pods(self, pods: Sequence[str]) -> "FilterBuilder":
        """Add a pod criterion; pods must already be quoted."""
        if len(pods) > MAX_PODS_IN_FILTER:
            logger.warning(
                "FilterBuilder tries to build with more than %d pods, thus the pod filter is ignored",
                MAX_PODS_IN_FILTER,
            )
            return self
        if not pods:
            logger.warning("FilterBuilder tries to build with empty pod, thus the pod filter is ignored")
            return self
        if len(pods) == 1:
            return self._with(f"{self.schema.pods} = {pods[0]}")
        return self._with(f"{self.schema.pods} = one_of({','.join(pods)})")

    def with_nodes(self, nodes: Sequence[str]) -> "FilterBuilder":
        """Add a node criterion matching any of the given names exactly."""
        regex = f"^({'|'.join(nodes)})$"
        return self._with(f"{self.schema.nodes} = monitoring.regex.full_match({quote(regex)})")

    def build(self) -> str:
        """Return all criteria, sorted, joined with AND."""
        query = " AND ".join(sorted(self.filters))
        logger.info("Query with filter(s): %s", quote(query))
        return query


def new_filter_builder(resource_type: str) -> FilterBuilder:
    """Start a builder for the given resource type, filtering on that type."""
    schema = _SCHEMAS_BY_TYPE.get(resource_type, POD_SCHEMA)
    filters: tuple[str, ...] = ()
    if resource_type != LEGACY_TYPE and schema.resource_type:
        filters = (f"{schema.resource_type} = {quote(resource_type)}",)
    return FilterBuilder(schema=schema, filters=filters)