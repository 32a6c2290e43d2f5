# sdadapter

`sdadapter` connects the Kubernetes metrics APIs (custom, external and core
resource metrics) to Cloud Monitoring. It has two jobs:

* It builds time series list requests from a metric name, a label selector
  and the pods or nodes in question. A request holds a filter expression, an
  interval, an aligner, an alignment period and, when one is asked for, a
  cross-series reducer.
* It checks time series responses and turns them back into metric values.

Requests are plain values (`TimeSeriesListRequest`,
`MetricDescriptorsListRequest` in `sdadapter.models`). Responses are plain
values too (`ListTimeSeriesResponse`, `ListMetricDescriptorsResponse`). Sending
requests and receiving responses is up to the caller.

## Installation

```
pip install sdadapter
```

To run the test suite:

```
pip install "sdadapter[test]"
pytest
```

## The translator

`sdadapter.translator.Translator` holds everything the other parts need:

* `config`: a `GceConfig` giving the project, location and cluster.
* `req_window` and `alignment_period`: `timedelta` values.
* `mapper`: a `RestMapper` that resolves resource names to kinds. If you pass
  `None`, an empty one is used.
* `use_new_resource_model`: selects the `k8s_*` resource types. When false,
  the legacy `pod_id` schema is used.
* `support_distributions`: whether `DISTRIBUTION` values may be queried.
* `metric_kind_cache_size`: when greater than 0, results of `get_metric_kind`
  are kept for five minutes.
* `clock`: a callable returning the current `datetime`. The default is UTC now.
* `service`: an object with a `get_metric_descriptor(name)` method. It is used
  only by `get_metric_kind`.

## Building a query

`sdadapter.query_builder.QueryBuilder` is immutable. Each `with_*` call and
`as_container_type()` returns a new builder. `build()` validates the builder
first and raises `StatusError` in these cases:

* there is no translator
* no pods or nodes are given
* both pods and pod names are given
* nodes are combined with pods or with a namespace
* more than 100 pods are given
* `DISTRIBUTION` is requested and the translator does not support it
* container type is requested on the legacy resource model
* the selector uses a label or operator that is not allowed

```python
from datetime import datetime, timedelta, timezone

from sdadapter.config import GceConfig
from sdadapter.labels import parse
from sdadapter.models import ObjectMeta, Pod
from sdadapter.query_builder import QueryBuilder
from sdadapter.translator import Translator

translator = Translator(
    service=None,
    config=GceConfig(project="my-project", location="my-zone",
                     cluster="my-cluster", instance="my-instance"),
    req_window=timedelta(minutes=2),
    alignment_period=timedelta(minutes=1),
    mapper=None,
    use_new_resource_model=True,
    support_distributions=False,
    metric_kind_cache_size=0,
    clock=lambda: datetime(2017, 1, 2, 13, 2, tzinfo=timezone.utc),
)

pod = Pod(ObjectMeta(name="my-pod-name", uid="my-pod-id"))
request = (
    QueryBuilder(translator, "custom.googleapis.com/my/metric")
    .with_pods([pod])
    .with_namespace("default")
    .with_metric_kind("GAUGE")
    .with_metric_value_type("INT64")
    .with_metric_selector(parse("metric.labels.custom=test"))
    .build()
)
print(request.filter)
```

The filter schema is picked by the first rule that applies:

1. The legacy `pod_id` schema, if the translator does not use the new
   resource model.
2. `k8s_container`, after `as_container_type()`.
3. `prometheus_target`, for metric names starting with
   `prometheus.googleapis.com`.
4. `k8s_node`, if the namespace is empty.
5. `k8s_pod` otherwise.

The aligner depends on the metric:

* `GAUGE` metrics use `ALIGN_NEXT_OLDER` over the request window.
* `DELTA` and `CUMULATIVE` metrics use `ALIGN_RATE` over the alignment period.
* `DISTRIBUTION` values use `ALIGN_DELTA`.

Other translator methods:

* `get_external_metric_request(...)` builds the request for an external metric.
  A `resource.labels.project_id=...` requirement in the selector switches the
  project.
* `list_metric_descriptors(fallback_for_container_metrics)` builds the
  descriptor listing request for the cluster.

## Filters by hand

`sdadapter.filter_builder` has the low-level pieces: `FilterBuilder`, `Schema`,
`new_filter_builder` and `quote`. `build()` sorts the terms and joins them with
`AND`:

```python
from sdadapter.filter_builder import new_filter_builder

query = (
    new_filter_builder("k8s_pod")
    .with_metric_type("custom.googleapis.com/foo")
    .with_project("my-project")
    .build()
)
```

## Label selectors

`sdadapter.labels` provides `parse`, `everything`, `selector_from_set` and
`new_requirement`, which build a `Selector` made of `Requirement`s. Malformed
selectors raise `ValueError`. The operators are listed in `Operator`:

* `=`, `==`, `!=`
* `in`, `notin`
* exists (`key`) and does-not-exist (`!key`)
* `>`, `<`

Query filters accept every operator except does-not-exist. The special
`reducer` label picks a cross-series reducer such as `REDUCE_PERCENTILE_99`.

## Reading responses

`sdadapter.response` handles custom and external metric responses:

* `get_resp_for_single_object` and `get_resp_for_multiple_objects` return
  `MetricValue`s. When several series map to the same object, their values
  are summed.
* `get_resp_for_external_metric` returns one `ExternalMetricValue` per series.
* `get_metrics_from_descriptors` returns a `CustomMetricInfo` for each `INT64`
  or `DOUBLE` descriptor. Each `/` in the name is replaced by `|`.
* `check_metric_uniqueness_for_pod` raises if two containers of one pod report
  the same metric.

`sdadapter.response_core` handles core resource metrics. It returns
`Quantity` values together with `TimeInfo`:

* `get_core_container_metric_from_response` returns values keyed by pod, then
  by container.
* `get_core_node_metric_from_response` returns values keyed by node.

## Configuration on GCE

`sdadapter.config.get_gce_config(client)` reads the following from the GCE
metadata server through a `MetadataClient`:

* the project
* the cluster location (the instance zone if that attribute is missing)
* the cluster name
* the instance hostname

The server address can be set with `GCE_METADATA_HOST`. `get_gce_config`
raises `RuntimeError` if it is not running on GCE or if any value cannot be
read.

## Errors

Translation failures are raised as `sdadapter.errors.StatusError`. It carries
`status`, `code`, `reason` and `message`, like an API status.

## What this package does not do

The package contains no HTTP client for the Cloud Monitoring API and no
server for the Kubernetes metrics APIs. It provides no command-line program.
The caller sends the request values it builds and passes the responses back
in.