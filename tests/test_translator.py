from datetime import datetime, timedelta, timezone

import pytest

from sdadapter.config import GceConfig
from sdadapter.errors import (
    StatusError,
    new_bad_request,
    new_label_not_allowed_error,
)
from sdadapter.labels import Operator, Selector, everything, new_requirement, parse, selector_from_set
from sdadapter.models import (
    MetricDescriptor,
    MetricDescriptorsListRequest,
    Node,
    ObjectMeta,
    Pod,
    RestMapper,
    TimeSeriesListRequest,
)
from sdadapter.translator import (
    ALLOWED_CUSTOM_METRICS_FULL_LABEL_NAMES,
    ALLOWED_CUSTOM_METRICS_LABEL_PREFIXES,
    ALLOWED_EXTERNAL_METRICS_FULL_LABEL_NAMES,
    ALLOWED_EXTERNAL_METRICS_LABEL_PREFIXES,
    Translator,
    is_allowed_label_name,
    is_distribution,
    join_filters,
    quote_all,
    split_metric_label,
)

NOW = datetime(2017, 1, 2, 13, 2, 0, tzinfo=timezone.utc)


class FakeService:
    def __init__(self, descriptors=None):
        self.descriptors = descriptors or {}
        self.calls = []

    def get_metric_descriptor(self, name):
        self.calls.append(name)
        return self.descriptors[name]


def make_translator(
    use_new_resource_model=True,
    support_distributions=False,
    project="my-project",
    cluster="my-cluster",
    location="my-zone",
    req_window=timedelta(minutes=2),
    clock=None,
    service=None,
    cache_size=1000,
):
    mapper = RestMapper()
    mapper.add("Pod")
    mapper.add("Node")
    return Translator(
        service or FakeService(),
        GceConfig(project=project, location=location, cluster=cluster, instance=""),
        req_window,
        timedelta(minutes=1),
        mapper,
        use_new_resource_model,
        support_distributions,
        cache_size,
        clock or (lambda: NOW),
    )


def external_translator(**kwargs):
    return make_translator(use_new_resource_model=False, cluster="", location="", **kwargs)


def test_list_metric_descriptors():
    request = make_translator().list_metric_descriptors(False)
    assert request == MetricDescriptorsListRequest(
        name="projects/my-project",
        filter='resource.labels.project_id = "my-project" '
        'AND resource.labels.cluster_name = "my-cluster" '
        'AND resource.labels.location = "my-zone" '
        'AND resource.type = one_of("k8s_pod","k8s_node")',
    )


def test_list_metric_descriptors_container_metrics():
    request = make_translator().list_metric_descriptors(True)
    assert request.filter == (
        'resource.labels.project_id = "my-project" '
        'AND resource.labels.cluster_name = "my-cluster" '
        'AND resource.labels.location = "my-zone" '
        'AND resource.type = one_of("k8s_pod","k8s_node","k8s_container")'
    )


def test_list_metric_descriptors_legacy_resource_type():
    request = make_translator(use_new_resource_model=False).list_metric_descriptors(False)
    assert request == MetricDescriptorsListRequest(
        name="projects/my-project",
        filter='resource.labels.project_id = "my-project" '
        'AND resource.labels.cluster_name = "my-cluster" '
        'AND resource.labels.container_name = "" AND resource.labels.pod_id != "" '
        'AND resource.labels.pod_id != "machine"',
    )


def test_external_metric_request_no_selector():
    request = external_translator().get_external_metric_request(
        "custom.googleapis.com/my/metric/name", "GAUGE", "INT64", Selector()
    )
    assert request == TimeSeriesListRequest(
        name="projects/my-project",
        filter='metric.type = "custom.googleapis.com/my/metric/name"',
        interval_start_time="2017-01-02T13:00:00Z",
        interval_end_time="2017-01-02T13:02:00Z",
        per_series_aligner="ALIGN_NEXT_OLDER",
        alignment_period="120s",
    )


def test_external_metric_request_correct_selector_cumulative():
    selector = Selector().add(
        new_requirement("resource.type", Operator.EQUALS, ["k8s_pod"]),
        new_requirement("resource.labels.project_id", Operator.EQUALS, ["my-project"]),
        new_requirement("resource.labels.pod_name", Operator.EXISTS, []),
        new_requirement("resource.labels.namespace_name", Operator.NOT_IN, ["default", "kube-system"]),
        new_requirement("metric.labels.my_label", Operator.GREATER_THAN, ["86"]),
    )
    request = external_translator().get_external_metric_request(
        "custom.googleapis.com/my/metric/name", "CUMULATIVE", "INT64", selector
    )
    assert request == TimeSeriesListRequest(
        name="projects/my-project",
        filter='metric.type = "custom.googleapis.com/my/metric/name" '
        "AND metric.labels.my_label > 86 "
        'AND NOT resource.labels.namespace_name = one_of("default","kube-system") '
        "AND resource.labels : pod_name "
        'AND resource.labels.project_id = "my-project" '
        'AND resource.type = "k8s_pod"',
        interval_start_time="2017-01-02T13:00:00Z",
        interval_end_time="2017-01-02T13:02:00Z",
        per_series_aligner="ALIGN_RATE",
        alignment_period="60s",
    )


def test_external_metric_request_different_project():
    selector = Selector().add(
        new_requirement("resource.type", Operator.EQUALS, ["k8s_pod"]),
        new_requirement("resource.labels.project_id", Operator.EQUALS, ["other-project"]),
    )
    request = external_translator().get_external_metric_request(
        "custom.googleapis.com/my/metric/name", "CUMULATIVE", "INT64", selector
    )
    assert request == TimeSeriesListRequest(
        name="projects/other-project",
        filter='metric.type = "custom.googleapis.com/my/metric/name" '
        'AND resource.labels.project_id = "other-project" '
        'AND resource.type = "k8s_pod"',
        interval_start_time="2017-01-02T13:00:00Z",
        interval_end_time="2017-01-02T13:02:00Z",
        per_series_aligner="ALIGN_RATE",
        alignment_period="60s",
    )


def test_external_metric_request_invalid_label():
    with pytest.raises(StatusError) as info:
        external_translator().get_external_metric_request(
            "custom.googleapis.com/my/metric/name",
            "GAUGE",
            "INT64",
            selector_from_set({"arbitrary-label": "foo"}),
        )
    assert info.value == new_label_not_allowed_error("arbitrary-label")


def test_external_metric_request_one_invalid_requirement():
    selector = Selector().add(
        new_requirement("resource.type", Operator.EQUALS, ["k8s_pod"]),
        new_requirement("resource.labels.pod_name", Operator.EXISTS, []),
        new_requirement("resource.labels.namespace_name", Operator.NOT_IN, ["default", "kube-system"]),
        new_requirement("metric.labels.my_label", Operator.DOES_NOT_EXIST, []),
    )
    with pytest.raises(StatusError) as info:
        external_translator().get_external_metric_request(
            "custom.googleapis.com/my/metric/name", "GAUGE", "INT64", selector
        )
    assert info.value == new_bad_request("Label selector with operator DoesNotExist is not allowed")


def test_external_metric_request_distribution_not_supported():
    with pytest.raises(StatusError) as info:
        external_translator().get_external_metric_request(
            "custom.googleapis.com/m", "DELTA", "DISTRIBUTION", Selector()
        )
    assert info.value == new_bad_request("Distributions are not supported")


def test_external_metric_request_distribution_with_reducer():
    translator = make_translator(use_new_resource_model=False, support_distributions=True)
    request = translator.get_external_metric_request(
        "custom.googleapis.com/m", "DELTA", "DISTRIBUTION", parse("reducer=REDUCE_PERCENTILE_50")
    )
    assert request.per_series_aligner == "ALIGN_DELTA"
    assert request.cross_series_reducer == "REDUCE_PERCENTILE_50"
    assert request.alignment_period == "60s"
    assert request.filter == 'metric.type = "custom.googleapis.com/m"'


def test_external_metric_project_rejects_non_equality():
    selector = parse("resource.labels.project_id in (a,b)")
    with pytest.raises(StatusError) as info:
        external_translator().get_external_metric_project(selector)
    assert info.value == new_label_not_allowed_error(
        "Project selector must use '=' or '==': You used in"
    )


def test_external_metric_project_defaults_to_config():
    assert external_translator().get_external_metric_project(parse("metric.labels.a=b")) == "my-project"


def custom_filter(selector_text):
    return make_translator().filter_for_selector(
        parse(selector_text),
        ALLOWED_CUSTOM_METRICS_LABEL_PREFIXES,
        ALLOWED_CUSTOM_METRICS_FULL_LABEL_NAMES,
    )


@pytest.mark.parametrize(
    "text, expected",
    [
        ("metric.labels.custom=test", 'metric.labels.custom = "test"'),
        ("metric.labels.a!=b", 'metric.labels.a != "b"'),
        ("metric.labels.a in (x)", "metric.labels.a = x"),
        ("metric.labels.a in (x,y)", 'metric.labels.a = one_of("x","y")'),
        ("metric.labels.a notin (x)", "metric.labels.a != x"),
        ("metric.labels.a notin (x,y)", 'NOT metric.labels.a = one_of("x","y")'),
        ("metric.labels.a<5", "metric.labels.a < 5"),
        ("metric.labels.a", "metric.labels : a"),
    ],
)
def test_filter_for_selector_operators(text, expected):
    assert custom_filter(text) == (expected, "")


def test_filter_for_selector_reducer():
    assert custom_filter("metric.labels.custom=test,reducer=REDUCE_PERCENTILE_99") == (
        'metric.labels.custom = "test"',
        "REDUCE_PERCENTILE_99",
    )


def test_filter_for_selector_bad_reducer():
    with pytest.raises(StatusError) as info:
        custom_filter("reducer=PERCENTILE_52")
    assert info.value == new_label_not_allowed_error("Specified reducer is not supported: PERCENTILE_52")


def test_filter_for_selector_reducer_with_in():
    with pytest.raises(StatusError) as info:
        custom_filter("reducer in (PERCENTILE_50,PERCENTILE_99)")
    assert info.value == new_label_not_allowed_error("Reducer must use '=' or '==': You used in")


def test_filter_for_selector_resource_label_not_allowed_for_custom():
    with pytest.raises(StatusError) as info:
        custom_filter("resource.labels.type=container")
    assert info.value == new_label_not_allowed_error("resource.labels.type")


def test_filter_for_selector_exists_not_allowed_for_custom():
    with pytest.raises(StatusError) as info:
        custom_filter("resource.labels.type")
    assert info.value == new_label_not_allowed_error("resource.labels.type")


def test_filter_for_selector_unselectable():
    with pytest.raises(StatusError) as info:
        make_translator().filter_for_selector(
            Selector(selectable=False),
            ALLOWED_EXTERNAL_METRICS_LABEL_PREFIXES,
            ALLOWED_EXTERNAL_METRICS_FULL_LABEL_NAMES,
        )
    assert info.value.code == 400
    assert info.value.message.startswith("Label selector is impossible to match")


@pytest.mark.parametrize(
    "kind, value_type, aligner, period",
    [
        ("GAUGE", "INT64", "ALIGN_NEXT_OLDER", "120s"),
        ("DELTA", "INT64", "ALIGN_RATE", "60s"),
        ("CUMULATIVE", "DOUBLE", "ALIGN_RATE", "60s"),
        ("DELTA", "DISTRIBUTION", "ALIGN_DELTA", "60s"),
        ("GAUGE", "DISTRIBUTION", "ALIGN_DELTA", "120s"),
    ],
)
def test_create_list_timeseries_request_aligner(kind, value_type, aligner, period):
    request = make_translator().create_list_timeseries_request("f", kind, value_type, "")
    assert (request.per_series_aligner, request.alignment_period) == (aligner, period)
    assert request.name == "projects/my-project"
    assert request.cross_series_reducer == ""


def test_create_list_timeseries_request_project_with_reducer():
    request = make_translator().create_list_timeseries_request_project(
        "f", "GAUGE", "other", "INT64", "REDUCE_SUM"
    )
    assert request.name == "projects/other"
    assert request.cross_series_reducer == "REDUCE_SUM"
    assert request.interval_start_time == "2017-01-02T13:00:00Z"


def test_get_metric_kind_uses_cache():
    service = FakeService(
        {"projects/my-project/metricDescriptors/m": MetricDescriptor("m", "GAUGE", "INT64")}
    )
    translator = make_translator(service=service)
    assert translator.get_metric_kind("m", everything()) == ("GAUGE", "INT64")
    assert translator.get_metric_kind("m", everything()) == ("GAUGE", "INT64")
    assert len(service.calls) == 1


def test_get_metric_kind_cache_expires():
    now = [NOW]
    service = FakeService(
        {"projects/my-project/metricDescriptors/m": MetricDescriptor("m", "DELTA", "DOUBLE")}
    )
    translator = make_translator(service=service, clock=lambda: now[0])
    translator.get_metric_kind("m", everything())
    now[0] = NOW + timedelta(minutes=6)
    assert translator.get_metric_kind("m", everything()) == ("DELTA", "DOUBLE")
    assert len(service.calls) == 2


def test_get_metric_kind_without_cache():
    service = FakeService(
        {"projects/my-project/metricDescriptors/m": MetricDescriptor("m", "GAUGE", "INT64")}
    )
    translator = make_translator(service=service, cache_size=0)
    translator.get_metric_kind("m", everything())
    translator.get_metric_kind("m", everything())
    assert translator.metric_cache is None
    assert len(service.calls) == 2


def test_get_metric_kind_other_project():
    service = FakeService(
        {"projects/other/metricDescriptors/m": MetricDescriptor("m", "CUMULATIVE", "INT64")}
    )
    translator = make_translator(service=service)
    result = translator.get_metric_kind("m", parse("resource.labels.project_id=other"))
    assert result == ("CUMULATIVE", "INT64")
    assert service.calls == ["projects/other/metricDescriptors/m"]


def test_get_metric_kind_project_must_use_equality():
    with pytest.raises(StatusError) as info:
        make_translator().get_metric_kind("m", parse("resource.labels.project_id!=other"))
    assert info.value == new_label_not_allowed_error(
        "Project selector must use '=' or '==': You used !="
    )


def test_get_metric_kind_missing_descriptor():
    with pytest.raises(StatusError) as info:
        make_translator().get_metric_kind("missing", everything())
    assert info.value.code == 404
    assert "descriptor for metric missing" in info.value.message


def test_get_pod_and_node_items():
    translator = make_translator()
    pod_meta = ObjectMeta(name="p", namespace="ns", uid="id-1")
    node_meta = ObjectMeta(name="n", uid="id-2")
    assert translator.get_pod_items([Pod(pod_meta)]) == [pod_meta]
    assert translator.get_node_items([Node(node_meta)]) == [node_meta]


def test_join_filters_skips_empty():
    assert join_filters("a", "", "b") == "a AND b"
    assert join_filters("", "") == ""


def test_is_allowed_label_name():
    assert is_allowed_label_name("metric.labels.x", ["metric.labels"], ["reducer"])
    assert is_allowed_label_name("reducer", ["metric.labels"], ["reducer"])
    assert not is_allowed_label_name("metric.labels", ["metric.labels"], ["reducer"])
    assert not is_allowed_label_name("resource.type", ["metric.labels"], ["reducer"])


def test_split_metric_label():
    assert split_metric_label("resource.labels.pod_name", ["metric.labels", "resource.labels"]) == (
        "resource.labels",
        "pod_name",
    )
    with pytest.raises(StatusError) as info:
        split_metric_label("other.x", ["metric.labels"])
    assert info.value == new_bad_request("Label name: other.x is not allowed.")


def test_quote_all():
    assert quote_all(["a", 'b"c']) == ['"a"', '"b\\"c"']


def test_is_distribution():
    assert is_distribution(parse("reducer=REDUCE_SUM,metric.labels.a=b"))
    assert not is_distribution(parse("metric.labels.a=b"))