"""Translation between Kubernetes metrics API queries and Cloud Monitoring time series."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "errors",
    "filter_builder",
    "labels",
    "models",
    "query_builder",
    "response",
    "response_core",
    "translator",
]