"""Status errors reported by the adapter, shaped like Kubernetes API statuses."""

from __future__ import annotations

from .filter_builder import quote

STATUS_FAILURE = "Failure"
REASON_BAD_REQUEST = "BadRequest"
REASON_NOT_FOUND = "NotFound"
REASON_INTERNAL_ERROR = "InternalError"

HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_INTERNAL_SERVER_ERROR = 500
HTTP_NOT_IMPLEMENTED = 501


class StatusError(Exception):
    """An error carrying an API status: code, reason and message."""

    def __init__(self, code: int, reason: str, message: str, status: str = STATUS_FAILURE):
        super().__init__(message)
        self.status = status
        self.code = code
        self.reason = reason
        self.message = message

    def _key(self) -> tuple:
        return (self.status, self.code, self.reason, self.message)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StatusError):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"StatusError(code={self.code!r}, reason={self.reason!r}, "
            f"message={self.message!r}, status={self.status!r})"
        )


def new_bad_request(message: str) -> StatusError:
    """Return an error for a malformed or unsupported request."""
    return StatusError(HTTP_BAD_REQUEST, REASON_BAD_REQUEST, message)


def new_internal_error(err: object) -> StatusError:
    """Return an error for an unexpected internal failure."""
    return StatusError(
        HTTP_INTERNAL_SERVER_ERROR,
        REASON_INTERNAL_ERROR,
        f"Internal error occurred: {err}",
    )


def _metric_not_found(message: str) -> StatusError:
    return StatusError(HTTP_NOT_FOUND, REASON_NOT_FOUND, message)


def new_no_such_metric_error(metric_name: str, err: object) -> StatusError:
    """Return an error saying the descriptor of a metric could not be found."""
    return _metric_not_found(
        f"the server could not find the descriptor for metric {metric_name}: {err}"
    )


def new_metric_not_found_error(resource: object, metric_name: str) -> StatusError:
    """Return an error saying a metric could not be found for a resource kind."""
    return _metric_not_found(f"the server could not find the metric {metric_name} for {resource}")


def new_metric_not_found_for_error(
    resource: object, metric_name: str, resource_name: str
) -> StatusError:
    """Return an error saying a metric could not be found for a named object."""
    return _metric_not_found(
        f"the server could not find the metric {metric_name} for {resource} {resource_name}"
    )


def new_external_metric_not_found_error(metric_name: str) -> StatusError:
    """Return an error saying an external metric could not be found."""
    return _metric_not_found(
        f"the server could not find the metric {metric_name} for provided labels"
    )


def new_label_not_allowed_error(label: str) -> StatusError:
    """Return an error saying a metric label may not be used."""
    return new_bad_request(f"Metric label: {quote(label)} is not allowed")


def new_operation_not_supported_error(operation: str) -> StatusError:
    """Return an error saying the requested operation is not implemented."""
    return StatusError(
        HTTP_NOT_IMPLEMENTED,
        REASON_BAD_REQUEST,
        f"Operation: {quote(operation)} is not implemented",
    )