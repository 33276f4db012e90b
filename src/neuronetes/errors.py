"""Error taxonomy shared by the reconcilers and their collaborators."""

from enum import Enum

from kubernetes.client.rest import ApiException


class ErrorKind(str, Enum):
    TRANSIENT = "Transient"
    CAPACITY = "Capacity"
    VALIDATION = "Validation"
    INVALID_SPEC = "InvalidSpec"
    GONE = "Gone"
    UNKNOWN = "Unknown"


class OperatorError(Exception):
    """Base class for errors raised inside a reconcile tick."""

    kind = ErrorKind.UNKNOWN


class TransientError(OperatorError):
    """Network, timeout or server-side failure; retried on the next tick."""

    kind = ErrorKind.TRANSIENT


class CapacityError(TransientError):
    """The provisioner could not satisfy a create request."""

    kind = ErrorKind.CAPACITY


class WeightValidationError(OperatorError):
    """Weights failed format or integrity validation. Not retried."""

    kind = ErrorKind.VALIDATION


class InvalidSpecError(OperatorError, ValueError):
    """The operator-authored spec cannot be reconciled as written."""

    kind = ErrorKind.INVALID_SPEC


class ResourceGone(OperatorError):
    """The resource was deleted between read and act."""

    kind = ErrorKind.GONE


def classify(exc):
    """Return the ErrorKind for any exception raised during a tick."""
    if isinstance(exc, OperatorError):
        return exc.kind
    if isinstance(exc, ApiException):
        return classify_api_exception(exc)
    return ErrorKind.UNKNOWN


def classify_api_exception(exc):
    if exc.status == 404:
        return ErrorKind.GONE
    if exc.status == 403 and "exceeded quota" in str(exc.body or ""):
        return ErrorKind.CAPACITY
    if exc.status in (400, 422):
        return ErrorKind.INVALID_SPEC
    return ErrorKind.TRANSIENT


def from_api_exception(exc, message):
    """Translate a Kubernetes ApiException into the taxonomy."""
    kind = classify_api_exception(exc)
    detail = f"{message}: {exc.status} {exc.reason}"
    if kind is ErrorKind.GONE:
        return ResourceGone(detail)
    if kind is ErrorKind.CAPACITY:
        return CapacityError(detail)
    if kind is ErrorKind.INVALID_SPEC:
        return InvalidSpecError(detail)
    return TransientError(detail)
