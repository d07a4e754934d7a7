"""Provider error classification and aggregation.

Every failure coming out of boto3 is classified exactly once, at the
boundary where it is observed, into one of three kinds:

- ``TRANSIENT``: safe to retry or poll past (throttling, eventual
  consistency lag, connectivity, 5xx).
- ``UNRECOVERABLE``: the request itself is wrong or a limit was hit; the
  allocation must abort and roll back.
- ``AUTHORIZATION``: unrecoverable, but reported distinctly so the caller
  can surface an actionable message.

Anything that is not a provider error at all is unrecoverable.

Example:
    from skyfleet.errors import classify, propagate

    try:
        ec2.run_instances(**request)
    except Exception as e:
        if classify(e).unrecoverable:
            raise propagate(e) from e
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from loguru import logger

log = logger.bind(component="errors")


class Classification(StrEnum):
    TRANSIENT = "transient"
    UNRECOVERABLE = "unrecoverable"
    AUTHORIZATION = "authorization"


AUTHORIZATION_ERROR_CODES = frozenset({
    "AuthFailure",
    "UnauthorizedOperation",
    "AccessDenied",
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredToken",
})

THROTTLING_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "SlowDown",
})

CAPACITY_ERROR_CODES = frozenset({
    "InsufficientInstanceCapacity",
    "InstanceLimitExceeded",
    "MaxSpotInstanceCountExceeded",
    "VcpuLimitExceeded",
    "LimitExceeded",
    "SpotMaxPriceTooLow",
})

# OperationNotPermitted: termination protection, detaching eth0, ...
# Unsupported: the request combination is not supported.
UNRECOVERABLE_ERROR_CODES = frozenset({
    "OperationNotPermitted",
    "Unsupported",
    "InvalidParameterValue",
    "InvalidParameterCombination",
    "InvalidParameter",
    "MissingParameter",
    "ValidationError",
})

_TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

_NOT_FOUND_SUFFIXES = (".NotFound", "NotFound")


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    """The result of classifying one failure."""

    kind: Classification
    code: str | None
    message: str

    @property
    def transient(self) -> bool:
        return self.kind is Classification.TRANSIENT

    @property
    def unrecoverable(self) -> bool:
        return self.kind is not Classification.TRANSIENT


def error_code(exc: BaseException) -> str | None:
    """Return the AWS error code carried by ``exc``, if any."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    if isinstance(exc, ProviderError):
        return exc.code
    return None


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        message = exc.response.get("Error", {}).get("Message")
        if message:
            return message
    return str(exc) or type(exc).__name__


def is_not_found(exc: BaseException) -> bool:
    """Whether ``exc`` reports an object that is not (yet) visible."""
    code = error_code(exc)
    return code is not None and code.endswith(_NOT_FOUND_SUFFIXES)


def _http_status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def classify(exc: BaseException) -> ErrorClassification:
    """Classify a failure observed while talking to the provider."""
    if isinstance(exc, ProviderError):
        return ErrorClassification(exc.classification, exc.code, exc.message)

    message = error_message(exc)

    if isinstance(exc, ClientError):
        code = error_code(exc) or ""
        if code in AUTHORIZATION_ERROR_CODES:
            kind = Classification.AUTHORIZATION
        elif code in THROTTLING_ERROR_CODES or is_not_found(exc):
            kind = Classification.TRANSIENT
        elif code in UNRECOVERABLE_ERROR_CODES or code in CAPACITY_ERROR_CODES:
            kind = Classification.UNRECOVERABLE
        elif code.startswith("InvalidParameter"):
            kind = Classification.UNRECOVERABLE
        elif 400 <= _http_status(exc) < 500:
            kind = Classification.UNRECOVERABLE
        else:
            kind = Classification.TRANSIENT
        return ErrorClassification(kind, code or None, message)

    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return ErrorClassification(Classification.AUTHORIZATION, None, message)

    if isinstance(exc, _TRANSIENT_BOTOCORE_ERRORS):
        return ErrorClassification(Classification.TRANSIENT, None, message)

    if isinstance(exc, BotoCoreError):
        return ErrorClassification(Classification.UNRECOVERABLE, None, message)

    # Not a provider error at all; fail closed.
    return ErrorClassification(Classification.UNRECOVERABLE, None, message)


# =============================================================================
# Exceptions
# =============================================================================


class ProviderError(Exception):
    """Base class for classified provider failures."""

    classification: Classification = Classification.UNRECOVERABLE

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class TransientProviderError(ProviderError):
    classification = Classification.TRANSIENT


class UnrecoverableProviderError(ProviderError):
    classification = Classification.UNRECOVERABLE


class InvalidCredentialsError(UnrecoverableProviderError):
    """Credentials lack permission for the attempted call."""

    classification = Classification.AUTHORIZATION


class AllocationCancelledError(BaseException):
    """Raised out of a wait loop when the caller asked the allocation to stop.

    Derives from ``BaseException`` like ``KeyboardInterrupt`` so that
    ``except Exception`` handlers never classify it as a provider failure.
    """


def propagate(exc: BaseException) -> ProviderError:
    """Map ``exc`` to the matching ``ProviderError``.

    The caller is expected to ``raise propagate(e) from e`` so the original
    stays chained.
    """
    if isinstance(exc, ProviderError):
        return exc

    result = classify(exc)
    match result.kind:
        case Classification.AUTHORIZATION:
            return InvalidCredentialsError(result.message, result.code)
        case Classification.UNRECOVERABLE:
            return UnrecoverableProviderError(result.message, result.code)
        case _:
            return TransientProviderError(result.message, result.code)


def propagate_if_unrecoverable(exc: BaseException) -> None:
    """Raise the mapped error if ``exc`` is unrecoverable, otherwise return."""
    if classify(exc).unrecoverable:
        raise propagate(exc) from exc


# =============================================================================
# Condition accumulation
# =============================================================================


@dataclass(frozen=True, slots=True)
class Condition:
    """One error or warning observed during an allocation."""

    severity: Literal["error", "warning"]
    message: str
    code: str | None = None
    classification: Classification | None = None


@dataclass(slots=True)
class ConditionAccumulator:
    """Collects errors and warnings so cleanup failures are reported, not lost."""

    conditions: list[Condition] = field(default_factory=list)

    def add_error(
        self,
        message: str,
        code: str | None = None,
        classification: Classification | None = None,
    ) -> None:
        self.conditions.append(Condition("error", message, code, classification))

    def add_warning(self, message: str, code: str | None = None) -> None:
        self.conditions.append(Condition("warning", message, code))

    def add_exception(self, prefix: str, exc: BaseException) -> None:
        result = classify(exc)
        self.add_error(f"{prefix}: {result.message}", result.code, result.kind)

    @property
    def has_error(self) -> bool:
        return any(c.severity == "error" for c in self.conditions)

    @property
    def errors(self) -> tuple[Condition, ...]:
        return tuple(c for c in self.conditions if c.severity == "error")

    @property
    def warnings(self) -> tuple[Condition, ...]:
        return tuple(c for c in self.conditions if c.severity == "warning")


class AllocationError(UnrecoverableProviderError):
    """A failed allocation, carrying its classified cause and cleanup conditions.

    ``cause`` is the classification of the failure that triggered the
    rollback. Failures that happened while rolling back are in
    ``conditions`` and never replace ``cause``.
    """

    def __init__(
        self,
        message: str,
        cause: ErrorClassification | None = None,
        conditions: Iterable[Condition] = (),
    ) -> None:
        super().__init__(message, cause.code if cause else None)
        self.cause = cause
        self.conditions = tuple(conditions)
        if cause is not None:
            self.classification = cause.kind

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause is not None:
            code = f" ({self.cause.code})" if self.cause.code else ""
            parts.append(f"cause: {self.cause.message}{code}")
        parts.extend(f"{c.severity}: {c.message}" for c in self.conditions)
        return "; ".join(parts)


class InsufficientCapacityError(AllocationError):
    """Fewer than the minimum number of instances could be allocated in time."""


# =============================================================================
# Compensating calls
# =============================================================================


def call_all(*calls: Callable[[], object]) -> None:
    """Run every call, then raise the first failure with the rest attached.

    Later failures are kept on ``first.suppressed`` and as exception notes,
    so tearing down one resource never hides a failure tearing down another.
    """
    first: Exception | None = None
    suppressed: list[Exception] = []

    for call in calls:
        try:
            call()
        except Exception as e:
            if first is None:
                first = e
            else:
                suppressed.append(e)
                log.warning("Additional failure during cleanup: {err}", err=e)

    if first is not None:
        first.suppressed = tuple(suppressed)  # type: ignore[attr-defined]
        for e in suppressed:
            first.add_note(f"also failed: {type(e).__name__}: {error_message(e)}")
        raise first


def suppressed_errors(exc: BaseException) -> tuple[Exception, ...]:
    return getattr(exc, "suppressed", ())
