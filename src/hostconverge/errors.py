"""Step error kinds and classification.

Adapters raise a StepError subclass when a step cannot converge. The
executor catches at the step boundary and records the error kind on the
step's result. Anything that is not already a StepError is classified by
classify_error().
"""

import re
from enum import Enum
from typing import Optional

import requests


class ErrorKind(str, Enum):
    """Classification attached to a failed step."""
    RESOURCE_UNAVAILABLE = 'ResourceUnavailable'
    PERMISSION_DENIED = 'PermissionDenied'
    CHECKSUM_MISMATCH = 'ChecksumMismatch'
    NETWORK_FAILURE = 'NetworkFailure'
    CONFLICTING_STATE = 'ConflictingState'


class StepError(Exception):
    """Base exception for step failures."""

    kind = ErrorKind.CONFLICTING_STATE

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(f"{self.kind.value}: {message}")


class ResourceUnavailableError(StepError):
    """Target package, service, image, file or secret not found."""
    kind = ErrorKind.RESOURCE_UNAVAILABLE


class PermissionDeniedError(StepError):
    """Operation not permitted, or refused by the secret exposure policy."""
    kind = ErrorKind.PERMISSION_DENIED


class ChecksumMismatchError(StepError):
    """Fetched content does not match the expected digest. Never retried."""
    kind = ErrorKind.CHECKSUM_MISMATCH


class NetworkFailureError(StepError):
    """Transient network error; recover by re-running."""
    kind = ErrorKind.NETWORK_FAILURE


class ConflictingStateError(StepError):
    """Current state cannot be reconciled automatically."""
    kind = ErrorKind.CONFLICTING_STATE


STEP_ERRORS: dict[ErrorKind, type[StepError]] = {
    ErrorKind.RESOURCE_UNAVAILABLE: ResourceUnavailableError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.CHECKSUM_MISMATCH: ChecksumMismatchError,
    ErrorKind.NETWORK_FAILURE: NetworkFailureError,
    ErrorKind.CONFLICTING_STATE: ConflictingStateError,
}

# Checked in order; first match wins
_COMMAND_PATTERNS: list[tuple[ErrorKind, re.Pattern]] = [
    (ErrorKind.PERMISSION_DENIED, re.compile(
        r'permission denied|operation not permitted|must be root|are you root|'
        r'only root|need to be root|could not open lock file', re.I)),
    (ErrorKind.NETWORK_FAILURE, re.compile(
        r'temporary failure resolving|could not resolve|timed out|i/o timeout|'
        r'connection refused|connection reset|tls handshake timeout|network is unreachable|'
        r'failed to fetch', re.I)),
    (ErrorKind.RESOURCE_UNAVAILABLE, re.compile(
        r'unable to locate package|no such file or directory|not found|'
        r'manifest unknown|pull access denied|does not exist|no such container|'
        r'unit .* could not be found', re.I)),
]


def classify_command_failure(rc: int, stderr: str) -> ErrorKind:
    """Classify a failed host command from its exit code and stderr."""
    if rc == 126:
        return ErrorKind.PERMISSION_DENIED
    if rc == 127:
        return ErrorKind.RESOURCE_UNAVAILABLE
    for kind, pattern in _COMMAND_PATTERNS:
        if pattern.search(stderr or ''):
            return kind
    return ErrorKind.CONFLICTING_STATE


def command_error(cmd: list[str], rc: int, stderr: str) -> StepError:
    """Build the StepError for a failed host command."""
    kind = classify_command_failure(rc, stderr)
    detail = (stderr or '').strip().splitlines()
    summary = detail[-1] if detail else 'no output'
    return STEP_ERRORS[kind](f"{cmd[0]} failed (rc={rc}): {summary}")


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised during a step to an ErrorKind."""
    if isinstance(exc, StepError):
        return exc.kind
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.RESOURCE_UNAVAILABLE
    if isinstance(exc, requests.exceptions.HTTPError):
        response = exc.response
        if response is not None and response.status_code in (404, 410):
            return ErrorKind.RESOURCE_UNAVAILABLE
        return ErrorKind.NETWORK_FAILURE
    if isinstance(exc, requests.exceptions.RequestException):
        return ErrorKind.NETWORK_FAILURE
    return ErrorKind.CONFLICTING_STATE
