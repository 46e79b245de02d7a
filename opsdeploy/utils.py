"""Shared helpers: error classification and bounded retry."""

from __future__ import annotations

import json
import logging
import time

import botocore.exceptions

from opsdeploy.errors import (
    AlreadyExistsError,
    DeployError,
    NotFoundError,
    NotYetPropagatedError,
    RemoteError,
    RetryTimeoutError,
    RoleNotReadyError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_ATTEMPTS = 6
BASE_DELAY = 1.0

NOT_FOUND_CODES = frozenset({"NoSuchEntity", "ResourceNotFoundException"})
ALREADY_EXISTS_CODES = frozenset({"EntityAlreadyExists", "ResourceAlreadyExistsException"})
TRANSIENT_CODES = frozenset({
    "ThrottlingException",
    "Throttling",
    "TooManyRequestsException",
    "ServiceUnavailableException",
    "ConcurrentModificationException",
})
VALIDATION_CODES = frozenset({
    "MalformedPolicyDocument",
    "ValidationException",
    "ValidationError",
    "InvalidParameterValueException",
})


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def error_code(exc: Exception) -> str:
    if isinstance(exc, botocore.exceptions.ClientError):
        return exc.response.get("Error", {}).get("Code", "Unknown")
    return type(exc).__name__


def classify_error(
    exc: Exception,
    resource: str | None = None,
    operation: str | None = None,
) -> DeployError:
    """Map an exception to a DeployError carrying resource and operation context."""
    if isinstance(exc, DeployError):
        return exc
    ctx = {"resource": resource, "operation": operation, "cause": exc}
    if isinstance(exc, botocore.exceptions.ClientError):
        code = error_code(exc)
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in NOT_FOUND_CODES:
            return NotFoundError(message, **ctx)
        if code in ALREADY_EXISTS_CODES:
            return AlreadyExistsError(message, **ctx)
        if code == "InvalidParameterValueException" and "cannot be assumed" in message:
            # Freshly created roles are not assumable by Lambda for a few seconds
            return RoleNotReadyError(message, **ctx)
        if code == "ResourceConflictException":
            if "in progress" in message.lower():
                return NotYetPropagatedError(message, **ctx)
            return AlreadyExistsError(message, **ctx)
        if code in TRANSIENT_CODES:
            return NotYetPropagatedError(message, **ctx)
        if code in VALIDATION_CODES:
            return ValidationError(message, **ctx)
        return RemoteError(f"{code}: {message}", **ctx)
    if isinstance(exc, botocore.exceptions.WaiterError):
        return NotYetPropagatedError(str(exc), **ctx)
    if isinstance(exc, botocore.exceptions.BotoCoreError):
        return RemoteError(str(exc), **ctx)
    return RemoteError(f"{type(exc).__name__}: {exc}", **ctx)


def is_not_found(exc: Exception) -> bool:
    return isinstance(classify_error(exc), NotFoundError)


# ---------------------------------------------------------------------------
# Bounded retry
# ---------------------------------------------------------------------------

def retry_transient(
    fn,
    *,
    resource: str | None = None,
    operation: str | None = None,
    attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY,
    sleep=time.sleep,
):
    """Call fn() retrying NotYetPropagatedError with exponential backoff.

    Any other failure is classified and raised immediately. Exhausting the
    attempts raises RetryTimeoutError.
    """
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            err = classify_error(e, resource=resource, operation=operation)
            if not isinstance(err, NotYetPropagatedError):
                if err is e:
                    raise
                raise err from e
            if attempt == attempts - 1:
                raise RetryTimeoutError(
                    f"still not ready after {attempts} attempts: {err.message}",
                    resource=resource,
                    operation=operation,
                    cause=e,
                ) from e
            delay = base_delay * (2 ** attempt)
            logger.info(json.dumps({
                "event": "retry_transient",
                "operation": operation,
                "resource": resource,
                "attempt": attempt + 1,
                "delay": delay,
                "category": err.category,
            }))
            sleep(delay)
