"""Deployment error taxonomy."""

from __future__ import annotations


class DeployError(Exception):
    category = "unknown"

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        operation: str | None = None,
        cause: Exception | None = None,
    ):
        self.message = message
        self.resource = resource
        self.operation = operation
        self.cause = cause
        super().__init__(self._format())

    def _format(self) -> str:
        where = " ".join(p for p in (self.operation, self.resource) if p)
        if where:
            return f"[{self.category}] {where}: {self.message}"
        return f"[{self.category}] {self.message}"


class ValidationError(DeployError):
    """Malformed policy or configuration. Fatal, never retried."""

    category = "validation"


class PolicyValidationError(ValidationError):
    category = "policy_validation"


class ConfigError(ValidationError):
    category = "config"


class NotYetPropagatedError(DeployError):
    """Remote resource exists but is not usable yet. Retried with backoff."""

    category = "not_yet_propagated"


class RoleNotReadyError(NotYetPropagatedError):
    category = "role_not_ready"


class RetryTimeoutError(DeployError):
    category = "retry_timeout"


class AlreadyExistsError(DeployError):
    category = "already_exists"


class NotFoundError(DeployError):
    category = "not_found"


class AssumeRoleError(DeployError):
    category = "assume_role"

    ROLE_NOT_FOUND = "role_not_found"
    PRINCIPAL_NOT_TRUSTED = "principal_not_trusted"

    def __init__(self, message: str, reason: str, **kwargs):
        self.reason = reason
        super().__init__(message, **kwargs)


class PackagingError(DeployError):
    category = "packaging"


class InvocationError(DeployError):
    category = "invocation"


class RemoteError(DeployError):
    """AWS failure that does not map onto any other category."""

    category = "remote"
