"""Pydantic models for policies, roles, artifacts, functions, schedules and credentials."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from opsdeploy.errors import PolicyValidationError, ValidationError


ASSUME_ROLE_ACTION = "sts:AssumeRole"

RATE_RE = re.compile(r"^rate\((\d+) (minute|minutes|hour|hours|day|days)\)$")
CRON_RE = re.compile(r"^cron\(([^()]*)\)$")
CRON_FIELD_RE = re.compile(r"^[0-9A-Za-z*?,/#\-]+$")


# ---------------------------------------------------------------------------
# Policy documents
# ---------------------------------------------------------------------------

def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class PolicyStatement(BaseModel):
    model_config = ConfigDict(extra="forbid")

    Sid: str | None = None
    Effect: Literal["Allow", "Deny"]
    Principal: str | dict[str, str | list[str]] | None = None
    Action: str | list[str]
    Resource: str | list[str] | None = None
    Condition: dict | None = None

    @field_validator("Action")
    @classmethod
    def _at_least_one_action(cls, value):
        actions = [a for a in _as_list(value) if isinstance(a, str) and a.strip()]
        if not actions or len(actions) != len(_as_list(value)):
            raise ValueError("at least one non-empty Action is required")
        return value

    @field_validator("Resource")
    @classmethod
    def _no_empty_resource(cls, value):
        if value is not None and not _as_list(value):
            raise ValueError("Resource must not be empty when given")
        return value

    def actions(self) -> list[str]:
        return _as_list(self.Action)

    def principals(self) -> set[tuple[str, str]]:
        """Flatten Principal into {(kind, value)} pairs, e.g. ("Service", "lambda.amazonaws.com")."""
        if self.Principal is None:
            return set()
        if isinstance(self.Principal, str):
            return {("*", self.Principal)}
        pairs = set()
        for kind, values in self.Principal.items():
            for value in _as_list(values):
                pairs.add((kind, value))
        return pairs

    def names_assume_role(self) -> bool:
        return any(a in (ASSUME_ROLE_ACTION, "sts:*", "*") for a in self.actions())

    def allows_assume_role(self) -> bool:
        return self.Effect == "Allow" and self.names_assume_role()


class PolicyDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    Version: str = "2012-10-17"
    Id: str | None = None
    Statement: list[PolicyStatement]

    @field_validator("Statement", mode="before")
    @classmethod
    def _single_statement(cls, value):
        if isinstance(value, dict):
            return [value]
        return value

    @field_validator("Statement")
    @classmethod
    def _not_empty(cls, value):
        if not value:
            raise ValueError("a policy needs at least one Statement")
        return value

    def as_dict(self) -> dict:
        return self.model_dump(exclude_none=True)

    def as_json(self) -> str:
        return json.dumps(self.as_dict())


def parse_policy(data, name: str = "policy") -> PolicyDocument:
    """Validate a raw policy (dict or JSON string), raising PolicyValidationError."""
    if isinstance(data, PolicyDocument):
        return data
    try:
        if isinstance(data, str):
            data = json.loads(data)
        return PolicyDocument.model_validate(data)
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise PolicyValidationError(str(e), resource=name, operation="validate_policy", cause=e) from e


def check_permission_policy(document: PolicyDocument, name: str) -> PolicyDocument:
    """Every permission statement must name its Resource; "*" only when written out."""
    for index, statement in enumerate(document.Statement):
        if statement.Resource is None:
            raise PolicyValidationError(
                f"statement {statement.Sid or index} has no Resource; "
                'write "Resource": "*" explicitly to grant on any resource',
                resource=name,
                operation="validate_policy",
            )
        if statement.Principal is not None:
            raise PolicyValidationError(
                f"statement {statement.Sid or index} has a Principal; "
                "permission policies attach to the role and must not name one",
                resource=name,
                operation="validate_policy",
            )
    return document


def check_trust_policy(document: PolicyDocument, name: str) -> PolicyDocument:
    for index, statement in enumerate(document.Statement):
        if statement.Principal is None:
            raise PolicyValidationError(
                f"trust statement {statement.Sid or index} has no Principal",
                resource=name,
                operation="validate_policy",
            )
        if not statement.names_assume_role():
            raise PolicyValidationError(
                f"trust statement {statement.Sid or index} does not name {ASSUME_ROLE_ACTION}",
                resource=name,
                operation="validate_policy",
            )
    return document


# ---------------------------------------------------------------------------
# Deployment entities
# ---------------------------------------------------------------------------

class Role(BaseModel):
    name: str
    arn: str | None = None
    trust_policy: PolicyDocument
    inline_policies: dict[str, PolicyDocument] = Field(default_factory=dict)
    managed_policy_arns: list[str] = Field(default_factory=list)

    def matches(self, other: Role) -> bool:
        """Same trust, inline and managed policies; managed attachment order is ignored."""
        return (
            self.name == other.name
            and self.trust_policy == other.trust_policy
            and self.inline_policies == other.inline_policies
            and set(self.managed_policy_arns) == set(other.managed_policy_arns)
        )


class FunctionArtifact(BaseModel):
    path: str
    digest: str          # hex sha256 of the build inputs
    code_sha256: str     # base64 sha256 of the zip, as Lambda reports CodeSha256
    size: int


class DeployedFunction(BaseModel):
    name: str
    arn: str
    runtime: str
    handler: str
    role_arn: str
    code_sha256: str
    memory_size: int
    timeout: int


class ScheduleRule(BaseModel):
    name: str
    expression: str
    enabled: bool
    arn: str | None = None
    target_function_arn: str | None = None


class DelegatedCredential(BaseModel):
    access_key_id: str
    secret_access_key: str = Field(repr=False)
    session_token: str = Field(repr=False)
    expiration: datetime

    def expired(self, now: datetime | None = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        return self.expiration <= now


# ---------------------------------------------------------------------------
# Schedule expressions
# ---------------------------------------------------------------------------

def validate_expression(expression: str) -> str:
    """Well-formedness only: rate(<n> <unit>) or cron(<6 fields>)."""
    def _invalid(reason):
        return ValidationError(reason, resource=expression, operation="validate_expression")

    match = RATE_RE.match(expression)
    if match:
        value, unit = int(match.group(1)), match.group(2)
        if value < 1:
            raise _invalid("rate value must be a positive integer")
        if value == 1 and unit.endswith("s"):
            raise _invalid(f"use the singular unit for a rate of 1 ({unit[:-1]})")
        if value > 1 and not unit.endswith("s"):
            raise _invalid(f"use the plural unit for a rate above 1 ({unit}s)")
        return expression

    match = CRON_RE.match(expression)
    if match:
        fields = match.group(1).split()
        if len(fields) != 6:
            raise _invalid(
                f"cron needs 6 fields (minutes hours day-of-month month day-of-week year), got {len(fields)}"
            )
        bad = [f for f in fields if not CRON_FIELD_RE.match(f)]
        if bad:
            raise _invalid(f"invalid cron field(s): {', '.join(bad)}")
        if (fields[2] == "?") == (fields[4] == "?"):
            raise _invalid("exactly one of day-of-month and day-of-week must be '?'")
        return expression

    raise _invalid("expected rate(<n> <unit>) or cron(<fields>)")


# ---------------------------------------------------------------------------
# Schedule state machine
# ---------------------------------------------------------------------------

class ScheduleState(str, Enum):
    ABSENT = "absent"
    RULE_CREATED = "ruleCreated"
    PERMISSION_GRANTED = "permissionGranted"
    TARGET_BOUND = "targetBound"
    ACTIVE = "active"
    TARGET_UNBOUND = "targetUnbound"
    PERMISSION_REVOKED = "permissionRevoked"
    RULE_DELETED = "ruleDeleted"


class ScheduleObservation(BaseModel):
    """Remote facts about one schedule, read fresh before every transition."""

    rule_name: str
    rule_exists: bool = False
    rule_arn: str | None = None
    expression: str | None = None
    enabled: bool = False
    target_bound: bool = False
    target_count: int = 0
    extra_target_ids: list[str] = Field(default_factory=list)   # targets other than ours, removed on bind
    permission_granted: bool = False
    stale_permission: bool = False   # our statement id exists but grants another rule ARN

    def current_state(self) -> ScheduleState:
        if not self.rule_exists:
            return ScheduleState.ABSENT
        if not self.permission_granted:
            return ScheduleState.RULE_CREATED
        if not self.target_bound or self.target_count != 1:
            return ScheduleState.PERMISSION_GRANTED
        if not self.enabled:
            return ScheduleState.TARGET_BOUND
        return ScheduleState.ACTIVE
