"""Declarative deployment configuration.

A config file maps deployment names to settings:

    {
      "deployments": {
        "ops": {
          "account_id": "1234567890",
          "region": "us-east-1",
          "username": "myusername",
          "role_name": "LambdaExecutionRole",
          "function_name": "MyOpsFunction",
          "schedule_expression": "rate(5 minutes)",
          "source_dir": "functions/list_buckets"
        }
      }
    }

Relative paths resolve against the directory holding the config file.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from opsdeploy.errors import ConfigError, PolicyValidationError, ValidationError
from opsdeploy.schemas import PolicyDocument, check_permission_policy, validate_expression

DEFAULT_CONFIG_FILE = "deployments.json"
DEFAULT_RUNTIME = "python3.12"
DEFAULT_HANDLER = "lambda_function.lambda_handler"
DEFAULT_SESSION_TTL = 3600

NAME_PATTERN = re.compile(r"^[A-Za-z0-9+=,.@_-]{1,64}$")


class DeploymentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    account_id: str
    region: str
    profile: str | None = None
    username: str | None = None

    role_name: str = "LambdaExecutionRole"
    function_name: str
    stack_name: str | None = None

    schedule_expression: str
    rule_name: str | None = None

    runtime: str = DEFAULT_RUNTIME
    handler: str = DEFAULT_HANDLER
    source_dir: str
    dependency_spec: str | None = None
    build_dir: str = ".build"
    memory_size: int = Field(default=128, ge=128, le=10240)
    timeout: int = Field(default=30, ge=1, le=900)

    managed_policy_arns: list[str] = Field(default_factory=list)
    permission_policies: dict[str, PolicyDocument] = Field(default_factory=dict)

    session_ttl: int = Field(default=DEFAULT_SESSION_TTL, ge=900, le=43200)

    @field_validator("account_id")
    @classmethod
    def _numeric_account(cls, value):
        if not value.isdigit():
            raise ValueError("account_id must be numeric")
        return value

    @field_validator("role_name", "function_name")
    @classmethod
    def _aws_name(cls, value):
        if not NAME_PATTERN.match(value):
            raise ValueError(f"invalid AWS resource name: {value!r}")
        return value

    @field_validator("schedule_expression")
    @classmethod
    def _well_formed_schedule(cls, value):
        try:
            return validate_expression(value)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("handler")
    @classmethod
    def _module_dot_function(cls, value):
        module, _, function = value.rpartition(".")
        if not module or not function:
            raise ValueError("handler must look like <module>.<function>")
        return value

    @model_validator(mode="before")
    @classmethod
    def _derived_names(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("stack_name"):
                data["stack_name"] = data.get("name")
            if not data.get("rule_name") and data.get("stack_name"):
                data["rule_name"] = f"{data['stack_name']}-schedule"
        return data

    # -- derived values ---------------------------------------------------

    @property
    def role_arn(self) -> str:
        return f"arn:aws:iam::{self.account_id}:role/{self.role_name}"

    @property
    def operator_arn(self) -> str | None:
        if not self.username:
            return None
        return f"arn:aws:iam::{self.account_id}:user/{self.username}"

    @property
    def handler_module(self) -> str:
        return self.handler.rpartition(".")[0]

    @property
    def handler_function(self) -> str:
        return self.handler.rpartition(".")[2]


def _resolve(base: Path, value: str | None) -> str | None:
    if value is None:
        return None
    path = Path(value)
    if not path.is_absolute():
        path = base / path
    return str(path)


def parse_config(name: str, data: dict, base_dir: Path | None = None) -> DeploymentConfig:
    """Validate one deployment entry; permission policies are checked here, not at call time."""
    if not isinstance(data, dict):
        raise ConfigError("deployment entry must be an object", resource=name, operation="load_config")
    data = dict(data)
    data.setdefault("name", name)
    if base_dir is not None:
        data.setdefault("build_dir", ".build")
        for key in ("source_dir", "dependency_spec", "build_dir"):
            if isinstance(data.get(key), str):
                data[key] = _resolve(base_dir, data[key])
    try:
        config = DeploymentConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(str(e), resource=name, operation="load_config", cause=e) from e
    for policy_name, document in config.permission_policies.items():
        try:
            check_permission_policy(document, policy_name)
        except PolicyValidationError as e:
            raise ConfigError(e.message, resource=f"{name}/{policy_name}", operation="load_config", cause=e) from e
    return config


def load_config(path: str | Path, name: str) -> DeploymentConfig:
    path = Path(path)
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}", resource=name, operation="load_config", cause=e) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in {path}: {e}", resource=name, operation="load_config", cause=e) from e

    deployments = raw.get("deployments") if isinstance(raw, dict) else None
    if not isinstance(deployments, dict):
        raise ConfigError(f"{path} has no 'deployments' object", resource=name, operation="load_config")
    if name not in deployments:
        known = ", ".join(sorted(deployments)) or "none"
        raise ConfigError(f"unknown deployment (known: {known})", resource=name, operation="load_config")
    return parse_config(name, deployments[name], base_dir=path.resolve().parent)
