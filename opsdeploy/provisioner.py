"""Policy/Role provisioner: trust and permission documents, execution role lifecycle."""

from __future__ import annotations

import json
import logging
import time

from botocore.exceptions import ClientError

from opsdeploy.errors import AlreadyExistsError, NotYetPropagatedError, PolicyValidationError
from opsdeploy.schemas import (
    ASSUME_ROLE_ACTION,
    PolicyDocument,
    PolicyStatement,
    Role,
    check_permission_policy,
    check_trust_policy,
    parse_policy,
)
from opsdeploy.utils import classify_error, is_not_found, retry_transient

logger = logging.getLogger(__name__)

LAMBDA_SERVICE = "lambda.amazonaws.com"
ROLE_DESCRIPTION = "Execution role managed by opsdeploy"


# ---------------------------------------------------------------------------
# Trust policy
# ---------------------------------------------------------------------------

def required_principals(config) -> list[tuple[str, str]]:
    """The invoking service always; the operator too when local testing is configured."""
    principals = [("Service", LAMBDA_SERVICE)]
    if config.operator_arn:
        principals.append(("AWS", config.operator_arn))
    return principals


def build_trust_policy(config) -> PolicyDocument:
    principal = {}
    for kind, value in required_principals(config):
        principal[kind] = value
    return PolicyDocument(Statement=[
        PolicyStatement(Effect="Allow", Principal=principal, Action=ASSUME_ROLE_ACTION),
    ])


def validate_trust_policy(
    document: PolicyDocument,
    principals,
    name: str = "trust-policy",
) -> PolicyDocument:
    """Raise PolicyValidationError unless every principal may sts:AssumeRole."""
    check_trust_policy(document, name)

    allowed, denied = set(), set()
    for statement in document.Statement:
        if not statement.names_assume_role():
            continue
        if statement.Effect == "Allow":
            allowed |= statement.principals()
        else:
            denied |= statement.principals()

    wildcard = ("*", "*") in allowed or ("AWS", "*") in allowed
    missing = [
        f"{kind}:{value}"
        for kind, value in principals
        if (kind, value) in denied or ((kind, value) not in allowed and not wildcard)
    ]
    if missing:
        raise PolicyValidationError(
            f"trust policy does not allow {ASSUME_ROLE_ACTION} for {', '.join(missing)}",
            resource=name,
            operation="validate_trust_policy",
        )
    return document


# ---------------------------------------------------------------------------
# Remote reads
# ---------------------------------------------------------------------------

def get_inline_policies(iam_client, role_name: str) -> dict[str, PolicyDocument]:
    """Return {policy_name: policy_document} for all inline policies."""
    result = {}
    for page in iam_client.get_paginator("list_role_policies").paginate(RoleName=role_name):
        for name in page["PolicyNames"]:
            doc = iam_client.get_role_policy(RoleName=role_name, PolicyName=name)
            result[name] = parse_policy(doc["PolicyDocument"], name)
    return result


def get_attached_policies(iam_client, role_name: str) -> list[str]:
    """Return managed policy ARNs attached to the role."""
    arns = []
    for page in iam_client.get_paginator("list_attached_role_policies").paginate(RoleName=role_name):
        arns.extend(p["PolicyArn"] for p in page["AttachedPolicies"])
    return arns


def describe_role(clients: dict, role_name: str) -> Role | None:
    iam_client = clients["iam"]
    try:
        role = iam_client.get_role(RoleName=role_name)["Role"]
        return Role(
            name=role["RoleName"],
            arn=role["Arn"],
            trust_policy=parse_policy(role["AssumeRolePolicyDocument"], f"{role_name}/trust"),
            inline_policies=get_inline_policies(iam_client, role_name),
            managed_policy_arns=get_attached_policies(iam_client, role_name),
        )
    except ClientError as e:
        if is_not_found(e):
            return None
        raise classify_error(e, resource=role_name, operation="describe_role") from e


# ---------------------------------------------------------------------------
# Convergence helpers
# ---------------------------------------------------------------------------

def _sync_inline_policies(iam_client, role_name: str, desired: dict[str, PolicyDocument]):
    current = get_inline_policies(iam_client, role_name)
    for name, document in desired.items():
        if current.get(name) != document:
            iam_client.put_role_policy(
                RoleName=role_name,
                PolicyName=name,
                PolicyDocument=document.as_json(),
            )
            logger.info(f"Policy '{name}' put on role '{role_name}'")
    for name in current.keys() - desired.keys():
        iam_client.delete_role_policy(RoleName=role_name, PolicyName=name)
        logger.info(f"Policy '{name}' deleted from role '{role_name}'")


def _sync_managed_policies(iam_client, role_name: str, desired: list[str]):
    current = set(get_attached_policies(iam_client, role_name))
    for arn in sorted(set(desired) - current):
        iam_client.attach_role_policy(RoleName=role_name, PolicyArn=arn)
        logger.info(f"Attached {arn} to role '{role_name}'")
    for arn in sorted(current - set(desired)):
        iam_client.detach_role_policy(RoleName=role_name, PolicyArn=arn)
        logger.info(f"Detached {arn} from role '{role_name}'")


def wait_for_role(clients: dict, role_name: str, sleep=time.sleep, attempts: int | None = None) -> dict:
    """Poll get_role until the new role is visible; bounded, then RetryTimeoutError."""
    iam_client = clients["iam"]

    def _get():
        try:
            return iam_client.get_role(RoleName=role_name)["Role"]
        except ClientError as e:
            if is_not_found(e):
                raise NotYetPropagatedError(
                    "role not visible yet", resource=role_name, operation="wait_for_role", cause=e,
                ) from e
            raise

    kwargs = {"attempts": attempts} if attempts else {}
    return retry_transient(_get, resource=role_name, operation="wait_for_role", sleep=sleep, **kwargs)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def create_role(
    clients: dict,
    role_name: str,
    trust_policy: PolicyDocument,
    permission_policies: dict[str, PolicyDocument] | None = None,
    managed_policy_arns: list[str] | None = None,
    principals=(),
    sleep=time.sleep,
) -> Role:
    """Create the execution role, or converge an existing one to the given documents."""
    permission_policies = permission_policies or {}
    managed_policy_arns = managed_policy_arns or []

    validate_trust_policy(trust_policy, principals, name=f"{role_name}/trust")
    for name, document in permission_policies.items():
        check_permission_policy(document, name)

    iam_client = clients["iam"]
    operation = "create_role"
    try:
        try:
            iam_client.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=trust_policy.as_json(),
                Description=ROLE_DESCRIPTION,
            )
            logger.info(json.dumps({"event": "role_created", "role_name": role_name}))
        except ClientError as e:
            if not isinstance(classify_error(e), AlreadyExistsError):
                raise
            operation = "update_role"
            iam_client.update_assume_role_policy(
                RoleName=role_name,
                PolicyDocument=trust_policy.as_json(),
            )
            logger.info(json.dumps({"event": "role_updated_in_place", "role_name": role_name}))

        wait_for_role(clients, role_name, sleep=sleep)
        _sync_inline_policies(iam_client, role_name, permission_policies)
        _sync_managed_policies(iam_client, role_name, managed_policy_arns)
    except ClientError as e:
        raise classify_error(e, resource=role_name, operation=operation) from e

    return describe_role(clients, role_name)


def provision_role(clients: dict, config, sleep=time.sleep) -> Role:
    return create_role(
        clients,
        config.role_name,
        build_trust_policy(config),
        permission_policies=dict(config.permission_policies),
        managed_policy_arns=list(config.managed_policy_arns),
        principals=required_principals(config),
        sleep=sleep,
    )


def delete_role(clients: dict, role_name: str) -> bool:
    """Detach and delete everything on the role, then the role. False if it was already gone."""
    iam_client = clients["iam"]
    try:
        for arn in get_attached_policies(iam_client, role_name):
            iam_client.detach_role_policy(RoleName=role_name, PolicyArn=arn)
        for page in iam_client.get_paginator("list_role_policies").paginate(RoleName=role_name):
            for name in page["PolicyNames"]:
                iam_client.delete_role_policy(RoleName=role_name, PolicyName=name)
        iam_client.delete_role(RoleName=role_name)
    except ClientError as e:
        if is_not_found(e):
            logger.info(json.dumps({"event": "role_already_absent", "role_name": role_name}))
            return False
        raise classify_error(e, resource=role_name, operation="delete_role") from e
    logger.info(json.dumps({"event": "role_deleted", "role_name": role_name}))
    return True
