"""Credential broker: short-lived credentials for the execution role, for local test runs."""

from __future__ import annotations

import json
import logging
import re

import boto3
from botocore.exceptions import ClientError

from opsdeploy.errors import AssumeRoleError
from opsdeploy.schemas import DelegatedCredential
from opsdeploy.utils import classify_error, error_code, is_not_found

logger = logging.getLogger(__name__)

MIN_TTL = 900
MAX_TTL = 43200
DENIED_CODES = frozenset({"AccessDenied", "AccessDeniedException"})


def session_label(label: str) -> str:
    # RoleSessionName: <= 64 chars from [\w+=,.@-]
    sanitized = re.sub(r"[^\w+=,.@-]", "-", label)
    return sanitized[:64] or "opsdeploy-session"


def clamp_ttl(ttl: int) -> int:
    return min(max(int(ttl), MIN_TTL), MAX_TTL)


def _diagnose(clients: dict, role_arn: str, cause: Exception) -> AssumeRoleError:
    """Tell "role not found" apart from "principal not trusted" after STS says no."""
    role_name = role_arn.rsplit("/", 1)[-1]
    try:
        caller = clients["sts"].get_caller_identity()["Arn"]
    except ClientError:
        caller = "the current principal"

    try:
        clients["iam"].get_role(RoleName=role_name)
    except ClientError as e:
        if is_not_found(e):
            return AssumeRoleError(
                f"role {role_arn} does not exist; run provision-role for this deployment first",
                reason=AssumeRoleError.ROLE_NOT_FOUND,
                resource=role_arn,
                operation="assume_role",
                cause=cause,
            )

    return AssumeRoleError(
        f"{caller} is not trusted by {role_arn}; add it as an AWS principal with "
        "sts:AssumeRole in the role's trust policy (set 'username' in the deployment "
        "config and re-run provision-role)",
        reason=AssumeRoleError.PRINCIPAL_NOT_TRUSTED,
        resource=role_arn,
        operation="assume_role",
        cause=cause,
    )


def assume(clients: dict, role_arn: str, label: str, ttl: int = 3600) -> DelegatedCredential:
    """Assume the role and return its credentials. Nothing is cached or written anywhere."""
    try:
        resp = clients["sts"].assume_role(
            RoleArn=role_arn,
            RoleSessionName=session_label(label),
            DurationSeconds=clamp_ttl(ttl),
        )
    except ClientError as e:
        if error_code(e) in DENIED_CODES:
            raise _diagnose(clients, role_arn, e) from e
        raise classify_error(e, resource=role_arn, operation="assume_role") from e

    creds = resp["Credentials"]
    credential = DelegatedCredential(
        access_key_id=creds["AccessKeyId"],
        secret_access_key=creds["SecretAccessKey"],
        session_token=creds["SessionToken"],
        expiration=creds["Expiration"],
    )
    logger.info(json.dumps({
        "event": "role_assumed",
        "role_arn": role_arn,
        "access_key_id": credential.access_key_id,
        "expiration": credential.expiration.isoformat(),
    }))
    return credential


def session_for(credential: DelegatedCredential, region: str) -> boto3.Session:
    return boto3.Session(
        aws_access_key_id=credential.access_key_id,
        aws_secret_access_key=credential.secret_access_key,
        aws_session_token=credential.session_token,
        region_name=region,
    )
