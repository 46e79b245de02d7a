"""boto3 client construction.

Clients are built once per command from an explicit session and handed to
each component as a dict, so tests can swap in moto-backed or mock clients.
"""

import boto3
from botocore.exceptions import BotoCoreError

from opsdeploy.utils import classify_error

SERVICES = {
    "iam": "iam",
    "sts": "sts",
    "lambda": "lambda",
    "events": "events",
    "s3": "s3",
}


def create_session(config) -> boto3.Session:
    """Operator session: named profile when configured, else boto3's default chain."""
    try:
        return boto3.Session(profile_name=config.profile, region_name=config.region)
    except BotoCoreError as e:
        raise classify_error(e, resource=config.profile or config.name, operation="create_session") from e


def create_aws_clients(session: boto3.Session) -> dict:
    try:
        return {key: session.client(service) for key, service in SERVICES.items()}
    except BotoCoreError as e:
        raise classify_error(e, resource=session.profile_name, operation="create_clients") from e
