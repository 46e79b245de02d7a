"""Shared fixtures for opsdeploy tests."""

import json
import sys
from pathlib import Path

# Repo root, so 'opsdeploy' imports without an installed copy
REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

import boto3
import pytest
from moto import mock_aws

from opsdeploy.config import parse_config

REGION = "us-east-1"
ACCOUNT_ID = "123456789012"  # moto's default account
SAMPLE_FUNCTION_DIR = REPO_ROOT / "functions" / "list_buckets"


@pytest.fixture(autouse=True)
def _aws_env(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def clients():
    """moto-backed clients keyed the way opsdeploy.clients builds them."""
    with mock_aws():
        session = boto3.Session(region_name=REGION)
        yield {
            "iam": session.client("iam"),
            "sts": session.client("sts"),
            "lambda": session.client("lambda"),
            "events": session.client("events"),
            "s3": session.client("s3"),
        }


@pytest.fixture
def sleeps():
    """Pass sleep=sleeps.append to record backoff delays instead of sleeping."""
    return []


@pytest.fixture
def source_dir(tmp_path):
    """A minimal function tree with a handler module."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "lambda_function.py").write_text(
        "def lambda_handler(event, context):\n    return {'ok': True}\n"
    )
    (src / "helpers").mkdir()
    (src / "helpers" / "__init__.py").write_text("VALUE = 1\n")
    return src


@pytest.fixture
def deployment_data():
    return {
        "account_id": ACCOUNT_ID,
        "region": REGION,
        "username": "myusername",
        "role_name": "LambdaExecutionRole",
        "function_name": "MyOpsFunction",
        "schedule_expression": "rate(5 minutes)",
        "source_dir": str(SAMPLE_FUNCTION_DIR),
        "permission_policies": {
            "list-buckets": {
                "Version": "2012-10-17",
                "Statement": [
                    {"Sid": "ListAllBuckets", "Effect": "Allow", "Action": ["s3:ListAllMyBuckets"], "Resource": "*"},
                ],
            },
        },
    }


@pytest.fixture
def config(deployment_data, tmp_path):
    data = dict(deployment_data, build_dir=str(tmp_path / "build"))
    return parse_config("ops", data)


@pytest.fixture
def config_file(deployment_data, tmp_path):
    path = tmp_path / "deployments.json"
    data = dict(deployment_data, build_dir=str(tmp_path / "build"))
    path.write_text(json.dumps({"deployments": {"ops": data}}))
    return path
