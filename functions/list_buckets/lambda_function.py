"""
List Buckets Lambda - sample operational task deployed on a schedule.

Logs the runtime and SDK versions, then returns the names of the S3 buckets
owned by the account as a JSON array.
"""

import logging
import sys

import boto3
import botocore
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger()
logger.setLevel(logging.INFO)


class BucketListingError(Exception):
    """Raised when the bucket listing call fails."""

    def __init__(self, message: str, original_error: Exception = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


def log_versions() -> dict:
    versions = {
        "python": sys.version.split()[0],
        "boto3": boto3.__version__,
        "botocore": botocore.__version__,
    }
    logger.info(f"Runtime versions: {versions}")
    return versions


def list_bucket_names(s3_client) -> list[str]:
    try:
        resp = s3_client.list_buckets()
    except (ClientError, BotoCoreError) as e:
        error_code = getattr(e, "response", {}).get("Error", {}).get("Code", "Unknown")
        logger.error(f"ListBuckets failed: {error_code} - {e}")
        raise BucketListingError(f"Failed to list buckets: {error_code} - {e}", original_error=e)
    return [b["Name"] for b in resp.get("Buckets", [])]


def lambda_handler(event, context):
    log_versions()
    names = list_bucket_names(boto3.client("s3"))
    logger.info(f"Found {len(names)} buckets")
    return names
