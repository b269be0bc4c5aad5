"""deployer_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for the life of the Lambda
container. Tests replace the module globals directly.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from deployer_shared.config import DEPLOY_REGION

__all__ = [
    "_get_cfn",
    "_get_ddb",
    "_get_s3",
    "_get_sfn",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_cfn = None
_s3 = None
_sfn = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DEPLOY_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _get_cfn(region: Optional[str] = None):
    """Get (or create) the CloudFormation client singleton (StackSet administrator)."""
    global _cfn
    if _cfn is None:
        _cfn = boto3.client(
            "cloudformation",
            region_name=region or DEPLOY_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _cfn


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or DEPLOY_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _s3


def _get_sfn(region: Optional[str] = None):
    """Get (or create) the Step Functions client singleton."""
    global _sfn
    if _sfn is None:
        _sfn = boto3.client(
            "stepfunctions",
            region_name=region or DEPLOY_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _sfn
