"""deployer_shared.config — Environment variables, table names and constants.

Environment variables:
    ENV                        default: dev
    DEPLOY_REGION              default: us-west-2
    BUILDS_TABLE               default: {ENV}-aws-deployer--builds
    DEPLOYMENTS_TABLE          default: {ENV}-aws-deployer--deployments
    LOCKS_TABLE                default: {ENV}-aws-deployer--locks
    TARGETS_TABLE              default: {ENV}-aws-deployer--targets
    ARTIFACT_BUCKET            required to build workflow input
    STATE_MACHINE_ARN          default: (empty)
    ADMINISTRATION_ROLE_ARN    default: (empty)
    EXECUTION_ROLE_NAME        default: AWSCloudFormationStackSetExecutionRole
    DEFAULT_INITIAL_ENV        default: dev
"""
from __future__ import annotations

import logging
import os

from deployer_shared.errors import DeployerConfigError

__all__ = [
    "ADMINISTRATION_ROLE_ARN",
    "ARTIFACT_BUCKET",
    "BUILDS_TABLE",
    "DEFAULT_INITIAL_ENV",
    "DEPLOYER_ENV",
    "DEPLOYMENTS_TABLE",
    "DEPLOY_REGION",
    "EXECUTION_ROLE_NAME",
    "LOCKS_TABLE",
    "LOCK_TTL_SECONDS",
    "MAX_LOCK_RETRIES",
    "MAX_STACK_EVENTS",
    "STACKSET_CAPABILITIES",
    "STACKSET_MANAGED_BY",
    "STACKSET_OPERATION_PREFERENCES",
    "STATE_MACHINE_ARN",
    "STATUS_POLL_WORKERS",
    "TARGETS_TABLE",
    "_require",
]

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

DEPLOYER_ENV = os.environ.get("ENV", "dev")
DEPLOY_REGION = os.environ.get("DEPLOY_REGION", "us-west-2")

BUILDS_TABLE = os.environ.get("BUILDS_TABLE", f"{DEPLOYER_ENV}-aws-deployer--builds")
DEPLOYMENTS_TABLE = os.environ.get("DEPLOYMENTS_TABLE", f"{DEPLOYER_ENV}-aws-deployer--deployments")
LOCKS_TABLE = os.environ.get("LOCKS_TABLE", f"{DEPLOYER_ENV}-aws-deployer--locks")
TARGETS_TABLE = os.environ.get("TARGETS_TABLE", f"{DEPLOYER_ENV}-aws-deployer--targets")

ARTIFACT_BUCKET = os.environ.get("ARTIFACT_BUCKET", "")
STATE_MACHINE_ARN = os.environ.get("STATE_MACHINE_ARN", "")
ADMINISTRATION_ROLE_ARN = os.environ.get("ADMINISTRATION_ROLE_ARN", "")
EXECUTION_ROLE_NAME = os.environ.get("EXECUTION_ROLE_NAME", "AWSCloudFormationStackSetExecutionRole")
DEFAULT_INITIAL_ENV = os.environ.get("DEFAULT_INITIAL_ENV", "dev")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOCK_TTL_SECONDS = 4 * 60 * 60
MAX_LOCK_RETRIES = 10
STATUS_POLL_WORKERS = 8
MAX_STACK_EVENTS = 5

STACKSET_CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"]
STACKSET_MANAGED_BY = "aws-deployer"
STACKSET_OPERATION_PREFERENCES = {
    "MaxConcurrentCount": 10,
    "FailureToleranceCount": 0,
}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.getLogger().setLevel(logging.INFO)


def _require(name: str, value: str) -> str:
    """Return a required configuration value or raise DeployerConfigError."""
    if not value:
        raise DeployerConfigError(f"{name} environment variable is required")
    return value
