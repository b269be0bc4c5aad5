"""create_stackset/lambda_function.py

Workflow step that creates the StackSet for (env, repo) or updates its
template and parameters from the build's artifacts.

Artifacts:
    s3://{s3_bucket}/{s3_key}/cloudformation[-{template}].template
    s3://{s3_bucket}/{s3_key}/cloudformation[-{template}]-params.json
    s3://{s3_bucket}/{s3_key}/cloudformation[-{template}]-params.{env}.json

Any non-retryable failure marks the build FAILED with the error text before
the error is re-raised to the workflow.

Input:
    {env, repo, build_id, s3_bucket, s3_key | artifact_location, template_name?}
Output:
    {stack_set_name, operation: CREATE|UPDATE}

Environment variables:
    ADMINISTRATION_ROLE_ARN    required
    EXECUTION_ROLE_NAME        default: AWSCloudFormationStackSetExecutionRole
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import build_store, stackset
from deployer_shared.errors import RetryableError
from deployer_shared.events import _field, _parse_artifact_location, _require_fields
from deployer_shared.status import BuildStatus

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _fail_build(event: Dict[str, Any], exc: Exception) -> None:
    repo, env, build_id = event.get("repo"), event.get("env"), _field(event, "build_id")
    if not (repo and env and build_id):
        return
    try:
        build_store.update_status(repo, env, build_id, BuildStatus.FAILED, error_msg=str(exc))
    except Exception as update_exc:
        logger.error(f"[ERROR] Could not mark build {build_id} FAILED: {update_exc}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    try:
        fields = _require_fields(event, "env", "repo", "build_id")
        bucket, key_prefix = _parse_artifact_location(event)
        return stackset.create_or_update(
            fields["env"],
            fields["repo"],
            bucket,
            key_prefix,
            template_name=_field(event, "template_name"),
        )
    except RetryableError:
        raise
    except Exception as exc:
        logger.error(f"[ERROR] create_stackset failed: {exc}", exc_info=True)
        _fail_build(event, exc)
        raise
