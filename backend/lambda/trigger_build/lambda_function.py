"""trigger_build/lambda_function.py

DynamoDB-stream-triggered Lambda that starts the deployment workflow for
every newly inserted build record.

Latest-index records and MODIFY/REMOVE events are skipped. If the workflow
cannot be started the build is marked FAILED and the error is re-raised so
the stream batch is retried.

Environment variables:
    STATE_MACHINE_ARN      required
    ARTIFACT_BUCKET        required; S3 bucket holding build artifacts
    BUILDS_TABLE           default: {ENV}-aws-deployer--builds
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from deployer_shared import build_store, orchestrator
from deployer_shared.serialization import _deserialize
from deployer_shared.status import BuildStatus

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _start(build: Dict[str, Any]) -> str:
    try:
        return orchestrator.start_execution(orchestrator.build_step_input(build))
    except Exception as exc:
        logger.error(f"[ERROR] Failed to start workflow for {build.get('id')}: {exc}")
        try:
            build_store.update_status(
                build["repo"], build["env"], build["sk"], BuildStatus.FAILED,
                error_msg=f"Failed to start step function: {exc}",
            )
        except Exception as update_exc:
            logger.error(f"[ERROR] Could not mark build {build.get('id')} FAILED: {update_exc}")
        raise


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    started: List[str] = []
    for record in event.get("Records", []):
        if record.get("eventName") != "INSERT":
            logger.info(f"[SKIP] Ignoring {record.get('eventName')} event")
            continue
        image = record.get("dynamodb", {}).get("NewImage") or {}
        build = _deserialize(image)
        if str(build.get("pk", "")).startswith(build_store.LATEST_PREFIX):
            logger.info(f"[SKIP] Ignoring latest index record {build.get('pk')}")
            continue
        logger.info(
            f"[START] New build {build.get('id')} version={build.get('version')} "
            f"template={build.get('template_name', '')}"
        )
        started.append(_start(build))
    return {"started": started}
