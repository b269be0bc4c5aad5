"""promote_build/lambda_function.py

Operator actions on an existing build, identified as "{repo}/{env}:{sk}".

    promote   - copy a SUCCESS build into each downstream environment of
                (repo, env) as a new PENDING build
    redeploy  - copy a build as a new PENDING build in the same environment
                and start its workflow immediately

Input:
    {action: promote|redeploy, build_id}
Output:
    promote:  {promoted: [build ids]}
    redeploy: {build_id, execution_arn}

Environment variables:
    STATE_MACHINE_ARN      required for redeploy
    ARTIFACT_BUCKET        required for redeploy
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from deployer_shared import build_store, orchestrator, target_store
from deployer_shared.errors import InputValidationError, PromotionError
from deployer_shared.events import _require_fields
from deployer_shared.status import BuildStatus

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_COPIED_FIELDS = ("build_number", "branch", "version", "commit_hash", "template_name", "base_repo")


def _load(value: str) -> Dict[str, Any]:
    build = build_store.find(value)
    if build is None:
        raise InputValidationError(f"build record not found: {value}")
    return build


def _stack_name(build: Dict[str, Any], env: str) -> str:
    base_repo = build.get("base_repo") or build["repo"]
    template_name = build.get("template_name")
    return f"{env}-{base_repo}-{template_name}" if template_name else f"{env}-{base_repo}"


def promote(value: str) -> Dict[str, Any]:
    build = _load(value)
    if build.get("status") != BuildStatus.SUCCESS.value:
        raise PromotionError(
            f"cannot promote build with status {build.get('status')} - only SUCCESS builds can be promoted"
        )
    record = target_store.get_with_default(build["repo"], build["env"])
    downstream = list((record or {}).get("downstream_envs") or [])
    if not downstream:
        raise PromotionError(f"no downstream environments configured for {build['repo']}/{build['env']}")

    promoted: List[str] = []
    for env in downstream:
        created = build_store.create(
            build["repo"],
            env,
            stack_name=_stack_name(build, env),
            **{k: build.get(k) for k in _COPIED_FIELDS},
        )
        logger.info(f"[SUCCESS] Promoted {build['id']} -> {created['id']}")
        promoted.append(created["id"])
    return {"promoted": promoted}


def redeploy(value: str) -> Dict[str, Any]:
    build = _load(value)
    created = build_store.create(
        build["repo"],
        build["env"],
        stack_name=build.get("stack_name") or _stack_name(build, build["env"]),
        **{k: build.get(k) for k in _COPIED_FIELDS},
    )
    logger.info(f"[INFO] Redeploying {build['id']} as {created['id']}")
    try:
        execution_arn = orchestrator.start_execution(orchestrator.build_step_input(created))
    except Exception as exc:
        build_store.update_status(
            created["repo"], created["env"], created["sk"], BuildStatus.FAILED,
            error_msg=f"Failed to start step function: {exc}",
        )
        raise
    return {"build_id": created["id"], "execution_arn": execution_arn}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "action", "build_id")
    action = fields["action"].lower()
    logger.info(f"[START] {action} {fields['build_id']}")
    if action == "promote":
        return promote(fields["build_id"])
    if action == "redeploy":
        return redeploy(fields["build_id"])
    raise InputValidationError(f"unknown action {fields['action']!r}, expected promote or redeploy")
