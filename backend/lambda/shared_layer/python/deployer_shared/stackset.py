"""deployer_shared.stackset — CloudFormation StackSet deployment driver.

One StackSet per (env, repo) is the deployment unit; each (account, region)
target is a stack instance of it. Every function here is safe to call again
with the same inputs: the workflow engine re-invokes steps after timeouts
and retryable errors.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from botocore.exceptions import ClientError

from deployer_shared import build_store, deployment_store
from deployer_shared.aws_clients import _get_cfn, _get_s3
from deployer_shared.config import (
    ADMINISTRATION_ROLE_ARN,
    EXECUTION_ROLE_NAME,
    MAX_STACK_EVENTS,
    STACKSET_CAPABILITIES,
    STACKSET_MANAGED_BY,
    STACKSET_OPERATION_PREFERENCES,
    STATUS_POLL_WORKERS,
    _require,
)
from deployer_shared.errors import InputValidationError, OperationInProgressError
from deployer_shared.serialization import _emit_structured_observability
from deployer_shared.status import (
    DIAGNOSTIC_INSTANCE_STATUSES,
    DeploymentStatus,
    aggregate_verdict,
    instance_is_terminal,
    is_complete,
    recorded_status_for,
)

__all__ = [
    "ENV_PARAMETER",
    "aggregate",
    "create_or_update",
    "describe_instance",
    "failed_stack_events",
    "inject_env_parameter",
    "list_existing_instances",
    "load_parameters",
    "merge_parameters",
    "plan_instances",
    "poll_status",
    "provision_instances",
    "stack_set_name",
    "template_url",
]

logger = logging.getLogger(__name__)

ENV_PARAMETER = "Env"

_OPERATION_ID_RE = re.compile(r"is in progress: ([a-f0-9-]+)")
_NO_UPDATES = "No updates are to be performed"
_FAILED_RESOURCE_STATUSES = frozenset({"CREATE_FAILED", "UPDATE_FAILED", "DELETE_FAILED"})


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", "") or str(exc)


def _in_progress(name: str, exc: ClientError) -> OperationInProgressError:
    match = _OPERATION_ID_RE.search(_error_message(exc))
    operation_id = match.group(1) if match else None
    logger.warning("[WARNING] StackSet %s busy (operation %s); asking engine to retry", name, operation_id)
    return OperationInProgressError(name, operation_id)


# ---------------------------------------------------------------------------
# Naming / artifacts
# ---------------------------------------------------------------------------


def stack_set_name(env: str, repo: str) -> str:
    """"{env}-{repo}" with sub-template separators made StackSet-safe."""
    return f"{env}-{repo}".replace(":", "-").replace("/", "-")


def _artifact_file(template_name: Optional[str], suffix: str) -> str:
    if template_name:
        return f"cloudformation-{template_name}{suffix}"
    return f"cloudformation{suffix}"


def template_url(bucket: str, key_prefix: str, template_name: Optional[str] = None) -> str:
    prefix = key_prefix.strip("/")
    return f"https://{bucket}.s3.amazonaws.com/{prefix}/{_artifact_file(template_name, '.template')}"


def _read_params(bucket: str, key: str) -> Dict[str, str]:
    """Read one ``{"Key": "Value"}`` params file; a missing file is empty."""
    try:
        resp = _get_s3().get_object(Bucket=bucket, Key=key)
    except ClientError as exc:
        if _error_code(exc) in ("NoSuchKey", "404"):
            logger.info("[SKIP] No parameter file at s3://%s/%s", bucket, key)
            return {}
        raise
    try:
        data = json.loads(resp["Body"].read().decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InputValidationError(f"s3://{bucket}/{key} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InputValidationError(f"s3://{bucket}/{key} must be a JSON object of parameter values")
    return {str(k): str(v) for k, v in data.items()}


def merge_parameters(*layers: Dict[str, str]) -> List[Dict[str, str]]:
    """Merge parameter maps left to right (later wins) into sorted CFN parameters."""
    merged: Dict[str, str] = {}
    for layer in layers:
        merged.update(layer or {})
    return [{"ParameterKey": k, "ParameterValue": merged[k]} for k in sorted(merged)]


def inject_env_parameter(parameters: List[Dict[str, str]], env: str) -> List[Dict[str, str]]:
    """Force the ``Env`` parameter to the deployment environment."""
    out = [p for p in parameters if p.get("ParameterKey") != ENV_PARAMETER]
    out.append({"ParameterKey": ENV_PARAMETER, "ParameterValue": env})
    return sorted(out, key=lambda p: p["ParameterKey"])


def load_parameters(
    bucket: str,
    key_prefix: str,
    env: str,
    template_name: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Base params merged with ``.{env}`` overrides, ``Env`` forced to ``env``."""
    prefix = key_prefix.strip("/")
    params_file = _artifact_file(template_name, "-params")
    base = _read_params(bucket, f"{prefix}/{params_file}.json")
    override = _read_params(bucket, f"{prefix}/{params_file}.{env}.json")
    return inject_env_parameter(merge_parameters(base, override), env)


# ---------------------------------------------------------------------------
# CreateOrUpdateUnit
# ---------------------------------------------------------------------------


def _stack_set_exists(name: str) -> bool:
    try:
        _get_cfn().describe_stack_set(StackSetName=name)
        return True
    except ClientError as exc:
        if _error_code(exc) == "StackSetNotFoundException":
            return False
        # Unknown failure: try the update path; a missing StackSet is
        # detected there and falls back to create.
        logger.warning("[WARNING] DescribeStackSet %s failed (%s); assuming it exists", name, _error_code(exc))
        return True


def _update_stack_set(name: str, url: str, parameters: List[Dict[str, str]], role_arn: str) -> None:
    _get_cfn().update_stack_set(
        StackSetName=name,
        TemplateURL=url,
        Parameters=parameters,
        Capabilities=STACKSET_CAPABILITIES,
        AdministrationRoleARN=role_arn,
        ExecutionRoleName=EXECUTION_ROLE_NAME,
    )


def _create_stack_set(
    name: str, url: str, parameters: List[Dict[str, str]], role_arn: str, env: str, repo: str,
) -> None:
    _get_cfn().create_stack_set(
        StackSetName=name,
        TemplateURL=url,
        Parameters=parameters,
        Capabilities=STACKSET_CAPABILITIES,
        AdministrationRoleARN=role_arn,
        ExecutionRoleName=EXECUTION_ROLE_NAME,
        Tags=[
            {"Key": "Environment", "Value": env},
            {"Key": "Repository", "Value": repo},
            {"Key": "ManagedBy", "Value": STACKSET_MANAGED_BY},
        ],
    )


def create_or_update(
    env: str,
    repo: str,
    bucket: str,
    key_prefix: str,
    template_name: Optional[str] = None,
) -> Dict[str, str]:
    """Create the StackSet for (env, repo) or update its template and parameters.

    Returns ``{stack_set_name, operation}`` where operation is CREATE or
    UPDATE. "No updates are to be performed" counts as a successful UPDATE.
    """
    role_arn = _require("ADMINISTRATION_ROLE_ARN", ADMINISTRATION_ROLE_ARN)
    name = stack_set_name(env, repo)
    url = template_url(bucket, key_prefix, template_name)
    parameters = load_parameters(bucket, key_prefix, env, template_name)
    logger.info("[START] CreateOrUpdate StackSet %s from %s (%d parameters)", name, url, len(parameters))

    operation = "UPDATE" if _stack_set_exists(name) else "CREATE"
    for _ in range(2):
        try:
            if operation == "UPDATE":
                _update_stack_set(name, url, parameters, role_arn)
            else:
                _create_stack_set(name, url, parameters, role_arn, env, repo)
            break
        except ClientError as exc:
            code = _error_code(exc)
            if operation == "UPDATE" and _NO_UPDATES in _error_message(exc):
                logger.info("[SKIP] StackSet %s already up to date", name)
                break
            if code == "OperationInProgressException":
                raise _in_progress(name, exc) from exc
            if operation == "UPDATE" and code == "StackSetNotFoundException":
                operation = "CREATE"
                continue
            if operation == "CREATE" and code == "NameAlreadyExistsException":
                operation = "UPDATE"
                continue
            raise

    logger.info("[SUCCESS] StackSet %s %s", name, operation)
    return {"stack_set_name": name, "operation": operation}


# ---------------------------------------------------------------------------
# ProvisionInstances
# ---------------------------------------------------------------------------


def list_existing_instances(name: str) -> Set[Tuple[str, str]]:
    """(account, region) pairs that already exist for the StackSet.

    A StackSet that does not exist has no instances. Any other listing
    failure is logged and treated as "none known"; the create call that
    follows tolerates pairs that turn out to exist.
    """
    pairs: Set[Tuple[str, str]] = set()
    try:
        paginator = _get_cfn().get_paginator("list_stack_instances")
        for page in paginator.paginate(StackSetName=name):
            for summary in page.get("Summaries", []):
                pairs.add((summary.get("Account", ""), summary.get("Region", "")))
    except ClientError as exc:
        if _error_code(exc) == "StackSetNotFoundException":
            return set()
        logger.warning("[WARNING] ListStackInstances %s failed (%s); assuming none exist", name, _error_code(exc))
        return set()
    return pairs


def _covering(pairs: Iterable[Tuple[str, str]]) -> Tuple[List[str], List[str]]:
    accounts: List[str] = []
    regions: List[str] = []
    for account_id, region in pairs:
        if account_id not in accounts:
            accounts.append(account_id)
        if region not in regions:
            regions.append(region)
    return accounts, regions


def plan_instances(
    requested: Sequence[Tuple[str, str]],
    existing: Set[Tuple[str, str]],
) -> Tuple[str, List[str], List[str]]:
    """Decide the single StackSet operation for ``requested`` pairs.

    Returns (action, accounts, regions). With every requested pair already
    present the action is UPDATE over the requested accounts and regions;
    otherwise CREATE over the smallest account x region product covering
    the missing pairs.
    """
    missing = [pair for pair in requested if pair not in existing]
    if not missing:
        accounts, regions = _covering(requested)
        return "UPDATE", accounts, regions
    accounts, regions = _covering(missing)
    return "CREATE", accounts, regions


def _operation_id(name: str, build_id: Optional[str], action: str) -> Optional[str]:
    if not build_id:
        return None
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"aws-deployer/{name}/{build_id}/{action}"))


def provision_instances(
    name: str,
    targets: Sequence[Dict[str, str]],
    build_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create missing stack instances, or update existing ones when none are missing.

    With ``build_id`` the operation ID is derived from it, so a retried step
    that already submitted its operation gets that operation back instead
    of starting a second one.
    """
    if not targets:
        raise InputValidationError("at least one target is required")
    requested = [(t["account_id"], t["region"]) for t in targets]
    existing = list_existing_instances(name)
    action, accounts, regions = plan_instances(requested, existing)
    operation_id = _operation_id(name, build_id, action)
    logger.info(
        "[START] %s stack instances for %s: %d account(s) x %d region(s) (%d already exist)",
        action, name, len(accounts), len(regions), len(existing),
    )

    kwargs: Dict[str, Any] = {
        "StackSetName": name,
        "Accounts": accounts,
        "Regions": regions,
        "OperationPreferences": dict(STACKSET_OPERATION_PREFERENCES),
    }
    if operation_id:
        kwargs["OperationId"] = operation_id
    cfn = _get_cfn()
    try:
        if action == "UPDATE":
            resp = cfn.update_stack_instances(**kwargs)
        else:
            resp = cfn.create_stack_instances(**kwargs)
    except ClientError as exc:
        code = _error_code(exc)
        if code == "OperationInProgressException":
            raise _in_progress(name, exc) from exc
        if code == "OperationIdAlreadyExistsException" and operation_id:
            logger.info("[SKIP] Operation %s already submitted for %s", operation_id, name)
            resp = {"OperationId": operation_id}
        else:
            raise

    result = {
        "operation_id": resp.get("OperationId", operation_id),
        "action": action,
        "account_ids": accounts,
        "regions": regions,
    }
    logger.info("[SUCCESS] %s stack instances for %s started: %s", action, name, result["operation_id"])
    return result


# ---------------------------------------------------------------------------
# PollStatus
# ---------------------------------------------------------------------------


def failed_stack_events(stack_id: str) -> List[str]:
    """Most recent *_FAILED events of a stack instance's stack, capped."""
    if not stack_id:
        return []
    try:
        resp = _get_cfn().describe_stack_events(StackName=stack_id)
    except ClientError as exc:
        logger.warning("[WARNING] DescribeStackEvents %s failed: %s", stack_id, _error_code(exc))
        return []
    events: List[str] = []
    for event in resp.get("StackEvents", []):
        if event.get("ResourceStatus") not in _FAILED_RESOURCE_STATUSES:
            continue
        events.append(
            f"{event.get('LogicalResourceId', '')}: {event.get('ResourceStatus')} - "
            f"{event.get('ResourceStatusReason', '')}"
        )
        if len(events) >= MAX_STACK_EVENTS:
            break
    return events


def describe_instance(name: str, account_id: str, region: str) -> Dict[str, Any]:
    resp = _get_cfn().describe_stack_instance(
        StackSetName=name,
        StackInstanceAccount=account_id,
        StackInstanceRegion=region,
    )
    instance = resp.get("StackInstance", {})
    status = instance.get("Status", "")
    result: Dict[str, Any] = {
        "account_id": account_id,
        "region": region,
        "status": status,
        "detailed_status": (instance.get("StackInstanceStatus") or {}).get("DetailedStatus", ""),
        "status_reason": instance.get("StatusReason", ""),
        "stack_id": instance.get("StackId", ""),
        "events": [],
    }
    if status in DIAGNOSTIC_INSTANCE_STATUSES and instance_is_terminal(result["detailed_status"]):
        result["events"] = failed_stack_events(result["stack_id"])
    return result


def poll_status(
    env: str,
    repo: str,
    name: str,
    operation_id: str,
    targets: Sequence[Dict[str, str]],
    build_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Check the operation and every instance; record each target's status.

    Instances are described concurrently (at most STATUS_POLL_WORKERS in
    flight). A target whose status cannot be read is logged, left out of
    ``deployments`` and keeps the poll incomplete. While the operation is
    not terminal every readable target is recorded as IN_PROGRESS; the
    provider statuses are still reported in ``deployments``.
    """
    op = _get_cfn().describe_stack_set_operation(StackSetName=name, OperationId=operation_id)
    operation_status = op.get("StackSetOperation", {}).get("Status", "")
    logger.info("[INFO] StackSet %s operation %s is %s", name, operation_id, operation_status)

    results: List[Optional[Dict[str, Any]]] = [None] * len(targets)
    with ThreadPoolExecutor(max_workers=STATUS_POLL_WORKERS) as pool:
        futures = {
            pool.submit(describe_instance, name, t["account_id"], t["region"]): idx
            for idx, t in enumerate(targets)
        }
        for future in as_completed(futures):
            idx = futures[future]
            try:
                results[idx] = future.result()
            except Exception as exc:
                target = targets[idx]
                logger.warning(
                    "[WARNING] DescribeStackInstance %s %s/%s failed: %s",
                    name, target["account_id"], target["region"], exc,
                )

    deployments: List[Dict[str, Any]] = []
    has_failures = False
    for result in results:
        if result is None:
            continue
        status = recorded_status_for(operation_status, result["status"], result["detailed_status"])
        result["deployment_status"] = status.value
        if status == DeploymentStatus.FAILED:
            has_failures = True
        deployments.append(result)
        deployment_store.update_status(
            env,
            repo,
            result["account_id"],
            result["region"],
            build_id,
            status,
            stack_id=result["stack_id"],
            operation_id=operation_id,
            status_reason=result["status_reason"],
            error_msg=result["status_reason"] if status == DeploymentStatus.FAILED else None,
            stack_events=result["events"],
        )

    complete = is_complete(
        operation_status,
        [r["detailed_status"] if r is not None else None for r in results],
    )
    logger.info(
        "[INFO] StackSet %s: operation=%s complete=%s failures=%s (%d/%d instances read)",
        name, operation_status, complete, has_failures, len(deployments), len(targets),
    )
    return {
        "operation_status": operation_status,
        "deployments": deployments,
        "is_complete": complete,
        "has_failures": has_failures,
    }


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


def aggregate(env: str, repo: str, build_id: str) -> Dict[str, Any]:
    """Reduce a build's deployment records into the build verdict and store it.

    A failed verdict write propagates so the workflow retries the step;
    recomputing from the deployment records gives the same verdict.
    """
    records = deployment_store.query_by_build(env, repo, build_id)
    build_status, partial, failed_keys, summary, error_msg = aggregate_verdict(records)
    logger.info(
        "[INFO] Aggregated %s/%s build %s: %s (total=%d succeeded=%d failed=%d)",
        env, repo, build_id, build_status.value, summary["total"], summary["succeeded"], summary["failed"],
    )
    build_store.update_status(repo, env, build_id, build_status, error_msg=error_msg or None)

    _emit_structured_observability(
        component="stackset",
        event="deployment_aggregated",
        repo=repo,
        env=env,
        build_id=build_id,
        extra={"build_status": build_status.value, "partial_success": partial, **summary},
    )
    return {
        "build_status": build_status.value,
        "partial_success": partial,
        "failed_deployments": failed_keys,
        "summary": summary,
        "error_msg": error_msg,
    }
