"""deployer_shared.deployment_store — One status record per deployment target.

Table layout (DEPLOYMENTS_TABLE):
    pk = "{env}/{repo}"
    sk = "{account_id}/{region}"

A record belongs to one build at a time (``build_id``). Seeding a target
for a newer build resets the record; once a record reaches SUCCESS or
FAILED (``finished_at`` set) it is never modified again for that build.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from botocore.exceptions import ClientError

from deployer_shared.aws_clients import _get_ddb
from deployer_shared.config import DEPLOYMENTS_TABLE, MAX_STACK_EVENTS
from deployer_shared.serialization import _deserialize, _now_z, _serialize, _serialize_item
from deployer_shared.status import TERMINAL_DEPLOYMENT_STATUSES, DeploymentStatus

__all__ = [
    "create",
    "deployment_pk",
    "deployment_sk",
    "get",
    "query_by_build",
    "query_by_env_repo",
    "update_status",
]

logger = logging.getLogger(__name__)


def deployment_pk(env: str, repo: str) -> str:
    return f"{env}/{repo}"


def deployment_sk(account_id: str, region: str) -> str:
    return f"{account_id}/{region}"


def _key(env: str, repo: str, account_id: str, region: str) -> Dict[str, Any]:
    return {
        "pk": _serialize(deployment_pk(env, repo)),
        "sk": _serialize(deployment_sk(account_id, region)),
    }


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def get(env: str, repo: str, account_id: str, region: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=DEPLOYMENTS_TABLE,
        Key=_key(env, repo, account_id, region),
        ConsistentRead=True,
    )
    item = resp.get("Item")
    return _deserialize(item) if item else None


def create(
    env: str,
    repo: str,
    account_id: str,
    region: str,
    build_id: str,
    stack_set_name: Optional[str] = None,
) -> bool:
    """Seed a PENDING record for ``build_id``.

    Returns False (no write) when the record already belongs to this build,
    so a re-run never rewinds a target that has progressed.
    """
    now = _now_z()
    record = {
        "pk": deployment_pk(env, repo),
        "sk": deployment_sk(account_id, region),
        "env": env,
        "repo": repo,
        "account_id": account_id,
        "region": region,
        "build_id": build_id,
        "stack_set_name": stack_set_name,
        "status": DeploymentStatus.PENDING.value,
        "created_at": now,
        "updated_at": now,
    }
    try:
        _get_ddb().put_item(
            TableName=DEPLOYMENTS_TABLE,
            Item=_serialize_item(record),
            ConditionExpression="attribute_not_exists(pk) OR build_id <> :build_id",
            ExpressionAttributeValues={":build_id": _serialize(build_id)},
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            logger.info("[SKIP] Deployment %s %s already seeded for build %s",
                        record["pk"], record["sk"], build_id)
            return False
        raise
    return True


def update_status(
    env: str,
    repo: str,
    account_id: str,
    region: str,
    build_id: Optional[str],
    status: Any,
    stack_id: Optional[str] = None,
    operation_id: Optional[str] = None,
    status_reason: Optional[str] = None,
    error_msg: Optional[str] = None,
    stack_events: Optional[Sequence[str]] = None,
) -> bool:
    """Record the latest observed status for a target of ``build_id``.

    Returns False when the record is missing, already terminal, or belongs
    to a different build; none of these is an error for the poller. Without
    ``build_id`` only the terminal guard applies.
    """
    status = DeploymentStatus(status)
    now = _now_z()
    assignments: Dict[str, Any] = {"updated_at": now}
    if status in TERMINAL_DEPLOYMENT_STATUSES:
        assignments["finished_at"] = now
    if stack_id:
        assignments["stack_id"] = stack_id
    if operation_id:
        assignments["operation_id"] = operation_id
    if status_reason:
        assignments["status_reason"] = status_reason
    if error_msg:
        assignments["error_msg"] = error_msg
    if stack_events:
        assignments["stack_events"] = list(stack_events)[:MAX_STACK_EVENTS]

    values = {":status": _serialize(status.value)}
    condition = "attribute_exists(pk) AND attribute_not_exists(finished_at)"
    if build_id:
        values[":build_id"] = _serialize(build_id)
        condition = "build_id = :build_id AND attribute_not_exists(finished_at)"
    clauses = ["#status = :status"]
    for field, value in assignments.items():
        clauses.append(f"{field} = :{field}")
        values[f":{field}"] = _serialize(value)

    try:
        _get_ddb().update_item(
            TableName=DEPLOYMENTS_TABLE,
            Key=_key(env, repo, account_id, region),
            UpdateExpression="SET " + ", ".join(clauses),
            ConditionExpression=condition,
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues=values,
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            logger.info("[SKIP] Deployment %s/%s %s for build %s is terminal or superseded",
                        env, repo, deployment_sk(account_id, region), build_id)
            return False
        raise
    return True


def query_by_env_repo(env: str, repo: str, build_id: Optional[str] = None) -> List[Dict[str, Any]]:
    ddb = _get_ddb()
    results: List[Dict[str, Any]] = []
    kwargs: Dict[str, Any] = {
        "TableName": DEPLOYMENTS_TABLE,
        "KeyConditionExpression": "pk = :pk",
        "ExpressionAttributeValues": {":pk": _serialize(deployment_pk(env, repo))},
    }
    if build_id:
        kwargs["FilterExpression"] = "build_id = :build_id"
        kwargs["ExpressionAttributeValues"][":build_id"] = _serialize(build_id)
    while True:
        resp = ddb.query(**kwargs)
        results.extend(_deserialize(item) for item in resp.get("Items", []))
        if "LastEvaluatedKey" not in resp:
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
    return results


def query_by_build(env: str, repo: str, build_id: str) -> List[Dict[str, Any]]:
    """All target records of one build, for aggregation."""
    return query_by_env_repo(env, repo, build_id=build_id)
