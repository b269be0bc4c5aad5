"""deployer_shared.build_store — Build ledger and the latest-per-repo index.

Table layout (BUILDS_TABLE):
    build record   pk = "{repo}/{env}"    sk = time-ordered build sk
    latest index   pk = "latest/{env}"    sk = "{repo}/{env}"

Build IDs are rendered "{repo}/{env}:{sk}". The latest index record is
written in the same transaction as every status change of the primary
record, so "newest build per repo in an environment" is a single-partition
query instead of a scan or a secondary index.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from deployer_shared.aws_clients import _get_ddb
from deployer_shared.config import BUILDS_TABLE
from deployer_shared.errors import BuildNotFoundError, InputValidationError
from deployer_shared.serialization import (
    _deserialize,
    _emit_structured_observability,
    _new_build_sk,
    _now_z,
    _serialize,
    _serialize_item,
)
from deployer_shared.status import TERMINAL_BUILD_STATUSES, BuildStatus

__all__ = [
    "LATEST_PREFIX",
    "build_id",
    "build_pk",
    "create",
    "find",
    "get",
    "parse_build_id",
    "query_by_repo_env",
    "query_latest",
    "start_execution",
    "update_status",
]

logger = logging.getLogger(__name__)

LATEST_PREFIX = "latest/"

_METADATA_FIELDS = (
    "build_number",
    "branch",
    "version",
    "commit_hash",
    "stack_name",
    "template_name",
    "base_repo",
)

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def build_pk(repo: str, env: str) -> str:
    return f"{repo}/{env}"


def build_id(repo: str, env: str, sk: str) -> str:
    return f"{build_pk(repo, env)}:{sk}"


def parse_build_id(value: str) -> Tuple[str, str, str]:
    """Split "{repo}/{env}:{sk}" into (repo, env, sk).

    The sk never contains ":" and env never contains "/", while repo may
    contain either, so both splits run from the right.
    """
    pk, sep, sk = (value or "").rpartition(":")
    repo, slash, env = pk.rpartition("/")
    if not sep or not slash or not repo or not env or not sk:
        raise InputValidationError(f"invalid build id: {value!r}, expected {{repo}}/{{env}}:{{sk}}")
    return repo, env, sk


def _key(pk: str, sk: str) -> Dict[str, Any]:
    return {"pk": _serialize(pk), "sk": _serialize(sk)}


def _latest_item(repo: str, env: str, sk: str, status: str, now: str) -> Dict[str, Any]:
    return _serialize_item({
        "pk": f"{LATEST_PREFIX}{env}",
        "sk": build_pk(repo, env),
        "id": build_id(repo, env, sk),
        "build_sk": sk,
        "repo": repo,
        "env": env,
        "status": status,
        "updated_at": now,
    })


def _status_value(status: Any) -> str:
    try:
        return BuildStatus(status).value
    except ValueError as exc:
        raise InputValidationError(
            f"invalid build status {status!r}, expected one of {[s.value for s in BuildStatus]}"
        ) from exc


def _is_condition_cancel(exc: ClientError) -> bool:
    """True when a transaction was cancelled by the primary item's condition."""
    if exc.response.get("Error", {}).get("Code") != "TransactionCanceledException":
        return False
    reasons = exc.response.get("CancellationReasons") or []
    return bool(reasons) and reasons[0].get("Code") == "ConditionalCheckFailed"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get(repo: str, env: str, sk: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=BUILDS_TABLE,
        Key=_key(build_pk(repo, env), sk),
        ConsistentRead=True,
    )
    item = resp.get("Item")
    return _deserialize(item) if item else None


def find(value: str) -> Optional[Dict[str, Any]]:
    """Return the build for a "{repo}/{env}:{sk}" ID, or None."""
    repo, env, sk = parse_build_id(value)
    return get(repo, env, sk)


def query_by_repo_env(repo: str, env: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Builds for (repo, env), newest first."""
    ddb = _get_ddb()
    results: List[Dict[str, Any]] = []
    kwargs: Dict[str, Any] = {
        "TableName": BUILDS_TABLE,
        "KeyConditionExpression": "pk = :pk",
        "ExpressionAttributeValues": {":pk": _serialize(build_pk(repo, env))},
        "ScanIndexForward": False,
    }
    while True:
        resp = ddb.query(**kwargs)
        results.extend(_deserialize(item) for item in resp.get("Items", []))
        if limit is not None and len(results) >= limit:
            return results[:limit]
        if "LastEvaluatedKey" not in resp:
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
    return results


def query_latest(env: str) -> List[Dict[str, Any]]:
    """Latest build of every repo in ``env``, most recently updated first.

    Reads the latest index partition and re-fetches each primary record;
    index entries whose build has since been deleted are skipped.
    """
    ddb = _get_ddb()
    index: List[Dict[str, Any]] = []
    kwargs: Dict[str, Any] = {
        "TableName": BUILDS_TABLE,
        "KeyConditionExpression": "pk = :pk",
        "ExpressionAttributeValues": {":pk": _serialize(f"{LATEST_PREFIX}{env}")},
    }
    while True:
        resp = ddb.query(**kwargs)
        index.extend(_deserialize(item) for item in resp.get("Items", []))
        if "LastEvaluatedKey" not in resp:
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]

    index.sort(key=lambda r: r.get("updated_at", ""), reverse=True)
    builds: List[Dict[str, Any]] = []
    for entry in index:
        record = get(entry.get("repo", ""), entry.get("env", ""), entry.get("build_sk", ""))
        if record is None:
            logger.warning("[WARNING] Latest index entry %s points at a missing build", entry.get("id"))
            continue
        builds.append(record)
    return builds


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def create(
    repo: str,
    env: str,
    sk: Optional[str] = None,
    **metadata: Any,
) -> Dict[str, Any]:
    """Seed a PENDING build and its latest index entry.

    Idempotent: if a build with the same key already exists, the existing
    record is returned unchanged.
    """
    unknown = set(metadata) - set(_METADATA_FIELDS)
    if unknown:
        raise InputValidationError(f"unknown build fields: {sorted(unknown)}")
    if not repo or not env:
        raise InputValidationError("repo and env are required to create a build")

    sk = sk or _new_build_sk()
    now = _now_z()
    pk = build_pk(repo, env)
    record: Dict[str, Any] = {
        "pk": pk,
        "sk": sk,
        "id": build_id(repo, env, sk),
        "repo": repo,
        "env": env,
        "status": BuildStatus.PENDING.value,
        "created_at": now,
        "updated_at": now,
    }
    for field in _METADATA_FIELDS:
        if metadata.get(field):
            record[field] = str(metadata[field])

    try:
        _get_ddb().transact_write_items(TransactItems=[
            {
                "Put": {
                    "TableName": BUILDS_TABLE,
                    "Item": _serialize_item(record),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            },
            {
                "Put": {
                    "TableName": BUILDS_TABLE,
                    "Item": _latest_item(repo, env, sk, BuildStatus.PENDING.value, now),
                }
            },
        ])
    except ClientError as exc:
        if not _is_condition_cancel(exc):
            raise
        existing = get(repo, env, sk)
        if existing is None:
            raise
        logger.info("[SKIP] Build %s already exists", existing["id"])
        return existing

    logger.info("[SUCCESS] Created build %s (PENDING)", record["id"])
    _emit_structured_observability(
        component="build_store", event="build_created", repo=repo, env=env, build_id=record["id"],
        extra={"version": record.get("version", "")},
    )
    return record


def _transition(
    repo: str,
    env: str,
    sk: str,
    status: str,
    assignments: Dict[str, Any],
) -> None:
    now = _now_z()
    assignments = dict(assignments, updated_at=now)
    names = {"#status": "status"}
    values = {":status": _serialize(status)}
    clauses = ["#status = :status"]
    for field, value in assignments.items():
        clauses.append(f"{field} = :{field}")
        values[f":{field}"] = _serialize(value)

    try:
        _get_ddb().transact_write_items(TransactItems=[
            {
                "Update": {
                    "TableName": BUILDS_TABLE,
                    "Key": _key(build_pk(repo, env), sk),
                    "UpdateExpression": "SET " + ", ".join(clauses),
                    "ConditionExpression": "attribute_exists(pk)",
                    "ExpressionAttributeNames": names,
                    "ExpressionAttributeValues": values,
                }
            },
            {
                "Put": {
                    "TableName": BUILDS_TABLE,
                    "Item": _latest_item(repo, env, sk, status, now),
                }
            },
        ])
    except ClientError as exc:
        if _is_condition_cancel(exc):
            raise BuildNotFoundError(f"build record not found: {build_id(repo, env, sk)}") from exc
        raise


def update_status(
    repo: str,
    env: str,
    sk: str,
    status: Any,
    error_msg: Optional[str] = None,
) -> None:
    """Transition a build and mirror the new status into the latest index.

    ``finished_at`` is stamped only for SUCCESS and FAILED.
    """
    status = _status_value(status)
    assignments: Dict[str, Any] = {}
    if BuildStatus(status) in TERMINAL_BUILD_STATUSES:
        assignments["finished_at"] = _now_z()
    if error_msg:
        assignments["error_msg"] = error_msg

    _transition(repo, env, sk, status, assignments)
    logger.info("[SUCCESS] Build %s -> %s", build_id(repo, env, sk), status)
    _emit_structured_observability(
        component="build_store", event="build_status", repo=repo, env=env, build_id=build_id(repo, env, sk),
        extra={"status": status, "error_msg": error_msg or ""},
    )


def start_execution(repo: str, env: str, sk: str, execution_arn: str) -> None:
    """PENDING -> IN_PROGRESS, recording the workflow execution handle."""
    if not execution_arn:
        raise InputValidationError("execution_arn is required")
    _transition(repo, env, sk, BuildStatus.IN_PROGRESS.value, {"execution_arn": execution_arn})
    logger.info("[SUCCESS] Build %s -> IN_PROGRESS (%s)", build_id(repo, env, sk), execution_arn)
    _emit_structured_observability(
        component="build_store", event="build_started", repo=repo, env=env, build_id=build_id(repo, env, sk),
        extra={"execution_arn": execution_arn},
    )
