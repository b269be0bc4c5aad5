"""deployer_shared.lock_store — Exclusive per-(env, repo) deployment lock.

Table layout (LOCKS_TABLE):
    pk  = "{env}/{repo}"
    sk  = "LOCK"
    build_id, execution_arn, acquired_at, ttl (epoch seconds, DynamoDB TTL)

Lock IDs are rendered "{env}/{repo}:LOCK". Repository names may contain ":"
(sub-templates such as "myapp:worker"), so IDs are split on the last ":".
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from deployer_shared.aws_clients import _get_ddb
from deployer_shared.config import LOCKS_TABLE, LOCK_TTL_SECONDS
from deployer_shared.errors import InputValidationError, LockNotHeldError
from deployer_shared.serialization import (
    _deserialize,
    _emit_structured_observability,
    _now_z,
    _serialize,
    _serialize_item,
    _unix_now,
)

__all__ = [
    "LOCK_SK",
    "acquire",
    "delete",
    "find",
    "lock_id",
    "lock_key",
    "release",
]

logger = logging.getLogger(__name__)

LOCK_SK = "LOCK"


def lock_key(env: str, repo: str) -> Tuple[str, str]:
    return f"{env}/{repo}", LOCK_SK


def lock_id(env: str, repo: str) -> str:
    pk, sk = lock_key(env, repo)
    return f"{pk}:{sk}"


def _split_lock_id(value: str) -> Tuple[str, str]:
    pk, sep, sk = (value or "").rpartition(":")
    if not sep or not pk or sk != LOCK_SK or "/" not in pk:
        raise InputValidationError(f"invalid lock id: {value!r}")
    return pk, sk


def _key(pk: str, sk: str) -> Dict[str, Any]:
    return {"pk": _serialize(pk), "sk": _serialize(sk)}


def _holder(exc: ClientError) -> str:
    old = exc.response.get("Item")
    if not old:
        return ""
    return str(_deserialize(old).get("build_id") or "")


def find(value: str) -> Optional[Dict[str, Any]]:
    """Return the lock record for a lock ID, or None."""
    pk, sk = _split_lock_id(value)
    resp = _get_ddb().get_item(TableName=LOCKS_TABLE, Key=_key(pk, sk), ConsistentRead=True)
    item = resp.get("Item")
    return _deserialize(item) if item else None


def acquire(env: str, repo: str, build_id: str, execution_arn: str = "") -> Tuple[Dict[str, Any], bool]:
    """Try to take the lock for ``build_id``.

    One conditional put: succeeds when no lock exists, when ``build_id``
    already holds it (lease refresh on a retried step), or when the holder's
    lease has expired but TTL deletion has not caught up yet.

    Returns ``(record, True)`` on success and ``(current_record, False)``
    when another build holds the lock. A conflict is not an error.
    """
    pk, sk = lock_key(env, repo)
    now = _unix_now()
    record = {
        "pk": pk,
        "sk": sk,
        "id": f"{pk}:{sk}",
        "env": env,
        "repo": repo,
        "build_id": build_id,
        "execution_arn": execution_arn or None,
        "acquired_at": _now_z(),
        "ttl": now + LOCK_TTL_SECONDS,
    }
    try:
        _get_ddb().put_item(
            TableName=LOCKS_TABLE,
            Item=_serialize_item(record),
            ConditionExpression="attribute_not_exists(pk) OR build_id = :build_id OR #ttl <= :now",
            ExpressionAttributeNames={"#ttl": "ttl"},
            ExpressionAttributeValues={
                ":build_id": _serialize(build_id),
                ":now": _serialize(now),
            },
            ReturnValuesOnConditionCheckFailure="ALL_OLD",
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
            raise
        old = exc.response.get("Item")
        current = _deserialize(old) if old else find(f"{pk}:{sk}") or {}
        logger.info(
            "[INFO] Lock %s:%s held by build %s, requested by %s",
            pk, sk, current.get("build_id", "unknown"), build_id,
        )
        _emit_structured_observability(
            component="lock_store",
            event="lock_conflict",
            repo=repo,
            env=env,
            build_id=build_id,
            extra={"holder": current.get("build_id", "")},
        )
        return current, False

    record = {k: v for k, v in record.items() if v is not None}
    logger.info("[SUCCESS] Lock %s:%s acquired by build %s", pk, sk, build_id)
    _emit_structured_observability(
        component="lock_store", event="lock_acquired", repo=repo, env=env, build_id=build_id,
    )
    return record, True


def release(value: str, build_id: str) -> bool:
    """Release a lock held by ``build_id``.

    Returns True when a lock was deleted, False when no lock existed.
    Raises LockNotHeldError (leaving the lock intact) when another build
    holds it.
    """
    pk, sk = _split_lock_id(value)
    try:
        resp = _get_ddb().delete_item(
            TableName=LOCKS_TABLE,
            Key=_key(pk, sk),
            ConditionExpression="attribute_not_exists(pk) OR build_id = :build_id",
            ExpressionAttributeValues={":build_id": _serialize(build_id)},
            ReturnValues="ALL_OLD",
            ReturnValuesOnConditionCheckFailure="ALL_OLD",
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
            raise
        holder = _holder(exc)
        logger.warning("[WARNING] Release of %s:%s by %s refused; held by %s", pk, sk, build_id, holder)
        raise LockNotHeldError(build_id, holder) from exc

    released = bool(resp.get("Attributes"))
    if released:
        logger.info("[SUCCESS] Lock %s:%s released by build %s", pk, sk, build_id)
        _emit_structured_observability(component="lock_store", event="lock_released", build_id=build_id,
                                       extra={"lock_id": f"{pk}:{sk}"})
    else:
        logger.info("[SKIP] Lock %s:%s not present; nothing to release", pk, sk)
    return released


def delete(value: str) -> bool:
    """Administrative force-delete, bypassing the holder check."""
    pk, sk = _split_lock_id(value)
    resp = _get_ddb().delete_item(TableName=LOCKS_TABLE, Key=_key(pk, sk), ReturnValues="ALL_OLD")
    old = resp.get("Attributes")
    if old:
        logger.warning(
            "[WARNING] Lock %s:%s force-deleted (was held by %s)", pk, sk, _deserialize(old).get("build_id"),
        )
        return True
    logger.info("[SKIP] Lock %s:%s not present; nothing to delete", pk, sk)
    return False
