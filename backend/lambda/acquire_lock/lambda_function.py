"""acquire_lock/lambda_function.py

Workflow step that takes the per-(env, repo) deployment lock for a build.

A lock held by another build is a normal outcome: the step answers
``should_retry`` and the workflow waits and loops back here. After
MAX_LOCK_RETRIES unsuccessful attempts the step fails.

Input:
    {env, repo, build_id, execution_arn, retry_count}
Output:
    {lock_acquired, retry_count, should_retry, message}

Environment variables:
    LOCKS_TABLE            default: {ENV}-aws-deployer--locks
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import lock_store
from deployer_shared.config import MAX_LOCK_RETRIES
from deployer_shared.errors import InputValidationError, LockRetriesExhaustedError
from deployer_shared.events import _field, _require_fields

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _retry_count(event: Dict[str, Any]) -> int:
    raw = _field(event, "retry_count", 0)
    try:
        count = int(raw)
    except (TypeError, ValueError) as exc:
        raise InputValidationError(f"retry_count must be an integer, got {raw!r}") from exc
    return max(count, 0)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "env", "repo", "build_id")
    env, repo, build_id = fields["env"], fields["repo"], fields["build_id"]
    retry_count = _retry_count(event)
    logger.info(f"[START] Acquire lock env={env} repo={repo} build={build_id} attempt={retry_count + 1}")

    record, acquired = lock_store.acquire(env, repo, build_id, _field(event, "execution_arn", ""))
    if acquired:
        return {
            "lock_acquired": True,
            "retry_count": retry_count,
            "should_retry": False,
            "message": "Lock acquired",
        }

    holder = record.get("build_id", "unknown")
    retry_count += 1
    should_retry = retry_count < MAX_LOCK_RETRIES
    if not should_retry:
        logger.error(f"[ERROR] Lock for {env}/{repo} still held by {holder} after {retry_count} attempts")
        raise LockRetriesExhaustedError(MAX_LOCK_RETRIES, holder)

    message = f"Lock held by build {holder}, retry {retry_count}/{MAX_LOCK_RETRIES}"
    logger.info(f"[INFO] {message}")
    return {
        "lock_acquired": False,
        "retry_count": retry_count,
        "should_retry": True,
        "message": message,
    }
