"""release_lock/lambda_function.py

Workflow step that releases the deployment lock held by a build. Runs after
aggregation and on the workflow's failure path, so releasing a lock that is
already gone succeeds.

Input:
    {env, repo, build_id}
Output:
    {released, message}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import lock_store
from deployer_shared.events import _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "env", "repo", "build_id")
    lock = lock_store.lock_id(fields["env"], fields["repo"])
    logger.info(f"[START] Release lock {lock} for build {fields['build_id']}")

    deleted = lock_store.release(lock, fields["build_id"])
    return {
        "released": True,
        "message": "Lock released" if deleted else "Lock already released",
    }
