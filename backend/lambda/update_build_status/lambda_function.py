"""update_build_status/lambda_function.py

Workflow step used by the catch and finalize paths to set a build's status
directly (e.g. FAILED after an unrecoverable step error).

Input:
    {repo, env, build_id, status, error_msg?}
Output:
    {repo, env, build_id, status}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import build_store
from deployer_shared.events import _field, _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _error_text(event: Dict[str, Any]) -> Any:
    """error_msg, or the Cause of a Step Functions catch block."""
    message = _field(event, "error_msg")
    if message:
        return str(message)
    error = event.get("error")
    if isinstance(error, dict):
        return error.get("Cause") or error.get("Error")
    return None


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "repo", "env", "build_id", "status")
    status = fields["status"].upper()
    build_store.update_status(fields["repo"], fields["env"], fields["build_id"], status,
                              error_msg=_error_text(event))
    return {
        "repo": fields["repo"],
        "env": fields["env"],
        "build_id": fields["build_id"],
        "status": status,
    }
