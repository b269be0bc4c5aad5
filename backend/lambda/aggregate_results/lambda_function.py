"""aggregate_results/lambda_function.py

Workflow step that reduces a build's deployment records into the build's
final status and writes it to the build ledger.

Input:
    {env, repo, build_id}
Output:
    {build_status, partial_success, failed_deployments,
     summary: {total, succeeded, failed}, error_msg}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import stackset
from deployer_shared.events import _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "env", "repo", "build_id")
    logger.info(f"[START] Aggregating {fields['env']}/{fields['repo']} build {fields['build_id']}")
    result = stackset.aggregate(fields["env"], fields["repo"], fields["build_id"])
    logger.info(f"[END] Build {fields['build_id']} -> {result['build_status']}")
    return result
