"""check_stackset_status/lambda_function.py

Workflow step polled in a loop until ``is_complete``. Reads the StackSet
operation status and every target's instance status, and records each
target's progress in the deployment ledger.

Input:
    {env, repo, stack_set_name, operation_id, targets, build_id?}
Output:
    {operation_status, deployments: [{account_id, region, status,
     detailed_status, status_reason, stack_id, events, deployment_status}],
     is_complete, has_failures}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import stackset
from deployer_shared.events import _field, _parse_targets, _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "env", "repo", "stack_set_name", "operation_id")
    targets = _parse_targets(event)
    return stackset.poll_status(
        fields["env"],
        fields["repo"],
        fields["stack_set_name"],
        fields["operation_id"],
        targets,
        build_id=_field(event, "build_id"),
    )
