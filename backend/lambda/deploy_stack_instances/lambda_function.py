"""deploy_stack_instances/lambda_function.py

Workflow step that provisions stack instances for every requested target.
Missing (account, region) pairs are created; when none are missing the
existing instances are updated to the StackSet's current template.

If the StackSet is busy the step raises OperationInProgressError, which the
workflow retries with backoff.

Input:
    {stack_set_name, targets: [{account_id, region}], build_id?}
Output:
    {operation_id, action: CREATE|UPDATE, account_ids, regions}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import stackset
from deployer_shared.events import _field, _parse_targets, _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "stack_set_name")
    targets = _parse_targets(event)
    return stackset.provision_instances(
        fields["stack_set_name"],
        targets,
        build_id=_field(event, "build_id"),
    )
