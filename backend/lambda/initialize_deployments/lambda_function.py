"""initialize_deployments/lambda_function.py

Workflow step that seeds one PENDING deployment record per target before
any stack instance is provisioned, so aggregation always sees every target
the build asked for.

Input:
    {env, repo, build_id, targets: [{account_id, region}], stack_set_name?}
Output:
    {initialized_count}
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import deployment_store
from deployer_shared.events import _field, _parse_targets, _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "env", "repo", "build_id")
    targets = _parse_targets(event)
    stack_set_name = _field(event, "stack_set_name")

    created = 0
    for target in targets:
        if deployment_store.create(
            fields["env"],
            fields["repo"],
            target["account_id"],
            target["region"],
            fields["build_id"],
            stack_set_name=stack_set_name,
        ):
            created += 1

    logger.info(
        f"[SUCCESS] Initialized {len(targets)} deployment(s) for {fields['env']}/{fields['repo']} "
        f"build {fields['build_id']} ({created} new)"
    )
    return {"initialized_count": len(targets)}
