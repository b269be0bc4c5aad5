"""fetch_targets/lambda_function.py

Workflow step that resolves the (account, region) targets for a repo in an
environment, falling back to the default ("$") configuration.

Input:
    {env, repo}
Output:
    {targets: [{account_id, region}], count}

Environment variables:
    TARGETS_TABLE          default: {ENV}-aws-deployer--targets
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from deployer_shared import target_store
from deployer_shared.events import _require_fields

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    fields = _require_fields(event, "env", "repo")
    targets = target_store.resolve(fields["repo"], fields["env"])
    logger.info(f"[SUCCESS] Resolved {len(targets)} target(s) for repo={fields['repo']} env={fields['env']}")
    return {"targets": targets, "count": len(targets)}
