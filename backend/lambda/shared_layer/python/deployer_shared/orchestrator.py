"""deployer_shared.orchestrator — Start a deployment workflow for a build.

The execution name is derived from (repo, env, build sk), so delivering the
same build twice resolves to the same execution instead of starting two.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from deployer_shared import build_store
from deployer_shared.aws_clients import _get_sfn
from deployer_shared.config import ARTIFACT_BUCKET, STATE_MACHINE_ARN, _require
from deployer_shared.errors import InputValidationError
from deployer_shared.serialization import _emit_structured_observability

__all__ = [
    "build_step_input",
    "execution_name",
    "start_execution",
]

logger = logging.getLogger(__name__)

# Step Functions names: 1-80 chars, no whitespace, brackets, wildcards,
# control characters or any of "#%\^|~`$&,;:/
_ILLEGAL_NAME_CHARS = re.compile(r"[\s<>{}\[\]?*\"#%\\^|~`$&,;:/\x00-\x1f\x7f-\x9f]")
_MAX_NAME_LENGTH = 80

_STEP_INPUT_FIELDS = (
    "repo",
    "env",
    "build_id",
    "branch",
    "version",
    "commit_hash",
    "s3_bucket",
    "s3_key",
    "template_name",
    "base_repo",
)


def execution_name(repo: str, env: str, sk: str) -> str:
    """Stable execution name; illegal characters (e.g. the ":" of sub-template repos) become "-"."""
    name = _ILLEGAL_NAME_CHARS.sub("-", f"{repo}-{env}-{sk}")
    if len(name) > _MAX_NAME_LENGTH:
        # Keep the build sk (the unique part) and trim the repo prefix.
        name = name[-_MAX_NAME_LENGTH:].lstrip("-")
    return name


def build_step_input(build: Dict[str, Any], bucket: Optional[str] = None) -> Dict[str, Any]:
    """Workflow input for a build record; artifacts live at {base_repo}/{branch}/{version}.

    Without an explicit ``bucket`` the ARTIFACT_BUCKET setting is required.
    """
    base_repo = build.get("base_repo") or build.get("repo", "")
    return {
        "repo": build.get("repo", ""),
        "env": build.get("env", ""),
        "build_id": build.get("sk", ""),
        "branch": build.get("branch", ""),
        "version": build.get("version", ""),
        "commit_hash": build.get("commit_hash", ""),
        "s3_bucket": bucket or _require("ARTIFACT_BUCKET", ARTIFACT_BUCKET),
        "s3_key": f"{base_repo}/{build.get('branch', '')}/{build.get('version', '')}",
        "template_name": build.get("template_name", ""),
        "base_repo": base_repo,
    }


def _existing_execution_arn(state_machine_arn: str, name: str) -> str:
    # arn:aws:states:<region>:<account>:stateMachine:<sm> -> ...:execution:<sm>:<name>
    return state_machine_arn.replace(":stateMachine:", ":execution:", 1) + f":{name}"


def start_execution(step_input: Dict[str, Any], state_machine_arn: Optional[str] = None) -> str:
    """Start the workflow and flip the build to IN_PROGRESS with the execution ARN.

    Returns the execution ARN. An execution that already exists under the
    same name is reused.
    """
    state_machine_arn = state_machine_arn or _require("STATE_MACHINE_ARN", STATE_MACHINE_ARN)
    repo = step_input.get("repo") or ""
    env = step_input.get("env") or ""
    sk = step_input.get("build_id") or ""
    if not repo or not env or not sk:
        raise InputValidationError("repo, env and build_id are required to start an execution")

    payload = {k: step_input.get(k, "") for k in _STEP_INPUT_FIELDS}
    name = execution_name(repo, env, sk)
    try:
        resp = _get_sfn().start_execution(
            stateMachineArn=state_machine_arn,
            name=name,
            input=json.dumps(payload, sort_keys=True),
        )
        execution_arn = resp["executionArn"]
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") != "ExecutionAlreadyExists":
            raise
        execution_arn = _existing_execution_arn(state_machine_arn, name)
        logger.info("[SKIP] Execution %s already started", execution_arn)

    build_store.start_execution(repo, env, sk, execution_arn)
    logger.info("[SUCCESS] Started %s for %s", execution_arn, build_store.build_id(repo, env, sk))
    _emit_structured_observability(
        component="orchestrator",
        event="execution_started",
        repo=repo,
        env=env,
        build_id=sk,
        extra={"execution_arn": execution_arn},
    )
    return execution_arn
