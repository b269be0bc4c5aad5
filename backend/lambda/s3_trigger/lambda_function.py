"""s3_trigger/lambda_function.py

S3-triggered Lambda that registers a new build when CI uploads a template's
parameter file.

Key layout:
    {repo}/{branch}/{build_number}.{commit_hash}/cloudformation-params.json
    {repo}/{branch}/{build_number}.{commit_hash}/cloudformation-{name}-params.json

The second form is a sub-template; its build is tracked under the repo
identifier "{repo}:{name}". The build starts in the repo's configured
initial environment (repo config, then default config, then
DEFAULT_INITIAL_ENV) with PENDING status. Other uploads are ignored.

Environment variables:
    BUILDS_TABLE           default: {ENV}-aws-deployer--builds
    TARGETS_TABLE          default: {ENV}-aws-deployer--targets
    DEFAULT_INITIAL_ENV    default: dev
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import unquote_plus

from deployer_shared import build_store, target_store
from deployer_shared.errors import InputValidationError

logger = logging.getLogger()
logger.setLevel(logging.INFO)

MAIN_PARAMS_FILE = "cloudformation-params.json"
_SUB_TEMPLATE_PARAMS_RE = re.compile(r"^cloudformation-(.+)-params\.json$")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _template_name(filename: str) -> Optional[str]:
    """"" for the main params file, the name for a sub-template, None otherwise.

    Env override files (cloudformation-params.dev.json) never match: the
    captured name would contain a dot.
    """
    if filename == MAIN_PARAMS_FILE:
        return ""
    match = _SUB_TEMPLATE_PARAMS_RE.match(filename)
    if not match or "." in match.group(1):
        return None
    return match.group(1)


def _parse_key(key: str) -> Optional[Dict[str, str]]:
    parts = key.split("/")
    template_name = _template_name(parts[-1])
    if template_name is None:
        return None
    if len(parts) < 4 or not all(parts[:3]):
        raise InputValidationError(
            f"invalid S3 key format: {key}, expected format: {{repo}}/{{branch}}/{{version}}/{MAIN_PARAMS_FILE}"
        )
    base_repo, branch, version = parts[0], parts[1], parts[2]
    build_number, dot, commit_hash = version.partition(".")
    if not dot or not build_number or not commit_hash:
        raise InputValidationError(
            f"invalid version format: {version}, expected format: {{build_number}}.{{commit_hash}}"
        )
    return {
        "base_repo": base_repo,
        "branch": branch,
        "version": version,
        "build_number": build_number,
        "commit_hash": commit_hash,
        "template_name": template_name,
    }


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------


def _register_build(key: str) -> Optional[Dict[str, Any]]:
    parsed = _parse_key(key)
    if parsed is None:
        logger.info(f"[SKIP] Ignoring non-params object {key}")
        return None

    base_repo, template_name = parsed["base_repo"], parsed["template_name"]
    repo = f"{base_repo}:{template_name}" if template_name else base_repo
    env = target_store.initial_env(base_repo)
    stack_name = f"{env}-{base_repo}-{template_name}" if template_name else f"{env}-{base_repo}"

    build = build_store.create(
        repo,
        env,
        build_number=parsed["build_number"],
        branch=parsed["branch"],
        version=parsed["version"],
        commit_hash=parsed["commit_hash"],
        stack_name=stack_name,
        template_name=template_name or None,
        base_repo=base_repo,
    )
    logger.info(f"[SUCCESS] Registered build {build['id']} version {parsed['version']} ({stack_name})")
    return build


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    records = event.get("Records", [])
    logger.info(f"s3_trigger: received {len(records)} S3 record(s)")

    builds: List[str] = []
    for record in records:
        key = unquote_plus(record.get("s3", {}).get("object", {}).get("key", ""))
        build = _register_build(key)
        if build:
            builds.append(build["id"])
    return {"builds": builds}
