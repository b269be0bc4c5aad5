"""deployer_shared.target_store — Deployment targets and promotion chains.

Table layout (TARGETS_TABLE):
    targets record   pk = repo (or "$" for defaults)   sk = target env
                     targets = [{account_ids: [...], regions: [...]}]
                     downstream_envs = [env, ...]
    pipeline config  pk = repo (or "$")                sk = "$"
                     initial_env

Repository records win over the "$" defaults; there is no merging between
the two.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from deployer_shared.aws_clients import _get_ddb
from deployer_shared.config import DEFAULT_INITIAL_ENV, TARGETS_TABLE
from deployer_shared.errors import InputValidationError, NoTargetsConfiguredError
from deployer_shared.serialization import _deserialize, _now_z, _serialize, _serialize_item

__all__ = [
    "CONFIG_SK",
    "DEFAULT_REPO",
    "delete",
    "expand",
    "find_all",
    "get",
    "get_config",
    "get_with_default",
    "initial_env",
    "put",
    "put_config",
    "resolve",
    "walk_promotion_chain",
]

logger = logging.getLogger(__name__)

DEFAULT_REPO = "$"
CONFIG_SK = "$"


def _key(repo: str, sk: str) -> Dict[str, Any]:
    return {"pk": _serialize(repo), "sk": _serialize(sk)}


def _get_item(repo: str, sk: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(TableName=TARGETS_TABLE, Key=_key(repo, sk), ConsistentRead=True)
    item = resp.get("Item")
    return _deserialize(item) if item else None


def _normalize_groups(groups: Iterable[Dict[str, Any]]) -> List[Dict[str, List[str]]]:
    out: List[Dict[str, List[str]]] = []
    for group in groups:
        accounts = [str(a).strip() for a in (group.get("account_ids") or []) if str(a).strip()]
        regions = [str(r).strip() for r in (group.get("regions") or []) if str(r).strip()]
        if not accounts or not regions:
            raise InputValidationError(f"target group needs at least one account and one region: {group!r}")
        out.append({"account_ids": accounts, "regions": regions})
    return out


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


def get(repo: str, env: str) -> Optional[Dict[str, Any]]:
    if env == CONFIG_SK:
        raise InputValidationError(f"{CONFIG_SK!r} is reserved for the pipeline config record")
    return _get_item(repo, env)


def get_with_default(repo: str, env: str) -> Optional[Dict[str, Any]]:
    """Repository record for ``env``, falling back to the "$" default record."""
    record = get(repo, env)
    if record is None and repo != DEFAULT_REPO:
        record = get(DEFAULT_REPO, env)
        if record is not None:
            logger.info("[INFO] Using default targets for repo=%s env=%s", repo, env)
    return record


def put(
    repo: str,
    env: str,
    targets: Sequence[Dict[str, Any]],
    downstream_envs: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    if not repo or not env or env == CONFIG_SK:
        raise InputValidationError("repo and a target env are required")
    record: Dict[str, Any] = {
        "pk": repo,
        "sk": env,
        "repo": repo,
        "env": env,
        "targets": _normalize_groups(targets),
        "updated_at": _now_z(),
    }
    downstream = [str(e).strip() for e in (downstream_envs or []) if str(e).strip()]
    if downstream:
        record["downstream_envs"] = downstream
    _get_ddb().put_item(TableName=TARGETS_TABLE, Item=_serialize_item(record))
    logger.info("[SUCCESS] Stored %d target group(s) for repo=%s env=%s", len(record["targets"]), repo, env)
    return record


def delete(repo: str, env: str) -> None:
    _get_ddb().delete_item(TableName=TARGETS_TABLE, Key=_key(repo, env))


def find_all() -> List[Dict[str, Any]]:
    ddb = _get_ddb()
    results: List[Dict[str, Any]] = []
    kwargs: Dict[str, Any] = {"TableName": TARGETS_TABLE}
    while True:
        resp = ddb.scan(**kwargs)
        results.extend(_deserialize(item) for item in resp.get("Items", []))
        if "LastEvaluatedKey" not in resp:
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
    return sorted(results, key=lambda r: (r.get("pk", ""), r.get("sk", "")))


def expand(groups: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Cross product of accounts x regions per group, unioned across groups.

    Duplicate pairs collapse; the first occurrence fixes the order.
    """
    seen: Set[Tuple[str, str]] = set()
    out: List[Dict[str, str]] = []
    for group in groups:
        for account_id in group.get("account_ids") or []:
            for region in group.get("regions") or []:
                pair = (str(account_id), str(region))
                if pair in seen:
                    continue
                seen.add(pair)
                out.append({"account_id": pair[0], "region": pair[1]})
    return out


def resolve(repo: str, env: str) -> List[Dict[str, str]]:
    """Concrete (account, region) targets for ``repo`` in ``env``."""
    record = get_with_default(repo, env)
    targets = expand(record.get("targets") or []) if record else []
    if not targets:
        raise NoTargetsConfiguredError(repo, env)
    return targets


# ---------------------------------------------------------------------------
# Pipeline config / promotion chain
# ---------------------------------------------------------------------------


def get_config(repo: str) -> Optional[Dict[str, Any]]:
    return _get_item(repo, CONFIG_SK)


def put_config(repo: str, initial_env: str) -> Dict[str, Any]:
    if not repo or not initial_env:
        raise InputValidationError("repo and initial_env are required")
    record = {
        "pk": repo,
        "sk": CONFIG_SK,
        "repo": repo,
        "initial_env": initial_env,
        "updated_at": _now_z(),
    }
    _get_ddb().put_item(TableName=TARGETS_TABLE, Item=_serialize_item(record))
    return record


def initial_env(repo: str) -> str:
    """First environment of the pipeline: repo config, then default config, then DEFAULT_INITIAL_ENV."""
    candidates = [repo] if repo == DEFAULT_REPO else [repo, DEFAULT_REPO]
    for candidate in candidates:
        config = get_config(candidate)
        if config and config.get("initial_env"):
            return str(config["initial_env"])
    return DEFAULT_INITIAL_ENV


def walk_promotion_chain(repo: str, start_env: Optional[str] = None) -> List[Dict[str, Any]]:
    """Follow the first downstream env from the initial env until the chain ends.

    Stops at an env with no targets record, an env with no downstream link,
    or an env already visited (a cycle).
    """
    steps: List[Dict[str, Any]] = []
    visited: Set[str] = set()
    current = start_env or initial_env(repo)
    while True:
        if current in visited:
            logger.warning("[WARNING] Circular promotion chain for repo=%s at env=%s", repo, current)
            break
        record = get_with_default(repo, current)
        if record is None:
            break
        visited.add(current)
        downstream = list(record.get("downstream_envs") or [])
        steps.append({
            "env": current,
            "targets": expand(record.get("targets") or []),
            "downstream_envs": downstream,
            "using_default": record.get("pk") == DEFAULT_REPO and repo != DEFAULT_REPO,
        })
        if not downstream:
            break
        current = downstream[0]
    return steps
