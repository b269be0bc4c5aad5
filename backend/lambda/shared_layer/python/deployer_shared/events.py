"""deployer_shared.events — Step input parsing shared by every Lambda.

Workflow definitions written by hand tend to mix ``build_id`` and
``buildId``; every step accepts both spellings (and the legacy aliases
listed in ``_ALIASES``) and always answers in snake_case.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from deployer_shared.errors import InputValidationError

__all__ = [
    "_field",
    "_parse_artifact_location",
    "_parse_targets",
    "_require_fields",
]

_ALIASES: Dict[str, Tuple[str, ...]] = {
    "build_id": ("build_id", "buildId", "sk"),
    "execution_arn": ("execution_arn", "executionArn", "executionHandle", "execution_handle"),
    "retry_count": ("retry_count", "retryCount"),
    "stack_set_name": ("stack_set_name", "stackSetName", "unitName", "unit_name"),
    "operation_id": ("operation_id", "operationId"),
    "account_id": ("account_id", "accountId"),
    "artifact_location": ("artifact_location", "artifactLocation"),
    "s3_bucket": ("s3_bucket", "s3Bucket"),
    "s3_key": ("s3_key", "s3Key"),
    "template_name": ("template_name", "templateName"),
    "error_msg": ("error_msg", "errorMsg", "error_message"),
}


def _field(event: Dict[str, Any], name: str, default: Any = None) -> Any:
    """Look up ``name`` in a step input, honoring known aliases."""
    for key in _ALIASES.get(name, (name,)):
        value = event.get(key)
        if value not in (None, ""):
            return value
    return default


def _require_fields(event: Dict[str, Any], *names: str) -> Dict[str, str]:
    """Return the named fields as stripped strings, or raise InputValidationError."""
    out: Dict[str, str] = {}
    missing: List[str] = []
    for name in names:
        value = _field(event, name)
        if value is None or not str(value).strip():
            missing.append(name)
            continue
        out[name] = str(value).strip()
    if missing:
        raise InputValidationError(f"{', '.join(missing)} is required but was empty")
    return out


def _parse_targets(event: Dict[str, Any]) -> List[Dict[str, str]]:
    """Normalize ``targets`` to ``[{account_id, region}]``, dropping exact duplicates."""
    raw = event.get("targets")
    if not isinstance(raw, list):
        raise InputValidationError("targets must be a list of {account_id, region}")
    out: List[Dict[str, str]] = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise InputValidationError(f"invalid target entry: {entry!r}")
        account_id = str(_field(entry, "account_id") or "").strip()
        region = str(entry.get("region") or "").strip()
        if not account_id or not region:
            raise InputValidationError(f"target entry missing account_id or region: {entry!r}")
        if (account_id, region) in seen:
            continue
        seen.add((account_id, region))
        out.append({"account_id": account_id, "region": region})
    return out


def _parse_artifact_location(event: Dict[str, Any]) -> Tuple[str, str]:
    """Return (bucket, key prefix) from ``s3_bucket``/``s3_key`` or an ``s3://`` location."""
    bucket: Optional[str] = _field(event, "s3_bucket")
    key: Optional[str] = _field(event, "s3_key")
    if bucket and key:
        return str(bucket), str(key).strip("/")

    location = _field(event, "artifact_location")
    if location:
        location = str(location)
        if location.startswith("s3://"):
            bucket, _, key = location[len("s3://"):].partition("/")
            if bucket and key:
                return bucket, key.strip("/")
        raise InputValidationError(f"artifact_location must look like s3://bucket/prefix: {location}")
    raise InputValidationError("s3_bucket and s3_key (or artifact_location) are required")
