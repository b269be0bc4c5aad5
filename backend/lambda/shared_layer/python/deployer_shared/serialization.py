"""deployer_shared.serialization — DynamoDB serialization and timestamp helpers.

Wraps TypeSerializer/TypeDeserializer, provides the UTC timestamp formats
stored on every record, generates time-ordered build identifiers, and emits
the structured observability log line.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import secrets
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

__all__ = [
    "_deserialize",
    "_emit_structured_observability",
    "_new_build_sk",
    "_now_z",
    "_serialize",
    "_serialize_item",
    "_unix_now",
    "_utc_now_compact",
]

logger = logging.getLogger(__name__)

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a plain dict into a DynamoDB item, dropping None values."""
    return {k: _serialize(v) for k, v in item.items() if v is not None}


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    out: Dict[str, Any] = {}
    for k, v in item.items():
        val = _DESER.deserialize(v)
        if isinstance(val, Decimal):
            val = int(val) if val == int(val) else float(val)
        out[k] = val
    return out


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utc_now_compact() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _unix_now() -> int:
    """Current Unix epoch as integer."""
    return int(time.time())


def _new_build_sk() -> str:
    """Time-ordered, collision-resistant sort key for a new build record.

    The compact UTC prefix keeps lexical order equal to creation order, so
    a descending query on the build partition returns the newest first.
    """
    return f"{_utc_now_compact()}-{secrets.token_hex(5)}"


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    repo: Optional[str] = None,
    env: Optional[str] = None,
    build_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "repo": str(repo or ""),
        "env": str(env or ""),
        "build_id": str(build_id or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
