"""fake_dynamodb.py — In-memory stand-in for the low-level DynamoDB client.

Supports the calls and the expression subset the deployer_shared stores
issue: get/put/delete/update_item, query, scan and transact_write_items;
conditions made of attribute_exists / attribute_not_exists / comparisons
joined by AND and OR (no parentheses), and "SET a = :a, #b = :b" updates.

Usage in tests:

    fake = FakeDynamoDB()
    with patch.object(aws_clients, "_ddb", fake):
        ...
"""

from __future__ import annotations

import copy
import re
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

_SER = TypeSerializer()
_DESER = TypeDeserializer()

_EXISTS_RE = re.compile(r"^(attribute_exists|attribute_not_exists)\((#?\w+)\)$")
_COMPARE_RE = re.compile(r"^(#?\w+)\s*(=|<>|<=|>=|<|>)\s*(:\w+)$")
_ASSIGN_RE = re.compile(r"^(#?\w+)\s*=\s*(:\w+)$")

_COMPARATORS = {
    "=": lambda a, b: a == b,
    "<>": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


def _plain(item: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: _DESER.deserialize(v) for k, v in (item or {}).items()}


def _wire(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _SER.serialize(v) for k, v in item.items()}


def _conditional_failure(operation: str, old: Optional[Dict[str, Any]], return_old: bool) -> ClientError:
    response: Dict[str, Any] = {
        "Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"},
    }
    if return_old and old:
        response["Item"] = copy.deepcopy(old)
    return ClientError(response, operation)


class FakeDynamoDB:
    def __init__(self) -> None:
        self.tables: Dict[str, Dict[Tuple[str, str], Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.errors: Dict[str, Exception] = {}

    # -- helpers ------------------------------------------------------------

    def _record(self, operation: str, kwargs: Dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        exc = self.errors.pop(operation, None)
        if exc is not None:
            raise exc

    def _table(self, name: str) -> Dict[Tuple[str, str], Dict[str, Any]]:
        return self.tables.setdefault(name, {})

    @staticmethod
    def _key_of(item: Dict[str, Any]) -> Tuple[str, str]:
        plain = _plain({"pk": item["pk"], "sk": item["sk"]})
        return plain["pk"], plain["sk"]

    @staticmethod
    def _matches(expression: Optional[str], item: Optional[Dict[str, Any]], kwargs: Dict[str, Any]) -> bool:
        if not expression:
            return True
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = _plain(kwargs.get("ExpressionAttributeValues"))
        plain = _plain(item)

        def atom(text: str) -> bool:
            text = text.strip()
            match = _EXISTS_RE.match(text)
            if match:
                present = names.get(match.group(2), match.group(2)) in plain
                return present if match.group(1) == "attribute_exists" else not present
            match = _COMPARE_RE.match(text)
            if not match:
                raise AssertionError(f"unsupported expression: {text!r}")
            attr = names.get(match.group(1), match.group(1))
            if attr not in plain:
                return False
            return _COMPARATORS[match.group(2)](plain[attr], values[match.group(3)])

        return any(
            all(atom(part) for part in clause.split(" AND "))
            for clause in expression.split(" OR ")
        )

    @staticmethod
    def _apply_update(item: Dict[str, Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
        expression = kwargs["UpdateExpression"].strip()
        if not expression.startswith("SET "):
            raise AssertionError(f"unsupported update expression: {expression!r}")
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        updated = dict(item)
        for assignment in expression[len("SET "):].split(","):
            match = _ASSIGN_RE.match(assignment.strip())
            if not match:
                raise AssertionError(f"unsupported assignment: {assignment!r}")
            updated[names.get(match.group(1), match.group(1))] = copy.deepcopy(values[match.group(2)])
        return updated

    # -- single item --------------------------------------------------------

    def get_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("get_item", kwargs)
        item = self._table(kwargs["TableName"]).get(self._key_of(kwargs["Key"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("put_item", kwargs)
        table = self._table(kwargs["TableName"])
        key = self._key_of(kwargs["Item"])
        old = table.get(key)
        if not self._matches(kwargs.get("ConditionExpression"), old, kwargs):
            raise _conditional_failure(
                "PutItem", old, kwargs.get("ReturnValuesOnConditionCheckFailure") == "ALL_OLD",
            )
        table[key] = copy.deepcopy(kwargs["Item"])
        if kwargs.get("ReturnValues") == "ALL_OLD" and old:
            return {"Attributes": old}
        return {}

    def delete_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("delete_item", kwargs)
        table = self._table(kwargs["TableName"])
        key = self._key_of(kwargs["Key"])
        old = table.get(key)
        if not self._matches(kwargs.get("ConditionExpression"), old, kwargs):
            raise _conditional_failure(
                "DeleteItem", old, kwargs.get("ReturnValuesOnConditionCheckFailure") == "ALL_OLD",
            )
        table.pop(key, None)
        if kwargs.get("ReturnValues") == "ALL_OLD" and old:
            return {"Attributes": old}
        return {}

    def update_item(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("update_item", kwargs)
        table = self._table(kwargs["TableName"])
        key = self._key_of(kwargs["Key"])
        old = table.get(key)
        if not self._matches(kwargs.get("ConditionExpression"), old, kwargs):
            raise _conditional_failure(
                "UpdateItem", old, kwargs.get("ReturnValuesOnConditionCheckFailure") == "ALL_OLD",
            )
        table[key] = self._apply_update(old or copy.deepcopy(kwargs["Key"]), kwargs)
        return {}

    # -- multi item ---------------------------------------------------------

    def query(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("query", kwargs)
        items = [
            item for _, item in sorted(self._table(kwargs["TableName"]).items())
            if self._matches(kwargs["KeyConditionExpression"], item, kwargs)
            and self._matches(kwargs.get("FilterExpression"), item, kwargs)
        ]
        if kwargs.get("ScanIndexForward") is False:
            items.reverse()
        return {"Items": copy.deepcopy(items), "Count": len(items)}

    def scan(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("scan", kwargs)
        items = [item for _, item in sorted(self._table(kwargs["TableName"]).items())]
        return {"Items": copy.deepcopy(items), "Count": len(items)}

    def transact_write_items(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("transact_write_items", kwargs)
        reasons: List[Dict[str, str]] = []
        for entry in kwargs["TransactItems"]:
            (op, params), = entry.items()
            table = self._table(params["TableName"])
            key = self._key_of(params["Item"] if op == "Put" else params["Key"])
            ok = self._matches(params.get("ConditionExpression"), table.get(key), params)
            reasons.append({"Code": "None" if ok else "ConditionalCheckFailed"})
        if any(r["Code"] != "None" for r in reasons):
            raise ClientError(
                {
                    "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
                    "CancellationReasons": reasons,
                },
                "TransactWriteItems",
            )
        for entry in kwargs["TransactItems"]:
            (op, params), = entry.items()
            table = self._table(params["TableName"])
            if op == "Put":
                table[self._key_of(params["Item"])] = copy.deepcopy(params["Item"])
            elif op == "Update":
                key = self._key_of(params["Key"])
                table[key] = self._apply_update(table.get(key) or copy.deepcopy(params["Key"]), params)
            elif op == "Delete":
                table.pop(self._key_of(params["Key"]), None)
        return {}

    # -- test conveniences --------------------------------------------------

    def items(self, table: str) -> List[Dict[str, Any]]:
        """Deserialized items of ``table`` in key order."""
        return [_plain(item) for _, item in sorted(self._table(table).items())]

    def item(self, table: str, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        raw = self._table(table).get((pk, sk))
        return _plain(raw) if raw else None

    def put_plain(self, table: str, item: Dict[str, Any]) -> None:
        self._table(table)[(item["pk"], item["sk"])] = _wire(item)
