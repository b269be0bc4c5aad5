"""test_layer.py — Unit tests for deployer_shared helper modules.

Run from shared_layer directory:
    python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from deployer_shared import status
from deployer_shared.aws_clients import _get_cfn, _get_ddb
from deployer_shared.config import _require
from deployer_shared.errors import (
    DeployerConfigError,
    InputValidationError,
    LockRetriesExhaustedError,
    OperationInProgressError,
    RetryableError,
)
from deployer_shared.events import _field, _parse_artifact_location, _parse_targets, _require_fields
from deployer_shared.serialization import (
    _deserialize,
    _emit_structured_observability,
    _new_build_sk,
    _now_z,
    _serialize,
    _serialize_item,
    _unix_now,
)


class SerializationTests(unittest.TestCase):
    def test_serialize_string(self):
        self.assertEqual(_serialize("hello"), {"S": "hello"})

    def test_serialize_float(self):
        self.assertEqual(_serialize(3.14)["N"], "3.14")

    def test_serialize_item_drops_none(self):
        item = _serialize_item({"pk": "a", "error_msg": None, "ttl": 5})
        self.assertEqual(item, {"pk": {"S": "a"}, "ttl": {"N": "5"}})

    def test_deserialize_item(self):
        result = _deserialize({"name": {"S": "test"}, "count": {"N": "42"}, "ratio": {"N": "0.5"}})
        self.assertEqual(result["name"], "test")
        self.assertEqual(result["count"], 42)
        self.assertEqual(result["ratio"], 0.5)

    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_unix_now(self):
        import time

        self.assertAlmostEqual(_unix_now(), int(time.time()), delta=2)

    def test_new_build_sk_is_unique_and_sortable(self):
        a, b = _new_build_sk(), _new_build_sk()
        self.assertNotEqual(a, b)
        self.assertRegex(a, r"^\d{8}T\d{6}Z-[0-9a-f]{10}$")
        self.assertLessEqual(a[:16], b[:16])

    def test_observability_line_is_sorted_json(self):
        with self.assertLogs("deployer_shared.serialization", level="INFO") as logs:
            _emit_structured_observability(component="c", event="e", repo="r", extra={"n": 1})
        line = logs.records[0].getMessage()
        self.assertTrue(line.startswith("[OBSERVABILITY] "))
        payload = json.loads(line[len("[OBSERVABILITY] "):])
        self.assertEqual(payload["component"], "c")
        self.assertEqual(payload["n"], 1)
        self.assertEqual(list(payload), sorted(payload))


class EventsTests(unittest.TestCase):
    def test_field_accepts_camel_case_aliases(self):
        event = {"buildId": "B1", "executionHandle": "arn:1", "unitName": "dev-app"}
        self.assertEqual(_field(event, "build_id"), "B1")
        self.assertEqual(_field(event, "execution_arn"), "arn:1")
        self.assertEqual(_field(event, "stack_set_name"), "dev-app")

    def test_field_prefers_snake_case(self):
        self.assertEqual(_field({"build_id": "A", "sk": "B"}, "build_id"), "A")

    def test_require_fields_reports_all_missing(self):
        with self.assertRaises(InputValidationError) as ctx:
            _require_fields({"env": "dev", "repo": "  "}, "env", "repo", "build_id")
        self.assertIn("repo, build_id", str(ctx.exception))

    def test_parse_targets_normalizes_and_dedupes(self):
        targets = _parse_targets({"targets": [
            {"accountId": "111", "region": "us-east-1"},
            {"account_id": "111", "region": "us-east-1"},
            {"account_id": 222, "region": "eu-west-1"},
        ]})
        self.assertEqual(targets, [
            {"account_id": "111", "region": "us-east-1"},
            {"account_id": "222", "region": "eu-west-1"},
        ])

    def test_parse_targets_rejects_incomplete_entry(self):
        with self.assertRaises(InputValidationError):
            _parse_targets({"targets": [{"account_id": "111"}]})
        with self.assertRaises(InputValidationError):
            _parse_targets({})

    def test_artifact_location_forms(self):
        self.assertEqual(
            _parse_artifact_location({"s3_bucket": "b", "s3_key": "app/main/1.abc/"}),
            ("b", "app/main/1.abc"),
        )
        self.assertEqual(
            _parse_artifact_location({"artifactLocation": "s3://b/app/main/1.abc"}),
            ("b", "app/main/1.abc"),
        )
        with self.assertRaises(InputValidationError):
            _parse_artifact_location({"artifact_location": "https://b/app"})


class StatusTableTests(unittest.TestCase):
    def test_complete_when_operation_and_instances_terminal(self):
        self.assertTrue(status.is_complete("SUCCEEDED", ["SUCCEEDED", "FAILED", "CANCELLED"]))

    def test_incomplete_while_any_instance_in_flight(self):
        for op in ("SUCCEEDED", "FAILED", "STOPPED", "RUNNING"):
            self.assertFalse(status.is_complete(op, ["SUCCEEDED", "RUNNING"]))
            self.assertFalse(status.is_complete(op, ["PENDING"]))

    def test_incomplete_while_operation_running(self):
        self.assertFalse(status.is_complete("RUNNING", ["SUCCEEDED"]))
        self.assertFalse(status.is_complete("STOPPING", ["SUCCEEDED"]))

    def test_unread_instance_keeps_poll_incomplete(self):
        self.assertFalse(status.is_complete("SUCCEEDED", ["SUCCEEDED", None]))

    def test_empty_detailed_status_is_terminal(self):
        self.assertTrue(status.instance_is_terminal(""))
        self.assertTrue(status.is_complete("SUCCEEDED", [""]))

    def test_deployment_status_table(self):
        cases = {
            ("CURRENT", "SUCCEEDED"): "SUCCESS",
            ("OUTDATED", "FAILED"): "FAILED",
            ("FAILED", ""): "FAILED",
            ("INOPERABLE", "INOPERABLE"): "IN_PROGRESS",
            ("OUTDATED", "RUNNING"): "IN_PROGRESS",
            ("CURRENT", "PENDING"): "IN_PROGRESS",
        }
        for (inst, detailed), expected in cases.items():
            self.assertEqual(status.deployment_status_for(inst, detailed).value, expected, (inst, detailed))

    def test_recorded_status_waits_for_terminal_operation(self):
        for op in ("RUNNING", "QUEUED", "STOPPING", ""):
            for inst, detailed in (("CURRENT", "SUCCEEDED"), ("OUTDATED", "FAILED")):
                self.assertEqual(status.recorded_status_for(op, inst, detailed).value, "IN_PROGRESS", (op, inst))
        self.assertEqual(status.recorded_status_for("FAILED", "CURRENT", "SUCCEEDED").value, "SUCCESS")
        self.assertEqual(status.recorded_status_for("SUCCEEDED", "OUTDATED", "FAILED").value, "FAILED")
        self.assertEqual(status.recorded_status_for("STOPPED", "OUTDATED", "RUNNING").value, "IN_PROGRESS")

    def test_aggregate_partial_failure(self):
        records = [
            {"status": "SUCCESS", "account_id": "1", "region": "r"},
            {"status": "SUCCESS", "account_id": "2", "region": "r"},
            {"status": "FAILED", "account_id": "3", "region": "r"},
            {"status": "IN_PROGRESS", "account_id": "4", "region": "r"},
        ]
        build_status, partial, failed, summary, msg = status.aggregate_verdict(records)
        self.assertEqual(build_status, status.BuildStatus.FAILED)
        self.assertTrue(partial)
        self.assertEqual(failed, ["3/r"])
        self.assertEqual(summary, {"total": 4, "succeeded": 2, "failed": 1})
        self.assertEqual(msg, "1 of 4 deployments failed")

    def test_aggregate_all_failed_and_all_succeeded(self):
        failed = status.aggregate_verdict([{"status": "FAILED"}, {"status": "FAILED"}])
        self.assertEqual((failed[0], failed[1], failed[4]), (status.BuildStatus.FAILED, False, "All 2 deployments failed"))
        ok = status.aggregate_verdict([{"status": "SUCCESS"}])
        self.assertEqual((ok[0], ok[1], ok[4]), (status.BuildStatus.SUCCESS, False, ""))

    def test_aggregate_without_records_fails(self):
        self.assertEqual(status.aggregate_verdict([])[0], status.BuildStatus.FAILED)


class ErrorsTests(unittest.TestCase):
    def test_operation_in_progress_is_retryable(self):
        exc = OperationInProgressError("dev-app", "abc-123")
        self.assertIsInstance(exc, RetryableError)
        self.assertIn("abc-123", str(exc))

    def test_retries_exhausted_message(self):
        self.assertEqual(
            str(LockRetriesExhaustedError(10, "B1")),
            "failed to acquire lock after 10 retries (held by build B1)",
        )

    def test_require_config(self):
        self.assertEqual(_require("X", "v"), "v")
        with self.assertRaises(DeployerConfigError):
            _require("STATE_MACHINE_ARN", "")


class AwsClientTests(unittest.TestCase):
    @patch("deployer_shared.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        import deployer_shared.aws_clients as clients

        clients._ddb = None  # Reset singleton
        mock_boto3.client.return_value = MagicMock()

        self.assertIs(_get_ddb(), _get_ddb())
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args[0][0], "dynamodb")

        clients._ddb = None  # Clean up

    @patch("deployer_shared.aws_clients.boto3")
    def test_get_cfn_uses_region_override(self, mock_boto3):
        import deployer_shared.aws_clients as clients

        clients._cfn = None
        _get_cfn("eu-west-1")
        self.assertEqual(mock_boto3.client.call_args[1]["region_name"], "eu-west-1")
        clients._cfn = None


if __name__ == "__main__":
    unittest.main()
