"""check_stackset_status lambda tests.

Polling records per-target progress through the StackSet driver.
"""

from __future__ import annotations

import importlib.util
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer"))

_SPEC = importlib.util.spec_from_file_location(
    "check_stackset_status",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
check_stackset_status = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = check_stackset_status
_SPEC.loader.exec_module(check_stackset_status)

from deployer_shared import aws_clients, deployment_store
from deployer_shared.errors import InputValidationError
from fake_dynamodb import FakeDynamoDB


class CheckStacksetStatusTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ddb = FakeDynamoDB()
        self.cfn = MagicMock()
        for attr, value in (("_ddb", self.ddb), ("_cfn", self.cfn)):
            patcher = patch.object(aws_clients, attr, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        deployment_store.create("dev", "myapp", "111", "us-east-1", "S1")
        self.event = {
            "env": "dev", "repo": "myapp", "stack_set_name": "dev-myapp", "operation_id": "op-1",
            "build_id": "S1", "targets": [{"account_id": "111", "region": "us-east-1"}],
        }

    def test_reports_completion(self) -> None:
        self.cfn.describe_stack_set_operation.return_value = {"StackSetOperation": {"Status": "SUCCEEDED"}}
        self.cfn.describe_stack_instance.return_value = {"StackInstance": {
            "Status": "CURRENT", "StackInstanceStatus": {"DetailedStatus": "SUCCEEDED"}, "StackId": "arn:stack/1",
        }}
        result = check_stackset_status.lambda_handler(self.event, None)
        self.assertTrue(result["is_complete"])
        self.assertFalse(result["has_failures"])
        self.assertEqual(result["deployments"][0]["deployment_status"], "SUCCESS")
        record = deployment_store.get("dev", "myapp", "111", "us-east-1")
        self.assertEqual((record["status"], record["operation_id"]), ("SUCCESS", "op-1"))
        self.assertIn("finished_at", record)

    def test_running_operation(self) -> None:
        self.cfn.describe_stack_set_operation.return_value = {"StackSetOperation": {"Status": "RUNNING"}}
        self.cfn.describe_stack_instance.return_value = {"StackInstance": {
            "Status": "OUTDATED", "StackInstanceStatus": {"DetailedStatus": "PENDING"},
        }}
        result = check_stackset_status.lambda_handler(self.event, None)
        self.assertFalse(result["is_complete"])
        self.assertEqual(deployment_store.get("dev", "myapp", "111", "us-east-1")["status"], "IN_PROGRESS")

    def test_requires_operation_id(self) -> None:
        event = {k: v for k, v in self.event.items() if k != "operation_id"}
        with self.assertRaises(InputValidationError):
            check_stackset_status.lambda_handler(event, None)


if __name__ == "__main__":
    unittest.main()
