"""create_stackset lambda tests.

Failures other than a busy StackSet mark the build FAILED before re-raising.
"""

from __future__ import annotations

import importlib.util
import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer"))

_SPEC = importlib.util.spec_from_file_location(
    "create_stackset",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
create_stackset = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = create_stackset
_SPEC.loader.exec_module(create_stackset)

from botocore.exceptions import ClientError

from deployer_shared import aws_clients, build_store, stackset
from deployer_shared.errors import InputValidationError, OperationInProgressError
from fake_dynamodb import FakeDynamoDB


class CreateStacksetTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ddb = FakeDynamoDB()
        patcher = patch.object(aws_clients, "_ddb", self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)
        build_store.create("myapp:worker", "dev", "S1")
        self.event = {
            "env": "dev", "repo": "myapp:worker", "build_id": "S1",
            "s3_bucket": "artifacts", "s3_key": "myapp/main/3.abc", "template_name": "worker",
        }

    def test_passes_artifact_location(self) -> None:
        with patch.object(stackset, "create_or_update",
                          return_value={"stack_set_name": "dev-myapp-worker", "operation": "CREATE"}) as call:
            result = create_stackset.lambda_handler(self.event, None)
        self.assertEqual(result["operation"], "CREATE")
        call.assert_called_once_with("dev", "myapp:worker", "artifacts", "myapp/main/3.abc", template_name="worker")

    def test_accepts_s3_uri(self) -> None:
        event = {"env": "dev", "repo": "myapp", "buildId": "S1", "artifactLocation": "s3://artifacts/myapp/main/3.abc/"}
        with patch.object(stackset, "create_or_update", return_value={}) as call:
            create_stackset.lambda_handler(event, None)
        call.assert_called_once_with("dev", "myapp", "artifacts", "myapp/main/3.abc", template_name=None)

    def test_failure_marks_build_failed(self) -> None:
        error = ClientError({"Error": {"Code": "ValidationError", "Message": "Template format error"}}, "CreateStackSet")
        with patch.object(stackset, "create_or_update", side_effect=error):
            with self.assertRaises(ClientError):
                create_stackset.lambda_handler(self.event, None)
        build = build_store.get("myapp:worker", "dev", "S1")
        self.assertEqual(build["status"], "FAILED")
        self.assertIn("Template format error", build["error_msg"])

    def test_missing_artifacts_marks_build_failed(self) -> None:
        event = {k: v for k, v in self.event.items() if k != "s3_key"}
        with self.assertRaises(InputValidationError):
            create_stackset.lambda_handler(event, None)
        self.assertEqual(build_store.get("myapp:worker", "dev", "S1")["status"], "FAILED")

    def test_busy_stack_set_leaves_build_alone(self) -> None:
        with patch.object(stackset, "create_or_update", side_effect=OperationInProgressError("dev-myapp", "op-1")):
            with self.assertRaises(OperationInProgressError):
                create_stackset.lambda_handler(self.event, None)
        self.assertEqual(build_store.get("myapp:worker", "dev", "S1")["status"], "PENDING")


if __name__ == "__main__":
    unittest.main()
