"""promote_build lambda tests.

Promotion copies a SUCCESS build downstream; redeploy restarts it in place.
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
    "promote_build",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
promote_build = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = promote_build
_SPEC.loader.exec_module(promote_build)

from deployer_shared import aws_clients, build_store, orchestrator, target_store
from deployer_shared.errors import InputValidationError, PromotionError
from fake_dynamodb import FakeDynamoDB

STATE_MACHINE = "arn:aws:states:us-west-2:123456789012:stateMachine:deployer"
TARGETS = [{"account_ids": ["111"], "regions": ["us-east-1"]}]


class PromoteBuildTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ddb = FakeDynamoDB()
        self.sfn = MagicMock()
        self.sfn.start_execution.return_value = {"executionArn": "arn:exec:9"}
        patches = [
            patch.object(aws_clients, "_ddb", self.ddb),
            patch.object(aws_clients, "_sfn", self.sfn),
            patch.object(orchestrator, "STATE_MACHINE_ARN", STATE_MACHINE),
            patch.object(orchestrator, "ARTIFACT_BUCKET", "artifacts"),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.build = build_store.create(
            "myapp:worker", "dev", "S1", build_number="5", branch="main", version="5.abc",
            commit_hash="abc", template_name="worker", base_repo="myapp", stack_name="dev-myapp-worker",
        )

    def _succeed(self):
        build_store.update_status("myapp:worker", "dev", "S1", "SUCCESS")

    def test_promotes_to_each_downstream_env(self) -> None:
        self._succeed()
        target_store.put("myapp:worker", "dev", TARGETS, downstream_envs=["stg", "perf"])
        result = promote_build.lambda_handler({"action": "promote", "build_id": self.build["id"]}, None)
        self.assertEqual(len(result["promoted"]), 2)
        stg = build_store.find(result["promoted"][0])
        self.assertEqual((stg["env"], stg["status"], stg["version"]), ("stg", "PENDING", "5.abc"))
        self.assertEqual(stg["stack_name"], "stg-myapp-worker")
        self.assertEqual(build_store.find(result["promoted"][1])["env"], "perf")

    def test_default_downstream(self) -> None:
        self._succeed()
        target_store.put("$", "dev", TARGETS, downstream_envs=["prd"])
        result = promote_build.lambda_handler({"action": "PROMOTE", "build_id": self.build["id"]}, None)
        self.assertTrue(result["promoted"][0].startswith("myapp:worker/prd:"))

    def test_only_successful_builds_promote(self) -> None:
        target_store.put("myapp:worker", "dev", TARGETS, downstream_envs=["stg"])
        with self.assertRaises(PromotionError):
            promote_build.lambda_handler({"action": "promote", "build_id": self.build["id"]}, None)

    def test_no_downstream(self) -> None:
        self._succeed()
        target_store.put("myapp:worker", "dev", TARGETS)
        with self.assertRaises(PromotionError):
            promote_build.lambda_handler({"action": "promote", "build_id": self.build["id"]}, None)

    def test_redeploy_starts_new_build(self) -> None:
        result = promote_build.lambda_handler({"action": "redeploy", "build_id": self.build["id"]}, None)
        self.assertEqual(result["execution_arn"], "arn:exec:9")
        self.assertNotEqual(result["build_id"], self.build["id"])
        copy = build_store.find(result["build_id"])
        self.assertEqual((copy["env"], copy["status"], copy["stack_name"]), ("dev", "IN_PROGRESS", "dev-myapp-worker"))

    def test_unknown_build_and_action(self) -> None:
        with self.assertRaises(InputValidationError):
            promote_build.lambda_handler({"action": "promote", "build_id": "myapp/dev:missing"}, None)
        with self.assertRaises(InputValidationError):
            promote_build.lambda_handler({"action": "rollback", "build_id": self.build["id"]}, None)


if __name__ == "__main__":
    unittest.main()
