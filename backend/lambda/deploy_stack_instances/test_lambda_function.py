"""deploy_stack_instances lambda tests.

The step normalizes targets and hands them to the StackSet driver.
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
    "deploy_stack_instances",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
deploy_stack_instances = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = deploy_stack_instances
_SPEC.loader.exec_module(deploy_stack_instances)

from deployer_shared import stackset
from deployer_shared.errors import InputValidationError


class DeployStackInstancesTests(unittest.TestCase):
    def test_normalizes_and_forwards(self) -> None:
        event = {
            "stackSetName": "dev-myapp",
            "buildId": "S1",
            "targets": [
                {"account_id": "111", "region": "us-east-1"},
                {"accountId": "111", "region": "us-east-1"},
                {"account_id": 222, "region": "eu-west-1"},
            ],
        }
        expected = {"operation_id": "op-1", "action": "CREATE", "account_ids": ["111", "222"],
                    "regions": ["us-east-1", "eu-west-1"]}
        with patch.object(stackset, "provision_instances", return_value=expected) as call:
            result = deploy_stack_instances.lambda_handler(event, None)
        self.assertEqual(result, expected)
        call.assert_called_once_with(
            "dev-myapp",
            [{"account_id": "111", "region": "us-east-1"}, {"account_id": "222", "region": "eu-west-1"}],
            build_id="S1",
        )

    def test_requires_stack_set_name(self) -> None:
        with self.assertRaises(InputValidationError):
            deploy_stack_instances.lambda_handler({"targets": []}, None)

    def test_rejects_incomplete_target(self) -> None:
        with self.assertRaises(InputValidationError):
            deploy_stack_instances.lambda_handler(
                {"stack_set_name": "dev-myapp", "targets": [{"account_id": "111"}]}, None,
            )


if __name__ == "__main__":
    unittest.main()
