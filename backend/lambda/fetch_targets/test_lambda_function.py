"""fetch_targets lambda tests.

Targets come from the repo record, then the "$" default record.
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
    "fetch_targets",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
fetch_targets = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = fetch_targets
_SPEC.loader.exec_module(fetch_targets)

from deployer_shared import aws_clients, target_store
from deployer_shared.errors import NoTargetsConfiguredError
from fake_dynamodb import FakeDynamoDB


class FetchTargetsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ddb = FakeDynamoDB()
        patcher = patch.object(aws_clients, "_ddb", self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_repo_targets_are_expanded(self) -> None:
        target_store.put("myapp", "dev", [
            {"account_ids": ["111", "222"], "regions": ["us-east-1"]},
            {"account_ids": ["111"], "regions": ["us-east-1", "eu-west-1"]},
        ])
        result = fetch_targets.lambda_handler({"env": "dev", "repo": "myapp"}, None)
        self.assertEqual(result["count"], 3)
        self.assertEqual(result["targets"], [
            {"account_id": "111", "region": "us-east-1"},
            {"account_id": "222", "region": "us-east-1"},
            {"account_id": "111", "region": "eu-west-1"},
        ])

    def test_default_targets_are_used(self) -> None:
        target_store.put("$", "dev", [{"account_ids": ["999"], "regions": ["us-west-2"]}])
        result = fetch_targets.lambda_handler({"env": "dev", "repo": "other"}, None)
        self.assertEqual(result["targets"], [{"account_id": "999", "region": "us-west-2"}])

    def test_no_targets_is_an_error(self) -> None:
        with self.assertRaises(NoTargetsConfiguredError) as ctx:
            fetch_targets.lambda_handler({"env": "prd", "repo": "myapp"}, None)
        self.assertIn("repo=myapp, env=prd", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
