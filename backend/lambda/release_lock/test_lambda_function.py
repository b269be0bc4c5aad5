"""release_lock lambda tests.

Releasing is idempotent for the holder and refused for anyone else.
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
    "release_lock",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
release_lock = importlib.util.module_from_spec(_SPEC)
assert _SPEC and _SPEC.loader
sys.modules[_SPEC.name] = release_lock
_SPEC.loader.exec_module(release_lock)

from deployer_shared import aws_clients, lock_store
from deployer_shared.errors import LockNotHeldError
from fake_dynamodb import FakeDynamoDB


class ReleaseLockTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ddb = FakeDynamoDB()
        patcher = patch.object(aws_clients, "_ddb", self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)
        lock_store.acquire("dev", "myapp", "B1")

    def test_release_then_release_again(self) -> None:
        event = {"env": "dev", "repo": "myapp", "build_id": "B1"}
        self.assertEqual(release_lock.lambda_handler(event, None),
                         {"released": True, "message": "Lock released"})
        self.assertEqual(release_lock.lambda_handler(event, None),
                         {"released": True, "message": "Lock already released"})
        self.assertIsNone(lock_store.find("dev/myapp:LOCK"))

    def test_other_build_cannot_release(self) -> None:
        with self.assertRaises(LockNotHeldError):
            release_lock.lambda_handler({"env": "dev", "repo": "myapp", "build_id": "B2"}, None)
        self.assertEqual(lock_store.find("dev/myapp:LOCK")["build_id"], "B1")


if __name__ == "__main__":
    unittest.main()
