"""deployer_shared.errors — Exception taxonomy for deployer steps.

Lambda handlers let these propagate; the workflow engine matches on the
exception class name in its Retry/Catch policy, so ``RetryableError`` and
its subclasses are the only ones worth retrying.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "BuildNotFoundError",
    "DeployerConfigError",
    "DeployerError",
    "InputValidationError",
    "LockNotHeldError",
    "LockRetriesExhaustedError",
    "NoTargetsConfiguredError",
    "OperationInProgressError",
    "PromotionError",
    "RetryableError",
]


class DeployerError(Exception):
    """Base class for all deployer errors."""


class InputValidationError(DeployerError):
    """A required identifier is missing or malformed. Never retried."""


class DeployerConfigError(DeployerError):
    """Required environment configuration is missing."""


class RetryableError(DeployerError):
    """Transient provider condition; the engine should back off and re-invoke."""


class OperationInProgressError(RetryableError):
    """A StackSet operation is already running for the deployment unit."""

    def __init__(self, stack_set_name: str, operation_id: Optional[str] = None):
        self.stack_set_name = stack_set_name
        self.operation_id = operation_id
        detail = f" (operation {operation_id})" if operation_id else ""
        super().__init__(f"StackSet {stack_set_name} has an operation in progress{detail}, retry later")


class LockNotHeldError(DeployerError):
    """Release attempted by a build that does not hold the lock."""

    def __init__(self, build_id: str, holder: str):
        self.build_id = build_id
        self.holder = holder
        super().__init__(f"lock not held by build {build_id} (held by {holder})")


class LockRetriesExhaustedError(DeployerError):
    """The lock stayed held by another build for the whole retry budget."""

    def __init__(self, retries: int, holder: str):
        self.retries = retries
        self.holder = holder
        super().__init__(f"failed to acquire lock after {retries} retries (held by build {holder})")


class NoTargetsConfiguredError(DeployerError):
    """Neither repository-specific nor default targets exist."""

    def __init__(self, repo: str, env: str):
        self.repo = repo
        self.env = env
        super().__init__(
            f"no deployment targets configured for repo={repo}, env={env} (and no default targets found)"
        )


class BuildNotFoundError(DeployerError):
    """A status transition referenced a build that does not exist."""


class PromotionError(DeployerError):
    """A build cannot be promoted (wrong status or no downstream environments)."""
