"""deployer_shared.status — Status values and the tables that combine them.

Three independent dimensions feed the completion and outcome decisions:

    * StackSet operation status     (unit level)
    * Stack instance status         (CURRENT / OUTDATED / INOPERABLE)
    * Stack instance detailed status (PENDING / RUNNING / SUCCEEDED / ...)

Each lookup below is a plain table so every combination can be read (and
tested) without tracing nested conditionals.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

__all__ = [
    "BuildStatus",
    "DeploymentStatus",
    "TERMINAL_BUILD_STATUSES",
    "TERMINAL_DEPLOYMENT_STATUSES",
    "TERMINAL_OPERATION_STATUSES",
    "aggregate_verdict",
    "deployment_status_for",
    "instance_is_terminal",
    "is_complete",
    "operation_is_terminal",
    "recorded_status_for",
]


class BuildStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DeploymentStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


TERMINAL_BUILD_STATUSES = frozenset({BuildStatus.SUCCESS, BuildStatus.FAILED})
TERMINAL_DEPLOYMENT_STATUSES = frozenset({DeploymentStatus.SUCCESS, DeploymentStatus.FAILED})

# StackSet operation: RUNNING | SUCCEEDED | FAILED | STOPPING | STOPPED | QUEUED
TERMINAL_OPERATION_STATUSES = frozenset({"SUCCEEDED", "FAILED", "STOPPED"})

# Detailed instance status. Everything not listed here (SUCCEEDED, FAILED,
# CANCELLED, INOPERABLE, SKIPPED_SUSPENDED_ACCOUNT, FAILED_IMPORT, and an
# empty value) is terminal.
IN_FLIGHT_DETAILED_STATUSES = frozenset({"PENDING", "RUNNING"})

# Instance status -> deployment record status, once the instance is no
# longer in flight.
_INSTANCE_STATUS_TABLE: Dict[str, DeploymentStatus] = {
    "CURRENT": DeploymentStatus.SUCCESS,
    "OUTDATED": DeploymentStatus.FAILED,
    "FAILED": DeploymentStatus.FAILED,
}

# Instance statuses whose stack events are worth fetching for diagnostics.
DIAGNOSTIC_INSTANCE_STATUSES = frozenset({"OUTDATED", "FAILED", "INOPERABLE"})


def operation_is_terminal(operation_status: Optional[str]) -> bool:
    return (operation_status or "") in TERMINAL_OPERATION_STATUSES


def instance_is_terminal(detailed_status: Optional[str]) -> bool:
    return (detailed_status or "") not in IN_FLIGHT_DETAILED_STATUSES


def deployment_status_for(instance_status: Optional[str], detailed_status: Optional[str]) -> DeploymentStatus:
    """Map a provider instance status pair to a deployment record status.

    An instance still PENDING/RUNNING is IN_PROGRESS whatever its coarse
    status says (an update in flight reports OUTDATED until it lands).
    """
    if not instance_is_terminal(detailed_status):
        return DeploymentStatus.IN_PROGRESS
    return _INSTANCE_STATUS_TABLE.get(instance_status or "", DeploymentStatus.IN_PROGRESS)


def recorded_status_for(
    operation_status: Optional[str],
    instance_status: Optional[str],
    detailed_status: Optional[str],
) -> DeploymentStatus:
    """Status to write to the deployment ledger for one poll.

    Until the operation itself is terminal every target stays IN_PROGRESS:
    an instance the operation has not reached yet still reports the outcome
    of the previous operation, and a terminal record cannot be rewritten.
    """
    if not operation_is_terminal(operation_status):
        return DeploymentStatus.IN_PROGRESS
    return deployment_status_for(instance_status, detailed_status)


def is_complete(operation_status: Optional[str], detailed_statuses: Iterable[Optional[str]]) -> bool:
    """True when the operation is terminal AND every instance is terminal.

    ``None`` in ``detailed_statuses`` marks an instance whose status could
    not be read; it counts as still in progress.
    """
    if not operation_is_terminal(operation_status):
        return False
    for detailed in detailed_statuses:
        if detailed is None or not instance_is_terminal(detailed):
            return False
    return True


def aggregate_verdict(records: Iterable[Dict[str, Any]]) -> Tuple[BuildStatus, bool, List[str], Dict[str, int], str]:
    """Reduce deployment records to (build_status, partial_success, failed_keys, summary, error_msg).

    | failed            | verdict                               |
    |-------------------|---------------------------------------|
    | total == 0        | FAILED, nothing was deployed          |
    | failed == total   | FAILED                                |
    | 0 < failed < total| FAILED, partial_success               |
    | failed == 0       | SUCCESS                               |
    """
    total = succeeded = failed = 0
    failed_keys: List[str] = []
    for record in records:
        total += 1
        status = record.get("status")
        if status == DeploymentStatus.SUCCESS:
            succeeded += 1
        elif status == DeploymentStatus.FAILED:
            failed += 1
            failed_keys.append(f"{record.get('account_id')}/{record.get('region')}")

    summary = {"total": total, "succeeded": succeeded, "failed": failed}
    if total == 0:
        return BuildStatus.FAILED, False, failed_keys, summary, "No deployments recorded for build"
    if failed == total:
        return BuildStatus.FAILED, False, failed_keys, summary, f"All {total} deployments failed"
    if failed > 0:
        return BuildStatus.FAILED, True, failed_keys, summary, f"{failed} of {total} deployments failed"
    return BuildStatus.SUCCESS, False, failed_keys, summary, ""
