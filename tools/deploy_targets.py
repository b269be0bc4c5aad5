#!/usr/bin/env python3
"""Manage deployment targets, promotion chains and stuck locks.

Operator CLI over the targets and locks tables. Table names and the region
come from the same environment variables the Lambdas read (ENV,
DEPLOY_REGION, TARGETS_TABLE, LOCKS_TABLE).

Examples:
    deploy_targets.py set myapp dev --group 111111111111,222222222222:us-east-1,us-west-2 --downstream stg
    deploy_targets.py set '$' prd --group 333333333333:us-east-1
    deploy_targets.py set-initial-env myapp qa
    deploy_targets.py show myapp dev
    deploy_targets.py chain myapp
    deploy_targets.py unlock dev myapp
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from deployer_shared import lock_store, target_store
from deployer_shared.errors import DeployerError, InputValidationError


def _log(tag: str, message: str) -> None:
    print(f"[{tag}] {message}")


def _parse_csv(value: str) -> List[str]:
    if not value:
        return []
    return [token.strip() for token in value.split(",") if token.strip()]


def _parse_group(value: str) -> Dict[str, List[str]]:
    """"acct1,acct2:region1,region2" -> {account_ids, regions}."""
    accounts, sep, regions = value.partition(":")
    if not sep:
        raise InputValidationError(f"target group must look like ACCOUNTS:REGIONS, got {value!r}")
    return {"account_ids": _parse_csv(accounts), "regions": _parse_csv(regions)}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_set(args: argparse.Namespace) -> int:
    groups = [_parse_group(g) for g in args.group]
    record = target_store.put(args.repo, args.env, groups, _parse_csv(args.downstream))
    _log("SUCCESS", f"Stored targets for {args.repo}/{args.env}: "
                    f"{len(target_store.expand(record['targets']))} account/region pair(s)")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    if args.repo and args.env:
        record = target_store.get_with_default(args.repo, args.env)
        if record is None:
            _log("WARNING", f"No targets configured for {args.repo}/{args.env}")
            return 1
        _print_json(dict(record, expanded=target_store.expand(record.get("targets") or [])))
        return 0
    records = target_store.find_all()
    if args.repo:
        records = [r for r in records if r.get("pk") == args.repo]
    _print_json(records)
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    target_store.delete(args.repo, args.env)
    _log("SUCCESS", f"Deleted targets for {args.repo}/{args.env}")
    return 0


def cmd_set_initial_env(args: argparse.Namespace) -> int:
    target_store.put_config(args.repo, args.env)
    _log("SUCCESS", f"Initial environment for {args.repo} is now {args.env}")
    return 0


def cmd_chain(args: argparse.Namespace) -> int:
    steps = target_store.walk_promotion_chain(args.repo, args.start_env)
    if not steps:
        _log("WARNING", f"No promotion chain configured for {args.repo}")
        return 1
    if args.json:
        _print_json(steps)
        return 0
    for step in steps:
        source = " (default)" if step["using_default"] else ""
        _log("INFO", f"{step['env']}{source}: {len(step['targets'])} target(s) -> "
                     f"{', '.join(step['downstream_envs']) or '(end)'}")
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    lock = lock_store.lock_id(args.env, args.repo)
    current = lock_store.find(lock)
    if current is None:
        _log("INFO", f"Lock {lock} is not held")
        return 0
    if args.dry_run:
        _log("DRY-RUN", f"Would delete lock {lock} held by build {current.get('build_id')}")
        return 0
    lock_store.delete(lock)
    _log("SUCCESS", f"Deleted lock {lock} (was held by build {current.get('build_id')})")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage aws-deployer targets, promotion chains and deployment locks.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("set", help="Store the target groups of a repo in an environment.")
    p.add_argument("repo", help='Repository, "repo:template" for a sub-template, or "$" for defaults.')
    p.add_argument("env")
    p.add_argument("--group", action="append", required=True,
                   help="ACCOUNTS:REGIONS, comma separated on each side. Repeatable.")
    p.add_argument("--downstream", default="", help="Comma separated environments promoted to next.")
    p.set_defaults(func=cmd_set)

    p = sub.add_parser("show", help="Show one targets record, a repo's records, or all records.")
    p.add_argument("repo", nargs="?")
    p.add_argument("env", nargs="?")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("delete", help="Delete the targets record of a repo in an environment.")
    p.add_argument("repo")
    p.add_argument("env")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("set-initial-env", help="Set the environment new builds of a repo start in.")
    p.add_argument("repo")
    p.add_argument("env")
    p.set_defaults(func=cmd_set_initial_env)

    p = sub.add_parser("chain", help="Walk a repo's promotion chain from its initial environment.")
    p.add_argument("repo")
    p.add_argument("--from", dest="start_env", default=None)
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_chain)

    p = sub.add_parser("unlock", help="Force-release the deployment lock of a repo in an environment.")
    p.add_argument("env")
    p.add_argument("repo")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_unlock)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except DeployerError as exc:
        _log("ERROR", str(exc))
        return 1
    except (BotoCoreError, ClientError) as exc:
        _log("ERROR", f"AWS request failed: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
