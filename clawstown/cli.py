#!/usr/bin/env python3
"""Clawstown CLI entrypoint."""

import argparse
import logging
import signal
import sys
from pathlib import Path

from clawstown.agents import CommandCapability, load_agents_config
from clawstown.agents.agents_config import missing_binaries
from clawstown.lib.config import SwarmConfig, load_swarm_config, require_repo
from clawstown.lib.constants import (
    LABEL_BLOCKED,
    LABEL_IN_PROGRESS,
    LABEL_TASK,
    LABELS,
)
from clawstown.lib.errors import ClawstownError, ConfigError
from clawstown.lib.markers import render_marker
from clawstown.lib.types import ChangeState
from clawstown.protocol.claim import ClaimResolver, ClaimResult
from clawstown.protocol.merge_gate import MergeGate, MergeResult, readiness
from clawstown.store import MemoryStore, RetryingStore
from clawstown.store.github import GitHubStore, check_gh_available
from clawstown.workflow.loop import Worker

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = "swarm.env"


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_config(args) -> SwarmConfig:
    env_file = Path(args.env_file) if args.env_file else Path(DEFAULT_ENV_FILE)
    return load_swarm_config(env_file if env_file.exists() or args.env_file else None)


def build_store(config: SwarmConfig, kind: str = "github"):
    """Store wrapped in bounded retries.

    "memory" is a fresh, private store that dies with the process; only
    `run` offers it, for dry runs of a single worker.
    """
    if kind == "memory":
        inner = MemoryStore()
    else:
        ok, error = check_gh_available()
        if not ok:
            raise ConfigError(error)
        inner = GitHubStore(require_repo(config), config.base_branch, config.label_prefix)
    return RetryingStore(inner, attempts=config.store_retries, base_delay=config.retry_delay)


def cmd_run(args, config: SwarmConfig) -> int:
    agents = load_agents_config(config.workdir)
    missing = missing_binaries(agents)
    for binary, stages in missing.items():
        print(f"WARNING: '{binary}' not found on PATH (needed by: {', '.join(stages)})")

    store = build_store(config, args.store)
    if args.store == "memory":
        logger.warning("[WORKER] dry run: work lives in a private in-memory store and is lost on exit")
    capability = CommandCapability(config.workdir, agents, base_branch=config.base_branch)
    worker = Worker(config, store, capability)

    def request_stop(signum, _frame):
        logger.info(f"[WORKER] received signal {signum}, stopping after current step")
        worker.stop()

    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)

    if args.once:
        worker.run_cycle()
    else:
        worker.run(max_steps=args.max_steps)
    return 0


def cmd_labels(args, config: SwarmConfig) -> int:
    ok, error = check_gh_available()
    if not ok:
        print(f"ERROR: {error}")
        return 1
    store = GitHubStore(require_repo(config), config.base_branch, config.label_prefix)
    store.setup_labels()
    print(f"Labels ready: {', '.join(config.label_prefix + name for name in LABELS)}")
    return 0


def cmd_status(args, config: SwarmConfig) -> int:
    store = build_store(config)
    items = store.list_items(present=[LABEL_TASK])
    print(f"Open task items: {len(items)}")
    for label in LABELS:
        if label == LABEL_TASK:
            continue
        count = sum(1 for item in items if item.has(label))
        print(f"  {label:12} {count}")
    free = sum(1 for item in items if item.is_free and not item.has(LABEL_BLOCKED))
    print(f"  {'claimable':12} {free}")

    changes = store.list_changes(state=ChangeState.OPEN)
    print(f"\nOpen changes: {len(changes)}")
    for change in sorted(changes, key=lambda c: (len(c.id), c.id)):
        _, reason = readiness(change, config.quorum)
        print(f"  #{change.id} {change.title} [{change.author}, {change.status.value}] - {reason}")

    blocked = [item for item in items if item.has(LABEL_BLOCKED) or (item.has(LABEL_IN_PROGRESS) and item.assignees)]
    if blocked:
        print("\nHeld items:")
        for item in blocked:
            state = LABEL_BLOCKED if item.has(LABEL_BLOCKED) else LABEL_IN_PROGRESS
            print(f"  #{item.id} {item.title} [{state}, {item.assignee or 'unassigned'}]")
    return 0


def cmd_claim(args, config: SwarmConfig) -> int:
    store = build_store(config)
    resolver = ClaimResolver(store, settle_delay=config.settle_delay)
    result = resolver.try_claim(args.item, config.agent_id)
    print(f"{config.agent_id}: {result.value}")
    return 0 if result == ClaimResult.CLAIMED else 1


def cmd_merge(args, config: SwarmConfig) -> int:
    store = build_store(config)
    gate = MergeGate(store, quorum=config.quorum)
    result = gate.try_merge(args.change, invoker=config.agent_id)
    print(f"Change #{args.change}: {result.value}")
    return 0 if result == MergeResult.MERGED else 1


def cmd_unblock(args, config: SwarmConfig) -> int:
    """Release a crashed or blocked claim so the item becomes claimable again."""
    store = build_store(config)
    item = store.get_item(args.item)
    ClaimResolver(store).release(item.id, item.assignees, labels_to_remove=(LABEL_IN_PROGRESS, LABEL_BLOCKED))
    note = args.reason or "Released for re-claiming."
    store.append_comment(
        item.id,
        f"{render_marker('unblock', worker=config.agent_id)}\n{note}",
        author=config.agent_id,
    )
    released = ", ".join(item.assignees) or "nobody"
    print(f"Item #{item.id} unblocked (released: {released})")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog='clawstown', description='Self-organizing agent swarm worker')
    parser.add_argument('--env-file', help=f'Settings file (default: ./{DEFAULT_ENV_FILE} if present)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # clawstown run
    p_run = subparsers.add_parser('run', help='Run the worker loop')
    p_run.add_argument('--once', action='store_true', help='Run a single pass of the loop')
    p_run.add_argument('--max-steps', type=int, help='Stop after this many state-machine steps')
    p_run.add_argument(
        '--store', choices=['github', 'memory'], default='github',
        help='Work store backend (memory: private throwaway store for dry runs)',
    )
    p_run.set_defaults(func=cmd_run)

    # clawstown labels
    p_labels = subparsers.add_parser('labels', help='Create the swarm labels on GitHub')
    p_labels.set_defaults(func=cmd_labels)

    # clawstown status
    p_status = subparsers.add_parser('status', help='Show work item and change counts')
    p_status.set_defaults(func=cmd_status)

    # clawstown claim
    p_claim = subparsers.add_parser('claim', help='Claim a work item as this agent')
    p_claim.add_argument('item', help='Work item id')
    p_claim.set_defaults(func=cmd_claim)

    # clawstown merge
    p_merge = subparsers.add_parser('merge', help='Run the merge gate on a change')
    p_merge.add_argument('change', help='Change id')
    p_merge.set_defaults(func=cmd_merge)

    # clawstown unblock
    p_unblock = subparsers.add_parser('unblock', help='Clear in-progress/blocked and assignees on an item')
    p_unblock.add_argument('item', help='Work item id')
    p_unblock.add_argument('--reason', help='Comment to leave on the item')
    p_unblock.set_defaults(func=cmd_unblock)

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = get_config(args)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    try:
        return args.func(args, config)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2
    except ClawstownError as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
