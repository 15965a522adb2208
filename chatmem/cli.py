#!/usr/bin/env python3
"""
chatmem Command Line Interface

Inspect and maintain the memory store from a shell. Every command prints JSON
to stdout; logs go to stderr.

Usage:
    chatmem detect "Mail me at ada@example.com"
    chatmem stats --user alice
    chatmem recall --user alice --conversation c1 --message "where do I work?"
    chatmem clear --user alice
    chatmem prune --user alice --conversation c1
    chatmem errors
    chatmem errors --user alice
    chatmem errors --resolve err_0123456789ab
    chatmem --config args/memory.yaml stats --user alice
"""

import argparse
import asyncio
import json
import sys
from datetime import timedelta

from chatmem.logging_config import setup_logging
from chatmem.memory.artifacts import detect
from chatmem.memory.config import load_config
from chatmem.memory.context_builder import MemoryContextBuilder
from chatmem.memory.models import MemoryTier
from chatmem.memory.store import MemoryStore


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _with_store(args, action):
    config = load_config(args.config)
    store = MemoryStore.from_config(config)
    await store.initialize()
    try:
        return await action(store, config)
    finally:
        await store.close()


def cmd_detect(args):
    """Run artifact detection on TEXT."""
    _print(detect(args.text).to_dict())
    return 0


def cmd_stats(args):
    async def run(store, config):
        stats = await store.get_stats(args.user)
        _print(stats.to_dict())
        return 0

    return asyncio.run(_with_store(args, run))


def cmd_recall(args):
    async def run(store, config):
        memories = await store.get_relevant(args.conversation, args.user, args.message, args.max)
        builder = MemoryContextBuilder.from_config(config.context)
        _print({
            "count": len(memories),
            "memories": [m.to_dict() for m in memories],
            "context": builder.build_compact_context(memories, language=args.language),
        })
        return 0

    return asyncio.run(_with_store(args, run))


def cmd_clear(args):
    async def run(store, config):
        deleted = await store.clear_owner(args.user)
        _print({"user_id": args.user, "deleted": {tier.value: n for tier, n in deleted.items()}})
        return 0

    return asyncio.run(_with_store(args, run))


def cmd_prune(args):
    """Prune the conversation tier when --conversation is given, else the user tier."""

    async def run(store, config):
        if args.conversation:
            tier = MemoryTier.CONVERSATION
            deleted = await store.prune(tier, args.user, args.conversation)
        else:
            tier = MemoryTier.USER
            deleted = await store.prune(tier, args.user)
        _print({"tier": tier.value, "user_id": args.user, "deleted": deleted})
        return 0

    return asyncio.run(_with_store(args, run))


def cmd_errors(args):
    """Error ledger: stats by default, or list, resolve or clear entries."""

    async def run(store, config):
        if args.resolve:
            resolved = await store.errors.resolve_error(args.resolve)
            _print({"error_id": args.resolve, "resolved": resolved})
            return 0 if resolved else 1
        if args.clear_older_than is not None:
            deleted = await store.errors.clear_old_errors(timedelta(days=args.clear_older_than))
            _print({"deleted": deleted})
            return 0
        if args.user or args.conversation:
            if args.conversation:
                entries = await store.errors.get_conversation_errors(args.conversation, args.limit)
            else:
                entries = await store.errors.get_user_errors(args.user, args.limit)
            _print({"count": len(entries), "errors": [e.to_dict() for e in entries]})
            return 0
        stats = await store.errors.get_error_stats(timedelta(hours=args.hours))
        _print(stats.to_dict())
        return 0

    return asyncio.run(_with_store(args, run))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatmem",
        description="chatmem - Multilingual conversational memory",
    )
    parser.add_argument(
        "--config", default=None, help="Path to memory config (default: args/memory.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    detect_parser = subparsers.add_parser("detect", help="Detect high-value artifacts in text")
    detect_parser.add_argument("text", help="Text to scan")
    detect_parser.set_defaults(func=cmd_detect)

    stats_parser = subparsers.add_parser("stats", help="Show memory statistics for a user")
    stats_parser.add_argument("--user", required=True, help="User id")
    stats_parser.set_defaults(func=cmd_stats)

    recall_parser = subparsers.add_parser("recall", help="Retrieve memories relevant to a message")
    recall_parser.add_argument("--user", required=True, help="User id")
    recall_parser.add_argument("--conversation", required=True, help="Conversation id")
    recall_parser.add_argument("--message", required=True, help="Current message")
    recall_parser.add_argument("--max", type=int, default=None, help="Maximum memories to return")
    recall_parser.add_argument("--language", default=None, help="Language for the context block (e.g. en, tr)")
    recall_parser.set_defaults(func=cmd_recall)

    clear_parser = subparsers.add_parser("clear", help="Delete every memory of a user")
    clear_parser.add_argument("--user", required=True, help="User id")
    clear_parser.set_defaults(func=cmd_clear)

    prune_parser = subparsers.add_parser("prune", help="Remove expired and over-cap memories")
    prune_parser.add_argument("--user", required=True, help="User id")
    prune_parser.add_argument("--conversation", default=None, help="Conversation id (omit for the user tier)")
    prune_parser.set_defaults(func=cmd_prune)

    errors_parser = subparsers.add_parser("errors", help="Inspect and maintain the error ledger")
    errors_target = errors_parser.add_mutually_exclusive_group()
    errors_target.add_argument("--user", default=None, help="List errors of a user")
    errors_target.add_argument("--conversation", default=None, help="List errors of a conversation")
    errors_target.add_argument("--resolve", default=None, metavar="ERROR_ID", help="Mark an error resolved")
    errors_target.add_argument(
        "--clear-older-than", type=int, default=None, metavar="DAYS", help="Delete errors older than DAYS"
    )
    errors_parser.add_argument("--limit", type=int, default=None, help="Maximum errors to list")
    errors_parser.add_argument("--hours", type=int, default=24, help="Stats window in hours (default: 24)")
    errors_parser.set_defaults(func=cmd_errors)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
