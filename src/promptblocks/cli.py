"""Command-line entry point.

Examples:
- promptblocks list rules/
- promptblocks assemble rules/ --tag liveview --path lib/app_web/live/page.ex
- promptblocks assemble rules/ --tag testing --state .promptblocks/state.json --json
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import TYPE_CHECKING

from promptblocks.assemble import resolve
from promptblocks.config import Config
from promptblocks.delegates import HttpAgentDelegate, SearchDelegate
from promptblocks.errors import PromptBlocksError
from promptblocks.store import BlockStore
from promptblocks.task import TaskContext
from promptblocks.tracker import InclusionTracker

if TYPE_CHECKING:
    from collections.abc import Sequence

    from promptblocks.delegates import Delegate

logger = logging.getLogger("promptblocks.cli")

EXIT_OK = 0
EXIT_LOAD_ERROR = 1
EXIT_BLOCK_ERRORS = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="promptblocks",
        description="Assemble conditional context blocks for a task.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ls = sub.add_parser("list", help="List the blocks in a directory.")
    ls.add_argument("blocks_dir", nargs="?", type=Path, help="Directory of block files.")

    asm = sub.add_parser("assemble", help="Assemble the blocks due for a task.")
    asm.add_argument("blocks_dir", nargs="?", type=Path, help="Directory of block files.")
    asm.add_argument(
        "--tag", dest="tags", action="append", default=[], help="Intent tag (repeatable)."
    )
    asm.add_argument("--path", dest="file_path", help="Path of the file being edited.")
    asm.add_argument("--description", default="", help="Free-text task description.")
    asm.add_argument(
        "--state", type=Path, help="Tracker state file; carries the session across runs."
    )
    asm.add_argument(
        "--reset", action="store_true", help="Start a new session (clears --state)."
    )
    asm.add_argument("--json", action="store_true", help="Print the output as JSON.")
    asm.add_argument(
        "--strict-triggers",
        action="store_true",
        help="Abort on unsupported trigger kinds instead of skipping them.",
    )
    delegation = asm.add_mutually_exclusive_group()
    delegation.add_argument(
        "--agent-url", help="Resolve delegated blocks via this HTTP agent."
    )
    delegation.add_argument(
        "--corpus", type=Path, help="Resolve delegated blocks by searching this directory."
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        overrides: dict[str, object] = {}
        if getattr(args, "strict_triggers", False):
            overrides["unsupported_trigger_policy"] = "raise"
        if args.blocks_dir is not None:
            overrides["blocks_dir"] = args.blocks_dir
        config = Config.from_env(**overrides)
        if config.blocks_dir is None:
            parser.error("blocks_dir is required (or set PROMPTBLOCKS_BLOCKS_DIR)")
        store = BlockStore.load_directory(config.blocks_dir)
    except PromptBlocksError as e:
        _report(e)
        return EXIT_LOAD_ERROR

    if args.command == "list":
        for block in store:
            flag = " [delegated]" if block.delegated else ""
            print(f"{block.name}\t{block.trigger.describe()}{flag}")
        return EXIT_OK

    return _assemble(args, store, config)


def _assemble(args: argparse.Namespace, store: BlockStore, config: Config) -> int:
    try:
        if args.state is not None and not args.reset:
            tracker = InclusionTracker.from_file(args.state)
        else:
            tracker = InclusionTracker()
        delegate = _delegate(args, config)
        task = TaskContext.create(
            tags=args.tags, file_path=args.file_path, description=args.description
        )
        output = resolve(task, store, tracker, delegate=delegate, config=config)
    except PromptBlocksError as e:
        _report(e)
        return EXIT_LOAD_ERROR

    logger.debug(
        "Assembled %d block(s), status=%s", len(output.entries), output.status
    )
    # Nothing is printed unless the state recording it was saved.
    if args.state is not None:
        try:
            tracker.save(args.state)
        except OSError as e:
            _report(
                PromptBlocksError(
                    f"Failed to save tracker state to {args.state}: {e}",
                    hint="Check that the --state location is writable.",
                )
            )
            return EXIT_LOAD_ERROR

    if args.json:
        print(json.dumps(output.as_dict(), indent=2, ensure_ascii=False))
    elif output.text:
        print(output.text)

    for err in output.errors:
        print(f"error: block {err.name!r}: {err.message}", file=sys.stderr)
    return EXIT_BLOCK_ERRORS if output.errors else EXIT_OK


def _delegate(args: argparse.Namespace, config: Config) -> Delegate | None:
    if args.agent_url:
        return HttpAgentDelegate(
            args.agent_url, timeout_s=config.delegate_timeout_s, retry=config.retry
        )
    if args.corpus is not None:
        return SearchDelegate.from_directory(args.corpus)
    return None


def _report(error: PromptBlocksError) -> None:
    print(f"error: {error}", file=sys.stderr)
    if error.hint:
        print(f"hint: {error.hint}", file=sys.stderr)


__all__ = ["build_parser", "main"]
