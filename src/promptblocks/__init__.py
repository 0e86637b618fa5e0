"""promptblocks: conditional context assembly for AI coding assistants.

Public API:
    - BlockStore: load named instruction blocks with trigger conditions
    - TaskContext: what the current task declares (tags, file path, text)
    - InclusionTracker: per-session record of already-emitted blocks
    - resolve() / resolve_async(): assemble the blocks due for a task
    - Session: store + tracker + delegate bound together
    - Delegates: InlineDelegate, AgentDelegate, HttpAgentDelegate, SearchDelegate
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from promptblocks import assemble as _assemble
from promptblocks.assemble import AssembledOutput, BlockError, Entry
from promptblocks.config import Config
from promptblocks.delegates import (
    AgentDelegate,
    Delegate,
    HttpAgentDelegate,
    InlineDelegate,
    SearchDelegate,
)
from promptblocks.documents import Document
from promptblocks.errors import (
    ConcurrencyViolation,
    ConfigurationError,
    InternalError,
    LoadError,
    PromptBlocksError,
    ResolutionCancelled,
    RetrievalError,
    UnsupportedTriggerError,
)
from promptblocks.retry import RetryPolicy
from promptblocks.session import Session
from promptblocks.store import Block, BlockStore, load
from promptblocks.task import TaskContext
from promptblocks.tracker import InclusionTracker
from promptblocks.triggers import matches

if TYPE_CHECKING:
    from collections.abc import Callable

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("promptblocks")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("promptblocks").addHandler(logging.NullHandler())

# Process-wide session state used when callers don't bring their own tracker.
_default_tracker = InclusionTracker()


def default_tracker() -> InclusionTracker:
    """Return the process-wide tracker used when none is passed."""
    return _default_tracker


def reset() -> None:
    """Reset the process-wide tracker."""
    _default_tracker.reset()


def resolve(
    task: TaskContext,
    store: BlockStore,
    tracker: InclusionTracker | None = None,
    *,
    delegate: Delegate | None = None,
    config: Config | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> AssembledOutput:
    """Assemble the blocks due for *task*.

    Args:
        task: The task being worked on.
        store: Blocks to choose from.
        tracker: Session state. Defaults to the process-wide tracker.
        delegate: Resolves ``delegated`` blocks. Defaults to inline bodies.
        config: Policies for triggers, concurrency, and cancellation.
        should_cancel: Polled at each block boundary.

    Example:
        store = BlockStore.load({"core": {"trigger": "always", "body": "X"}})
        out = resolve(TaskContext(), store)
        print(out.text)  # "X"
    """
    return _assemble.resolve(
        task,
        store,
        tracker if tracker is not None else _default_tracker,
        delegate=delegate,
        config=config,
        should_cancel=should_cancel,
    )


async def resolve_async(
    task: TaskContext,
    store: BlockStore,
    tracker: InclusionTracker | None = None,
    *,
    delegate: Delegate | None = None,
    config: Config | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> AssembledOutput:
    """Async counterpart of ``resolve``."""
    return await _assemble.resolve_async(
        task,
        store,
        tracker if tracker is not None else _default_tracker,
        delegate=delegate,
        config=config,
        should_cancel=should_cancel,
    )


__all__ = [
    "AgentDelegate",
    "AssembledOutput",
    "Block",
    "BlockError",
    "BlockStore",
    "ConcurrencyViolation",
    "Config",
    "ConfigurationError",
    "Delegate",
    "Document",
    "Entry",
    "HttpAgentDelegate",
    "InclusionTracker",
    "InlineDelegate",
    "InternalError",
    "LoadError",
    "PromptBlocksError",
    "ResolutionCancelled",
    "RetrievalError",
    "RetryPolicy",
    "SearchDelegate",
    "Session",
    "TaskContext",
    "UnsupportedTriggerError",
    "default_tracker",
    "load",
    "matches",
    "reset",
    "resolve",
    "resolve_async",
]
