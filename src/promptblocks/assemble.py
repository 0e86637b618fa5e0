"""Assembly: filter, claim, resolve, and commit blocks for one task.

Per-call phases::

    Filtering  -> evaluate triggers against the task (store order)
    Claiming   -> atomically reserve blocks not yet seen in the session
    Resolving  -> body text, or the delegate for ``delegated`` blocks
    Committing -> mark successes seen, release failures

Per-block retrieval failures are collected into the output, never raised.
The tracker is only updated for blocks whose text is actually returned.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Literal

from promptblocks.config import Config
from promptblocks.delegates import InlineDelegate
from promptblocks.errors import (
    ConfigurationError,
    ResolutionCancelled,
    RetrievalError,
    UnsupportedTriggerError,
)
from promptblocks.triggers import matches

if TYPE_CHECKING:
    from collections.abc import Callable

    from promptblocks.delegates import Delegate
    from promptblocks.store import Block, BlockStore
    from promptblocks.task import TaskContext
    from promptblocks.tracker import InclusionTracker

logger = logging.getLogger(__name__)

Status = Literal["ok", "partial", "error", "empty", "cancelled"]


@dataclass(frozen=True, slots=True)
class Entry:
    """One included block and its resolved text."""

    name: str
    text: str


@dataclass(frozen=True, slots=True)
class BlockError:
    """A named omission: the block matched but its text could not be produced."""

    name: str
    message: str
    hint: str | None = None
    retryable: bool | None = None
    status_code: int | None = None

    @classmethod
    def from_exception(cls, name: str, exc: RetrievalError) -> BlockError:
        return cls(
            name=name,
            message=str(exc),
            hint=exc.hint,
            retryable=exc.retryable,
            status_code=exc.status_code,
        )


@dataclass(frozen=True)
class AssembledOutput:
    """Result of one resolve call; immutable once returned.

    ``status`` is ``"ok"`` when nothing failed, ``"partial"`` when some
    blocks failed, ``"error"`` when every included candidate failed,
    ``"empty"`` when no block was due, and ``"cancelled"`` for a partial
    cancellation.
    """

    entries: tuple[Entry, ...] = ()
    errors: tuple[BlockError, ...] = ()
    #: Matched but skipped because the session already emitted them.
    already_seen: tuple[str, ...] = ()
    #: Skipped because their trigger kind is unsupported.
    unsupported: tuple[str, ...] = ()
    status: Status = "empty"
    separator: str = "\n\n"

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(e.name for e in self.entries)

    @property
    def text(self) -> str:
        """The assembled document: entry texts joined by ``separator``."""
        return self.separator.join(e.text for e in self.entries)

    def as_dict(self) -> dict[str, Any]:
        """JSON-ready view for CLIs and harnesses."""
        return {
            "status": self.status,
            "text": self.text,
            "entries": [{"name": e.name, "text": e.text} for e in self.entries],
            "errors": [
                {
                    "name": err.name,
                    "message": err.message,
                    "hint": err.hint,
                    "retryable": err.retryable,
                    "status_code": err.status_code,
                }
                for err in self.errors
            ],
            "already_seen": list(self.already_seen),
            "unsupported": list(self.unsupported),
        }


class _Cancelled:
    """Marker for blocks skipped after cancellation was requested."""


_CANCELLED = _Cancelled()


def filter_blocks(
    task: TaskContext, store: BlockStore, config: Config
) -> tuple[list[Block], list[str]]:
    """Return ``(matched_blocks, unsupported_names)`` in store order.

    Raises:
        UnsupportedTriggerError: Only when the policy is ``"raise"``.
    """
    matched: list[Block] = []
    unsupported: list[str] = []
    for block in store.all_blocks():
        try:
            hit = matches(block.trigger, task, block=block.name)
        except UnsupportedTriggerError as e:
            if config.unsupported_trigger_policy == "raise":
                raise
            logger.warning("Skipping block %r: %s", block.name, e)
            unsupported.append(block.name)
            continue
        if hit:
            matched.append(block)
    return matched, unsupported


async def resolve_async(
    task: TaskContext,
    store: BlockStore,
    tracker: InclusionTracker,
    *,
    delegate: Delegate | None = None,
    config: Config | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> AssembledOutput:
    """Assemble the context for *task*, updating *tracker*.

    Args:
        task: The task being worked on.
        store: Blocks to choose from.
        tracker: Session inclusion state; shared across calls.
        delegate: Resolves ``delegated`` blocks. Defaults to inline bodies.
        config: Policies (unsupported triggers, concurrency, cancellation).
        should_cancel: Polled at each block boundary.

    Returns:
        AssembledOutput with entries in store order and per-block errors.

    Raises:
        UnsupportedTriggerError: When the policy is ``"raise"``.
        ResolutionCancelled: When cancelled with ``cancel_mode="discard"``.
    """
    cfg = config or Config()
    hook: Delegate = delegate or InlineDelegate()

    matched, unsupported = filter_blocks(task, store, cfg)

    claimed: list[Block] = []
    already_seen: list[str] = []
    for block in matched:
        if tracker.claim(block.name):
            claimed.append(block)
        else:
            already_seen.append(block.name)

    logger.debug(
        "Resolve: %d matched, %d claimed, %d already seen, %d unsupported",
        len(matched),
        len(claimed),
        len(already_seen),
        len(unsupported),
    )

    sem = asyncio.Semaphore(cfg.retrieval_concurrency)
    cancel_requested = False

    def _cancel_now() -> bool:
        nonlocal cancel_requested
        if not cancel_requested and should_cancel is not None and should_cancel():
            logger.debug("Cancellation requested")
            cancel_requested = True
        return cancel_requested

    async def _resolve_one(block: Block) -> str | RetrievalError | _Cancelled:
        if _cancel_now():
            return _CANCELLED
        if not block.delegated:
            return block.body
        async with sem:
            if _cancel_now():
                return _CANCELLED
            try:
                text = await hook.retrieve(block, task)
            except asyncio.CancelledError:
                raise
            except RetrievalError as e:
                if e.block is None:
                    e.block = block.name
                return e
            except Exception as e:
                return _as_retrieval_error(block, e)
        if not isinstance(text, str):
            return RetrievalError(
                f"Delegate returned {type(text).__name__} for block {block.name!r}",
                hint="Delegates must return the block text as a str.",
                block=block.name,
                retryable=False,
            )
        return text

    committed: set[str] = set()
    try:
        # Collect every outcome before acting so no claim is left dangling.
        results = await asyncio.gather(*(_resolve_one(b) for b in claimed))

        if cancel_requested and cfg.cancel_mode == "discard":
            raise ResolutionCancelled(
                f"Resolve cancelled; discarded {len(claimed)} claimed block(s)",
                hint="Use cancel_mode='partial' to keep blocks resolved before cancellation.",
            )

        entries: list[Entry] = []
        errors: list[BlockError] = []
        for block, result in zip(claimed, results, strict=True):
            if isinstance(result, str):
                tracker.commit(block.name)
                committed.add(block.name)
                entries.append(Entry(name=block.name, text=result))
            elif isinstance(result, RetrievalError):
                logger.warning("Retrieval failed for block %r: %s", block.name, result)
                errors.append(BlockError.from_exception(block.name, result))
    finally:
        for block in claimed:
            if block.name not in committed:
                tracker.release(block.name)

    status: Status
    if cancel_requested:
        status = "cancelled"
    elif errors:
        status = "partial" if entries else "error"
    elif entries:
        status = "ok"
    else:
        status = "empty"

    return AssembledOutput(
        entries=tuple(entries),
        errors=tuple(errors),
        already_seen=tuple(already_seen),
        unsupported=tuple(unsupported),
        status=status,
        separator=cfg.separator,
    )


def resolve(
    task: TaskContext,
    store: BlockStore,
    tracker: InclusionTracker,
    *,
    delegate: Delegate | None = None,
    config: Config | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> AssembledOutput:
    """Synchronous wrapper around ``resolve_async``.

    Safe to call from many threads sharing one tracker.

    Raises:
        ConfigurationError: If called from a running event loop.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(
            resolve_async(
                task,
                store,
                tracker,
                delegate=delegate,
                config=config,
                should_cancel=should_cancel,
            )
        )
    raise ConfigurationError(
        "resolve() cannot run inside an event loop",
        hint="Use 'await resolve_async(...)' from async code.",
    )


def _as_retrieval_error(block: Block, exc: Exception) -> RetrievalError:
    wrapped = RetrievalError(
        f"Delegate failed for block {block.name!r}: {type(exc).__name__}: {exc}",
        hint=getattr(exc, "hint", None),
        block=block.name,
        retryable=False,
    )
    wrapped.__cause__ = exc
    return wrapped
