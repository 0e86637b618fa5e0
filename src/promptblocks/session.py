"""Session: one store, one tracker, one delegate, one config.

Where a session begins and ends is the caller's choice: one per process,
per conversation, or per file edit. ``reset()`` starts a new one in place.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from promptblocks.assemble import resolve, resolve_async
from promptblocks.config import Config
from promptblocks.errors import ConfigurationError
from promptblocks.store import BlockStore
from promptblocks.task import TaskContext
from promptblocks.tracker import InclusionTracker

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from os import PathLike
    from pathlib import Path

    from promptblocks.assemble import AssembledOutput
    from promptblocks.delegates import Delegate


class Session:
    """Resolve tasks against a store with duplicate suppression.

    Example:
        session = Session.from_directory("rules")
        first = session.resolve(tags=["liveview"])
        again = session.resolve(tags=["liveview"])  # already-seen blocks omitted
        session.reset()
    """

    def __init__(
        self,
        store: BlockStore,
        *,
        tracker: InclusionTracker | None = None,
        delegate: Delegate | None = None,
        config: Config | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker if tracker is not None else InclusionTracker()
        self.delegate = delegate
        self.config = config or Config()

    @classmethod
    def from_directory(
        cls,
        path: str | Path | None = None,
        *,
        tracker: InclusionTracker | None = None,
        delegate: Delegate | None = None,
        config: Config | None = None,
    ) -> Session:
        """Load blocks from *path*, or from ``config.blocks_dir`` when omitted."""
        cfg = config or Config()
        root = path if path is not None else cfg.blocks_dir
        if root is None:
            raise ConfigurationError(
                "No blocks directory given",
                hint="Pass a path or set PROMPTBLOCKS_BLOCKS_DIR.",
            )
        store = BlockStore.load_directory(root)
        return cls(store, tracker=tracker, delegate=delegate, config=cfg)

    def resolve(
        self,
        task: TaskContext | None = None,
        *,
        tags: Iterable[str] = (),
        file_path: str | PathLike[str] | None = None,
        description: str = "",
        should_cancel: Callable[[], bool] | None = None,
    ) -> AssembledOutput:
        """Resolve *task* (or one built from keywords) within this session."""
        return resolve(
            self._task(task, tags, file_path, description),
            self.store,
            self.tracker,
            delegate=self.delegate,
            config=self.config,
            should_cancel=should_cancel,
        )

    async def resolve_async(
        self,
        task: TaskContext | None = None,
        *,
        tags: Iterable[str] = (),
        file_path: str | PathLike[str] | None = None,
        description: str = "",
        should_cancel: Callable[[], bool] | None = None,
    ) -> AssembledOutput:
        """Async counterpart of ``resolve``."""
        return await resolve_async(
            self._task(task, tags, file_path, description),
            self.store,
            self.tracker,
            delegate=self.delegate,
            config=self.config,
            should_cancel=should_cancel,
        )

    def reset(self) -> None:
        self.tracker.reset()

    @property
    def seen(self) -> frozenset[str]:
        return self.tracker.seen

    @staticmethod
    def _task(
        task: TaskContext | None,
        tags: Iterable[str],
        file_path: str | PathLike[str] | None,
        description: str,
    ) -> TaskContext:
        if task is None:
            return TaskContext.create(tags=tags, file_path=file_path, description=description)
        if tags or file_path is not None or description:
            raise ConfigurationError(
                "Pass either a TaskContext or keyword fields, not both",
                hint="Use session.resolve(task) or session.resolve(tags=[...]).",
            )
        return task
