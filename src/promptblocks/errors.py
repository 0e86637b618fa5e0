"""Exception hierarchy for promptblocks."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class PromptBlocksError(Exception):
    """Base exception for all promptblocks errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(PromptBlocksError):
    """Configuration validation or resolution failed."""


class LoadError(PromptBlocksError):
    """A block store could not be built from its documents.

    Fatal at startup: a store that failed to load is never usable.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        source: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.source = source


class UnsupportedTriggerError(PromptBlocksError):
    """A block carries a trigger kind the evaluator does not understand."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        block: str | None = None,
        kind: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.block = block
        self.kind = kind


class RetrievalError(PromptBlocksError):
    """A delegate failed to produce text for a block.

    Delegates attach retry metadata so the retry loop can decide without
    brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        block: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.block = block
        self.retryable = retryable
        self.status_code = status_code


class ResolutionCancelled(PromptBlocksError):
    """A resolve call was cancelled and its partial output discarded."""


class InternalError(PromptBlocksError):
    """A promptblocks internal error (bug) or invariant violation."""


class ConcurrencyViolation(InternalError):
    """Tracker bookkeeping was observed in an impossible state.

    Never surfaces when tracker access goes through ``claim``/``commit``.
    """


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* then every exception linked from it, each exactly once.

    Follows both explicit causes (``raise ... from``) and implicit context.
    """
    visited: set[int] = set()
    pending = deque([exc])
    while pending:
        current = pending.popleft()
        if id(current) in visited:
            continue
        visited.add(id(current))
        yield current
        pending.extend(
            linked
            for linked in (current.__cause__, current.__context__)
            if linked is not None
        )
