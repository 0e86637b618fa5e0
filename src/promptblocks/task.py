"""TaskContext: what the caller is working on right now."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from promptblocks.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from os import PathLike


def normalize_tag(tag: str) -> str:
    """Tags compare case-insensitively and ignore surrounding whitespace."""
    return tag.strip().lower()


def normalize_path(path: str | PathLike[str]) -> str:
    """Return *path* as a POSIX-style relative string for glob matching."""
    text = str(path).replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text


@dataclass(frozen=True, slots=True)
class TaskContext:
    """Per-invocation description of the task; read-only."""

    intent_tags: frozenset[str] = field(default_factory=frozenset)
    file_path: str | None = None
    description: str = ""

    @classmethod
    def create(
        cls,
        *,
        tags: Iterable[str] = (),
        file_path: str | PathLike[str] | None = None,
        description: str = "",
    ) -> TaskContext:
        """Build a TaskContext with normalized tags and path.

        Args:
            tags: Declared intent tags. Blank tags are dropped.
            file_path: Path of the file being edited, if any.
            description: Free-text task description.
        """
        if isinstance(tags, str):
            raise ConfigurationError(
                "tags must be an iterable of strings, not a single string",
                hint="Pass tags=['liveview'] instead of tags='liveview'.",
            )
        normalized = frozenset(
            t for t in (normalize_tag(str(tag)) for tag in tags) if t
        )
        path = normalize_path(file_path) if file_path is not None else None
        return cls(
            intent_tags=normalized,
            file_path=path or None,
            description=description,
        )

    def as_dict(self) -> dict[str, Any]:
        """JSON-ready view, used when handing the task to external agents."""
        return {
            "intent_tags": sorted(self.intent_tags),
            "file_path": self.file_path,
            "description": self.description,
        }
