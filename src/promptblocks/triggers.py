"""Trigger predicates and the condition evaluator.

A trigger is a small tagged variant:

- ``AlwaysTrigger``: matches every task.
- ``TagTrigger``: matches when any of its tags is among the task's intent tags.
- ``PathTrigger``: matches when the task's file path matches any glob.
- ``AnyTrigger``: matches when any child trigger matches.
- ``UnknownTrigger``: a well-formed spec with a kind this version does not
  understand. Kept at load time so evaluation can report it per block.

Specs are parsed from plain data (YAML front matter or mappings) by
``parse_trigger``; shape problems raise ``LoadError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from promptblocks.errors import LoadError, UnsupportedTriggerError
from promptblocks.task import normalize_path, normalize_tag

if TYPE_CHECKING:
    from promptblocks.task import TaskContext


@dataclass(frozen=True, slots=True)
class AlwaysTrigger:
    """Matches unconditionally."""

    kind = "always"

    def describe(self) -> str:
        return "always"


@dataclass(frozen=True, slots=True)
class TagTrigger:
    """Matches when the task declares any of ``tags``."""

    tags: frozenset[str]
    kind = "tags"

    def describe(self) -> str:
        return "tags:" + ",".join(sorted(self.tags))


@dataclass(frozen=True, slots=True)
class PathTrigger:
    """Matches when the task's file path matches any of ``patterns``."""

    patterns: tuple[str, ...]
    kind = "paths"

    def describe(self) -> str:
        return "paths:" + ",".join(self.patterns)


@dataclass(frozen=True, slots=True)
class AnyTrigger:
    """Matches when any child matches."""

    children: tuple[Trigger, ...]
    kind = "any"

    def describe(self) -> str:
        return "any(" + "; ".join(c.describe() for c in self.children) + ")"


@dataclass(frozen=True, slots=True)
class UnknownTrigger:
    """A trigger kind this evaluator cannot interpret."""

    name: str
    spec: tuple[tuple[str, str], ...] = ()
    kind = "unknown"

    def describe(self) -> str:
        return f"unknown:{self.name}"


Trigger = AlwaysTrigger | TagTrigger | PathTrigger | AnyTrigger | UnknownTrigger

ALWAYS = AlwaysTrigger()


# --- Parsing ---


class _TagSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: list[str]

    @field_validator("tags", mode="before")
    @classmethod
    def _split(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("tags")
    @classmethod
    def _non_empty(cls, v: list[str]) -> list[str]:
        cleaned = [normalize_tag(t) for t in v if normalize_tag(t)]
        if not cleaned:
            raise ValueError("tags must list at least one non-blank tag")
        return cleaned


class _PathSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    paths: list[str]

    @field_validator("paths", mode="before")
    @classmethod
    def _split(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("paths")
    @classmethod
    def _valid_globs(cls, v: list[str]) -> list[str]:
        cleaned = [normalize_path(p.strip()) for p in v if p.strip()]
        if not cleaned:
            raise ValueError("paths must list at least one non-blank glob")
        for pattern in cleaned:
            glob_to_regex(pattern)
        return cleaned


def _split_list(v: Any) -> Any:
    if isinstance(v, str):
        return re.split(r"[,|]", v)
    return v


def parse_trigger(spec: Any, *, source: str | None = None) -> Trigger:
    """Parse a trigger spec into a Trigger value.

    Accepted forms:
        ``None`` or ``"always"``;
        ``{"tags": [...]}`` (or a comma separated string);
        ``{"paths": [...]}`` or ``{"glob": "..."}``;
        ``{"any": [spec, ...]}``;
        ``{"kind": NAME, ...}`` where NAME is one of the above or unknown.

    Raises:
        LoadError: If the spec is malformed.
    """
    if spec is None or spec is True:
        return ALWAYS
    if isinstance(spec, str):
        if spec.strip().lower() == "always":
            return ALWAYS
        raise LoadError(
            f"Malformed trigger {spec!r}",
            hint="String triggers may only be 'always'; use {tags: [...]} or {paths: [...]}.",
            source=source,
        )
    if not isinstance(spec, dict):
        raise LoadError(
            f"Malformed trigger of type {type(spec).__name__}",
            hint="A trigger is 'always' or a mapping such as {tags: [...]}.",
            source=source,
        )

    data = dict(spec)
    kind = data.pop("kind", None)
    if kind is None:
        keys = set(data)
        if keys == {"always"} and data["always"] is True:
            return ALWAYS
        if keys == {"tags"}:
            kind = "tags"
        elif keys in ({"paths"}, {"glob"}):
            kind = "paths"
        elif keys == {"any"}:
            kind = "any"
        else:
            raise LoadError(
                f"Malformed trigger with keys {sorted(keys)}",
                hint="Use exactly one of: tags, paths, glob, any (or give an explicit kind).",
                source=source,
            )
    if not isinstance(kind, str) or not kind.strip():
        raise LoadError("Trigger kind must be a non-empty string", source=source)
    kind = kind.strip().lower()

    if kind == "always":
        if data:
            raise LoadError(
                f"Trigger kind 'always' takes no arguments, got {sorted(data)}",
                source=source,
            )
        return ALWAYS
    if kind == "tags":
        tag_spec = _validate(_TagSpec, data, source=source)
        return TagTrigger(tags=frozenset(tag_spec.tags))
    if kind in ("paths", "glob"):
        if "glob" in data:
            data = {"paths": data.pop("glob"), **data}
        path_spec = _validate(_PathSpec, data, source=source)
        return PathTrigger(patterns=tuple(dict.fromkeys(path_spec.paths)))
    if kind == "any":
        children = data.pop("any", None)
        if data or not isinstance(children, list) or not children:
            raise LoadError(
                "Trigger 'any' needs a non-empty list of child triggers",
                source=source,
            )
        return AnyTrigger(
            children=tuple(parse_trigger(c, source=source) for c in children)
        )

    return UnknownTrigger(
        name=kind, spec=tuple(sorted((str(k), repr(v)) for k, v in data.items()))
    )


def _validate(model: type[BaseModel], data: dict[str, Any], *, source: str | None) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "trigger"
        raise LoadError(
            f"Malformed trigger ({where}): {first.get('msg', 'invalid')}",
            source=source,
        ) from e


# --- Glob matching ---


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a POSIX glob to a compiled regex.

    ``*`` and ``?`` never cross ``/``; ``**`` spans any number of segments.
    """
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 2 if pattern[i + 1 : i + 2] in ("!", "]") else i + 1)
            if j == -1:
                raise ValueError(f"unterminated character class in glob {pattern!r}")
            body = pattern[i + 1 : j]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = j
        else:
            out.append(re.escape(c))
        i += 1
    try:
        return re.compile("".join(out) + r"\Z")
    except re.error as e:
        raise ValueError(f"invalid glob {pattern!r}: {e}") from e


def path_matches(pattern: str, path: str) -> bool:
    """Return True when *path* matches the glob *pattern*."""
    return glob_to_regex(pattern).match(normalize_path(path)) is not None


# --- Evaluation ---


def matches(trigger: Trigger, task: TaskContext, *, block: str | None = None) -> bool:
    """Decide whether *trigger* applies to *task*.

    Raises:
        UnsupportedTriggerError: For trigger kinds this evaluator cannot interpret.
    """
    if isinstance(trigger, AlwaysTrigger):
        return True
    if isinstance(trigger, TagTrigger):
        return not trigger.tags.isdisjoint(task.intent_tags)
    if isinstance(trigger, PathTrigger):
        if task.file_path is None:
            return False
        return any(path_matches(p, task.file_path) for p in trigger.patterns)
    if isinstance(trigger, AnyTrigger):
        return any(matches(child, task, block=block) for child in trigger.children)

    kind = trigger.name if isinstance(trigger, UnknownTrigger) else type(trigger).__name__
    raise UnsupportedTriggerError(
        f"Unsupported trigger kind {kind!r}"
        + (f" on block {block!r}" if block else ""),
        hint="Supported kinds: always, tags, paths, any.",
        block=block,
        kind=kind,
    )
