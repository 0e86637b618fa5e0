"""Document parsing: turn instruction files into block definitions.

Two syntaxes are understood, and may be mixed in one file:

YAML front matter::

    ---
    name: liveview-patterns
    trigger: {tags: [liveview, ui]}
    ---
    Body text...

Embedded conditional sections::

    <conditional-block context-check="liveview-patterns" task-condition="liveview">
    Body text...
    </conditional-block>

A file with neither becomes one always-on block named after its stem.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
import yaml

from promptblocks.errors import LoadError

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_CONDITIONAL_RE = re.compile(
    r"<conditional-block(?P<attrs>[^>]*)>(?P<body>.*?)</conditional-block>",
    re.DOTALL | re.IGNORECASE,
)
_ATTR_RE = re.compile(r'([a-zA-Z_][\w-]*)\s*=\s*(?:"([^"]*)"|\'([^\']*)\')')
_KNOWN_ATTRS = {"context-check", "task-condition", "path-condition", "delegated", "query"}


@dataclass(frozen=True, slots=True)
class Document:
    """One instruction file: an identifier (usually a relative path) and its text."""

    identifier: str
    text: str

    @property
    def stem(self) -> str:
        return PurePosixPath(self.identifier).stem


@dataclass(frozen=True, slots=True)
class BlockDefinition:
    """Raw block fields extracted from a document, before trigger parsing."""

    name: str
    trigger: Any
    body: str
    source: str
    delegated: bool = False
    query: str | None = None
    description: str | None = None


class BlockHeader(BaseModel):
    """Validated front-matter / mapping entry for a single block."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    trigger: Any = None
    body: str | None = None
    delegated: bool = False
    query: str | None = None
    description: str | None = None

    @field_validator("name", "query")
    @classmethod
    def _strip(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


def parse_header(data: Any, *, source: str) -> BlockHeader:
    """Validate a header mapping, translating failures into LoadError."""
    if not isinstance(data, dict):
        raise LoadError(
            f"Block header must be a mapping, got {type(data).__name__}",
            hint="Front matter should look like 'name: ...' / 'trigger: ...'.",
            source=source,
        )
    try:
        return BlockHeader.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "header"
        raise LoadError(
            f"Invalid block header in {source} ({where}): {first.get('msg', 'invalid')}",
            hint="Allowed keys: name, trigger, delegated, query, description.",
            source=source,
        ) from e


def split_front_matter(text: str, *, source: str) -> tuple[dict[str, Any] | None, str]:
    """Split leading YAML front matter from *text*.

    Returns:
        ``(header_mapping_or_None, remaining_text)``.
    """
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return None, text
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise LoadError(
            f"Invalid YAML front matter in {source}: {e}",
            source=source,
        ) from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise LoadError(
            f"Front matter in {source} must be a mapping",
            source=source,
        )
    return data, text[match.end() :]


def parse_document(document: Document) -> list[BlockDefinition]:
    """Extract block definitions from one document, in textual order."""
    source = document.identifier
    header_data, rest = split_front_matter(document.text, source=source)
    header = parse_header(header_data, source=source) if header_data is not None else None
    if header is not None and header.body is not None:
        raise LoadError(
            f"Front matter in {source} may not set 'body'",
            hint="The body is the document text after the front matter.",
            source=source,
        )

    definitions: list[BlockDefinition] = []
    sections = list(_CONDITIONAL_RE.finditer(rest))
    if sections:
        outside = _CONDITIONAL_RE.sub("", rest).strip()
        if header is not None and outside:
            definitions.append(_from_header(header, outside, document))
        definitions.extend(_from_section(m, source=source) for m in sections)
        return definitions

    body = rest.strip()
    if header is None:
        return [BlockDefinition(name=document.stem, trigger=None, body=body, source=source)]
    return [_from_header(header, body, document)]


def _from_header(header: BlockHeader, body: str, document: Document) -> BlockDefinition:
    return BlockDefinition(
        name=header.name or document.stem,
        trigger=header.trigger,
        body=body,
        source=document.identifier,
        delegated=header.delegated,
        query=header.query,
        description=header.description,
    )


def _from_section(match: re.Match[str], *, source: str) -> BlockDefinition:
    attrs: dict[str, str] = {}
    for key, dq, sq in _ATTR_RE.findall(match.group("attrs")):
        attrs[key.lower()] = dq if dq else sq

    unknown = sorted(set(attrs) - _KNOWN_ATTRS)
    if unknown:
        raise LoadError(
            f"Unknown conditional-block attribute(s) {unknown} in {source}",
            hint=f"Allowed attributes: {', '.join(sorted(_KNOWN_ATTRS))}.",
            source=source,
        )
    name = attrs.get("context-check", "").strip()
    if not name:
        raise LoadError(
            f"conditional-block without a context-check name in {source}",
            hint='Add context-check="block-name" to the opening tag.',
            source=source,
        )

    triggers: list[dict[str, str]] = []
    if attrs.get("task-condition", "").strip():
        triggers.append({"tags": attrs["task-condition"]})
    if attrs.get("path-condition", "").strip():
        triggers.append({"paths": attrs["path-condition"]})
    trigger: Any
    if not triggers:
        trigger = None
    elif len(triggers) == 1:
        trigger = triggers[0]
    else:
        trigger = {"any": triggers}

    delegated_raw = attrs.get("delegated", "false").strip().lower()
    if delegated_raw not in {"true", "false", "yes", "no", "1", "0"}:
        raise LoadError(
            f"conditional-block {name!r} has invalid delegated={delegated_raw!r}",
            source=source,
        )
    query = attrs.get("query", "").strip() or None

    return BlockDefinition(
        name=name,
        trigger=trigger,
        body=match.group("body").strip(),
        source=source,
        delegated=delegated_raw in {"true", "yes", "1"},
        query=query,
    )
