"""Block store: the immutable library of named context blocks."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any

from promptblocks.documents import (
    BlockDefinition,
    Document,
    parse_document,
    parse_header,
)
from promptblocks.errors import LoadError
from promptblocks.triggers import ALWAYS, Trigger, parse_trigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Block:
    """A named unit of instructional text with a trigger condition."""

    name: str
    trigger: Trigger = ALWAYS
    body: str = ""
    delegated: bool = False
    #: Lookup key for search-style delegates; falls back to ``name``.
    query: str | None = None
    source: str | None = None
    description: str | None = None

    @property
    def lookup(self) -> str:
        return self.query or self.name


class BlockStore:
    """Immutable, ordered collection of uniquely named blocks."""

    __slots__ = ("_blocks", "_by_name")

    def __init__(self, blocks: Iterable[Block] = ()) -> None:
        ordered = tuple(blocks)
        by_name: dict[str, Block] = {}
        for block in ordered:
            existing = by_name.get(block.name)
            if existing is not None:
                raise LoadError(
                    f"Duplicate block name {block.name!r}"
                    f" (in {existing.source or '<mapping>'} and {block.source or '<mapping>'})",
                    hint="Block names must be unique across the whole document set.",
                    source=block.source,
                )
            by_name[block.name] = block
        self._blocks = ordered
        self._by_name = by_name

    @classmethod
    def load(
        cls, documents: Iterable[Document] | Mapping[str, Mapping[str, Any]]
    ) -> BlockStore:
        """Build a store from documents or a name → spec mapping.

        Raises:
            LoadError: On name collision, malformed trigger, or invalid header.
        """
        if isinstance(documents, Mapping):
            definitions = [
                _definition_from_mapping(name, spec) for name, spec in documents.items()
            ]
        else:
            definitions = []
            for document in documents:
                if not isinstance(document, Document):
                    raise LoadError(
                        f"Expected Document, got {type(document).__name__}",
                        hint="Wrap raw text as Document(identifier, text).",
                    )
                definitions.extend(parse_document(document))

        store = cls(_build_block(d) for d in definitions)
        logger.debug("Loaded %d block(s)", len(store))
        return store

    @classmethod
    def load_directory(cls, path: str | Path, *, pattern: str = "**/*.md") -> BlockStore:
        """Load every file under *path* matching *pattern*.

        Files load in sorted relative-path order so block order is stable.
        """
        root = Path(path)
        if not root.is_dir():
            raise LoadError(
                f"Blocks directory not found: {root}",
                hint="Pass an existing directory of instruction files.",
                source=str(root),
            )
        files = sorted(
            (p for p in root.glob(pattern) if p.is_file()),
            key=lambda p: p.relative_to(root).as_posix(),
        )
        documents: list[Document] = []
        for file in files:
            identifier = file.relative_to(root).as_posix()
            try:
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise LoadError(
                    f"Failed to read {identifier}: {e}", source=identifier
                ) from e
            documents.append(Document(identifier=identifier, text=text))
        logger.info("Loading %d document(s) from %s", len(documents), root)
        return cls.load(documents)

    def all_blocks(self) -> tuple[Block, ...]:
        """Return every block in load order."""
        return self._blocks

    def get(self, name: str) -> Block | None:
        return self._by_name.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(b.name for b in self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return f"BlockStore({len(self._blocks)} blocks)"


def load(documents: Iterable[Document] | Mapping[str, Mapping[str, Any]]) -> BlockStore:
    """Module-level alias for ``BlockStore.load``."""
    return BlockStore.load(documents)


def _definition_from_mapping(name: str, spec: Mapping[str, Any]) -> BlockDefinition:
    source = f"<mapping:{name}>"
    if not isinstance(spec, Mapping):
        raise LoadError(
            f"Block {name!r} must map to a mapping, got {type(spec).__name__}",
            hint="Use {name: {'trigger': ..., 'body': ...}}.",
            source=source,
        )
    header = parse_header(dict(spec), source=source)
    if header.name is not None and header.name != name:
        raise LoadError(
            f"Mapping key {name!r} disagrees with name {header.name!r}",
            source=source,
        )
    return BlockDefinition(
        name=name,
        trigger=header.trigger,
        body=header.body or "",
        source=source,
        delegated=header.delegated,
        query=header.query,
        description=header.description,
    )


def _build_block(definition: BlockDefinition) -> Block:
    if not definition.name.strip():
        raise LoadError("Block name must not be blank", source=definition.source)
    return Block(
        name=definition.name,
        trigger=parse_trigger(definition.trigger, source=definition.source),
        body=definition.body,
        delegated=definition.delegated,
        query=definition.query,
        source=definition.source,
        description=definition.description,
    )
