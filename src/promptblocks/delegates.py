"""Delegation hooks: produce a block's text from somewhere other than its body.

Any object with an async ``retrieve(block, task) -> str`` method is a
``Delegate``. Failures surface as ``RetrievalError``; the assembler reports
them per block and keeps going.

Variants:
- ``InlineDelegate``: the block body, unchanged.
- ``AgentDelegate``: a Python callable standing in for an external agent.
- ``HttpAgentDelegate``: an agent reachable over HTTP.
- ``SearchDelegate``: look the block's query up in a larger markdown corpus
  and return the matching subsection.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
import inspect
import logging
from pathlib import Path
import re
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from promptblocks.errors import LoadError, RetrievalError
from promptblocks.retry import (
    RETRYABLE_STATUS_CODES,
    RetryPolicy,
    retry_async,
    should_retry_retrieval,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from promptblocks.store import Block
    from promptblocks.task import TaskContext

    AgentFn = Callable[[Block, TaskContext], str | Awaitable[str]]

logger = logging.getLogger(__name__)


@runtime_checkable
class Delegate(Protocol):
    """Capability: resolve a block into text, failing with RetrievalError."""

    async def retrieve(self, block: Block, task: TaskContext) -> str:
        """Return the text to include for *block*."""
        ...


class InlineDelegate:
    """Passthrough: the block's own body."""

    async def retrieve(self, block: Block, task: TaskContext) -> str:
        del task
        return block.body


async def _with_policy(
    block: Block,
    work: Callable[[], Awaitable[str]],
    *,
    timeout_s: float | None,
    retry: RetryPolicy | None,
) -> str:
    async def _attempt() -> str:
        if timeout_s is None:
            return await work()
        try:
            return await asyncio.wait_for(work(), timeout=timeout_s)
        except TimeoutError as e:
            raise RetrievalError(
                f"Retrieval for block {block.name!r} timed out after {timeout_s}s",
                block=block.name,
                retryable=True,
            ) from e

    if retry is None or retry.max_attempts <= 1:
        return await _attempt()
    return await retry_async(_attempt, policy=retry, should_retry=should_retry_retrieval)


class AgentDelegate:
    """Call a collaborator function for the block's text.

    Sync callables run on a worker thread so they never block other
    resolutions; coroutine functions are awaited directly.
    """

    def __init__(
        self,
        fn: AgentFn,
        *,
        timeout_s: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._fn = fn
        self._timeout_s = timeout_s
        self._retry = retry

    async def retrieve(self, block: Block, task: TaskContext) -> str:
        async def _call() -> str:
            if inspect.iscoroutinefunction(self._fn):
                result = await self._fn(block, task)
            else:
                result = await asyncio.to_thread(self._fn, block, task)
                if inspect.isawaitable(result):
                    result = await result
            if not isinstance(result, str):
                raise RetrievalError(
                    f"Agent returned {type(result).__name__} for block {block.name!r}",
                    hint="Agent callables must return the block text as a str.",
                    block=block.name,
                    retryable=False,
                )
            return result

        return await _with_policy(
            block, _call, timeout_s=self._timeout_s, retry=self._retry
        )


class HttpAgentDelegate:
    """POST the block and task to an HTTP agent and return its text.

    Request body::

        {"block": NAME, "query": LOOKUP, "body": BODY, "task": {...}}

    A JSON reply must carry a string ``text`` field; any other content type
    is taken verbatim.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float | None = 30.0,
        retry: RetryPolicy | None = None,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._retry = retry
        self._headers = dict(headers or {})
        self._client = client

    async def retrieve(self, block: Block, task: TaskContext) -> str:
        payload = {
            "block": block.name,
            "query": block.lookup,
            "body": block.body,
            "task": task.as_dict(),
        }

        async def _post() -> str:
            if self._client is not None:
                return await self._send(self._client, block, payload)
            async with httpx.AsyncClient() as client:
                return await self._send(client, block, payload)

        # httpx enforces the timeout itself; no outer wait_for needed.
        return await _with_policy(block, _post, timeout_s=None, retry=self._retry)

    async def _send(
        self, client: httpx.AsyncClient, block: Block, payload: dict[str, Any]
    ) -> str:
        try:
            response = await client.post(
                self._url,
                json=payload,
                headers=self._headers,
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as e:
            raise RetrievalError(
                f"Agent request for block {block.name!r} timed out",
                block=block.name,
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            raise RetrievalError(
                f"Agent request for block {block.name!r} failed: {type(e).__name__}",
                hint=f"Check that the agent at {self._url} is reachable.",
                block=block.name,
                retryable=True,
            ) from e

        if response.status_code >= 400:
            raise RetrievalError(
                f"Agent returned HTTP {response.status_code} for block {block.name!r}",
                block=block.name,
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
            )

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            return response.text
        try:
            data = response.json()
        except ValueError as e:
            raise RetrievalError(
                f"Agent returned invalid JSON for block {block.name!r}",
                block=block.name,
                retryable=False,
            ) from e
        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise RetrievalError(
                f"Agent reply for block {block.name!r} has no 'text' string",
                hint='Reply with {"text": "..."} or text/plain.',
                block=block.name,
                retryable=False,
            )
        return text


# --- Search-then-extract ---

_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t]*#*[ \t]*$")


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.strip().lower()).strip("-")


def extract_section(text: str, query: str) -> str | None:
    """Return the markdown section whose heading matches *query*.

    The section runs from the heading through the line before the next
    heading of equal or higher level. Headings compare by slug, so
    ``"Error Handling"`` finds ``## error handling``.
    """
    wanted = _slug(query)
    if not wanted:
        return None
    lines = text.splitlines()
    in_fence = False
    start: int | None = None
    level = 0
    for i, line in enumerate(lines):
        if line.lstrip().startswith(("```", "~~~")):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        m = _HEADING_RE.match(line)
        if m is None:
            continue
        this_level = len(m.group(1))
        if start is None:
            if _slug(m.group(2)) == wanted:
                start, level = i, this_level
        elif this_level <= level:
            return "\n".join(lines[start:i]).strip()
    if start is None:
        return None
    return "\n".join(lines[start:]).strip()


class SearchDelegate:
    """Search a corpus for the block's query and return the matched subsection.

    Documents are searched in insertion order; the first matching section wins.
    """

    def __init__(self, corpus: Mapping[str, str]) -> None:
        self._corpus = dict(corpus)

    @classmethod
    def from_directory(cls, path: str | Path, *, pattern: str = "**/*.md") -> SearchDelegate:
        root = Path(path)
        if not root.is_dir():
            raise LoadError(
                f"Corpus directory not found: {root}", source=str(root)
            )
        files = sorted(
            (p for p in root.glob(pattern) if p.is_file()),
            key=lambda p: p.relative_to(root).as_posix(),
        )
        corpus: dict[str, str] = {}
        for file in files:
            identifier = file.relative_to(root).as_posix()
            try:
                corpus[identifier] = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise LoadError(
                    f"Failed to read corpus document {identifier}: {e}",
                    hint="Corpus documents must be UTF-8 text.",
                    source=identifier,
                ) from e
        return cls(corpus)

    async def retrieve(self, block: Block, task: TaskContext) -> str:
        del task
        query = block.lookup
        for identifier, text in self._corpus.items():
            section = extract_section(text, query)
            if section is not None:
                logger.debug("Block %r matched section in %s", block.name, identifier)
                return section
        raise RetrievalError(
            f"No section matching {query!r} for block {block.name!r}",
            hint="Check the block's query against the corpus headings.",
            block=block.name,
            retryable=False,
        )
