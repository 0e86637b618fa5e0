"""Delegation hooks: inline, callable agents, HTTP agents, and corpus search."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import httpx
import pytest

from promptblocks.delegates import (
    AgentDelegate,
    Delegate,
    HttpAgentDelegate,
    InlineDelegate,
    SearchDelegate,
    extract_section,
)
from promptblocks.errors import LoadError, RetrievalError
from promptblocks.retry import RetryPolicy
from promptblocks.store import Block
from promptblocks.task import TaskContext

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

pytestmark = pytest.mark.unit

_FAST = RetryPolicy(max_attempts=3, initial_delay_s=0.0, jitter=False)
_BLOCK = Block(name="deploy", body="Deploy checklist.", delegated=True, query="Deployment")
_TASK = TaskContext.create(tags=["deploy"], file_path="./mix.exs", description="ship it")


def test_delegates_satisfy_protocol() -> None:
    for delegate in (
        InlineDelegate(),
        AgentDelegate(lambda b, t: b.body),
        HttpAgentDelegate("http://agent.test/"),
        SearchDelegate({}),
    ):
        assert isinstance(delegate, Delegate)


@pytest.mark.asyncio
async def test_inline_returns_body() -> None:
    assert await InlineDelegate().retrieve(_BLOCK, _TASK) == "Deploy checklist."


# --- AgentDelegate ---


@pytest.mark.asyncio
async def test_agent_sync_callable_runs_off_loop() -> None:
    seen: list[tuple[str, frozenset[str]]] = []

    def _agent(block: Block, task: TaskContext) -> str:
        seen.append((block.name, task.intent_tags))
        return f"fetched {block.lookup}"

    text = await AgentDelegate(_agent).retrieve(_BLOCK, _TASK)

    assert text == "fetched Deployment"
    assert seen == [("deploy", frozenset({"deploy"}))]


@pytest.mark.asyncio
async def test_agent_async_callable() -> None:
    async def _agent(block: Block, task: TaskContext) -> str:
        del task
        await asyncio.sleep(0)
        return block.name.upper()

    assert await AgentDelegate(_agent).retrieve(_BLOCK, _TASK) == "DEPLOY"


@pytest.mark.asyncio
async def test_agent_non_string_result_is_rejected() -> None:
    delegate = AgentDelegate(lambda b, t: 42)  # type: ignore[arg-type, return-value]
    with pytest.raises(RetrievalError, match="returned int") as exc:
        await delegate.retrieve(_BLOCK, _TASK)
    assert exc.value.retryable is False
    assert exc.value.block == "deploy"


@pytest.mark.asyncio
async def test_agent_timeout_becomes_retryable_error() -> None:
    async def _slow(block: Block, task: TaskContext) -> str:
        await asyncio.sleep(5)
        return "late"

    with pytest.raises(RetrievalError, match="timed out") as exc:
        await AgentDelegate(_slow, timeout_s=0.05).retrieve(_BLOCK, _TASK)
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_agent_retries_transient_failures() -> None:
    attempts = 0

    async def _flaky(block: Block, task: TaskContext) -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RetrievalError("busy", retryable=True)
        return "ok"

    assert await AgentDelegate(_flaky, retry=_FAST).retrieve(_BLOCK, _TASK) == "ok"
    assert attempts == 2


# --- HttpAgentDelegate ---


def _http(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> HttpAgentDelegate:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAgentDelegate("http://agent.test/resolve", client=client, **kwargs)


@pytest.mark.asyncio
async def test_http_posts_block_and_task() -> None:
    captured: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"text": "From the agent."})

    text = await _http(_handler).retrieve(_BLOCK, _TASK)

    assert text == "From the agent."
    assert captured == [
        {
            "block": "deploy",
            "query": "Deployment",
            "body": "Deploy checklist.",
            "task": {
                "intent_tags": ["deploy"],
                "file_path": "mix.exs",
                "description": "ship it",
            },
        }
    ]


@pytest.mark.asyncio
async def test_http_plain_text_reply_is_used_verbatim() -> None:
    delegate = _http(lambda request: httpx.Response(200, text="plain words"))
    assert await delegate.retrieve(_BLOCK, _TASK) == "plain words"


@pytest.mark.asyncio
async def test_http_json_without_text_is_rejected() -> None:
    delegate = _http(lambda request: httpx.Response(200, json={"answer": "x"}))
    with pytest.raises(RetrievalError, match="no 'text'"):
        await delegate.retrieve(_BLOCK, _TASK)


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "retryable"), [(503, True), (429, True), (404, False)])
async def test_http_error_status_carries_retry_metadata(status: int, retryable: bool) -> None:
    delegate = _http(lambda request: httpx.Response(status))
    with pytest.raises(RetrievalError) as exc:
        await delegate.retrieve(_BLOCK, _TASK)
    assert exc.value.status_code == status
    assert exc.value.retryable is retryable


@pytest.mark.asyncio
async def test_http_retries_service_unavailable() -> None:
    statuses = iter([503, 200])

    def _handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        if status == 200:
            return httpx.Response(200, json={"text": "recovered"})
        return httpx.Response(status)

    assert await _http(_handler, retry=_FAST).retrieve(_BLOCK, _TASK) == "recovered"


@pytest.mark.asyncio
async def test_http_transport_failure_is_retryable() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(RetrievalError, match="ConnectError") as exc:
        await _http(_handler).retrieve(_BLOCK, _TASK)
    assert exc.value.retryable is True
    assert exc.value.hint is not None


# --- Search ---

_GUIDE = """\
# Guide

Intro.

## Deployment

Tag the release.

```bash
# not a heading
mix release
```

### Rollback

Keep the previous build.

## Testing

Run the suite.
"""


def test_extract_section_runs_to_next_sibling_heading() -> None:
    section = extract_section(_GUIDE, "deployment")

    assert section is not None
    assert section.startswith("## Deployment")
    assert "# not a heading" in section
    assert "### Rollback" in section
    assert "Run the suite." not in section


def test_extract_section_last_section_runs_to_end() -> None:
    assert extract_section(_GUIDE, "Testing") == "## Testing\n\nRun the suite."


@pytest.mark.parametrize("query", ["Missing", "not a heading", "   "])
def test_extract_section_misses(query: str) -> None:
    assert extract_section(_GUIDE, query) is None


@pytest.mark.asyncio
async def test_search_returns_first_matching_section() -> None:
    delegate = SearchDelegate({"a.md": "# Other\n\nx", "guide.md": _GUIDE})
    text = await delegate.retrieve(_BLOCK, _TASK)
    assert text.startswith("## Deployment")


@pytest.mark.asyncio
async def test_search_miss_is_a_permanent_error() -> None:
    with pytest.raises(RetrievalError, match="No section matching 'Deployment'") as exc:
        await SearchDelegate({"a.md": "# Other"}).retrieve(_BLOCK, _TASK)
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_search_from_directory(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text(_GUIDE, encoding="utf-8")

    delegate = SearchDelegate.from_directory(tmp_path)

    assert "Tag the release." in await delegate.retrieve(_BLOCK, _TASK)


def test_search_from_directory_rejects_non_utf8(tmp_path: Path) -> None:
    (tmp_path / "latin1.md").write_bytes("## Caf\xe9\n".encode("latin-1"))

    with pytest.raises(LoadError, match="latin1.md") as exc:
        SearchDelegate.from_directory(tmp_path)
    assert exc.value.source == "latin1.md"


def test_search_from_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(LoadError):
        SearchDelegate.from_directory(tmp_path / "nope")
