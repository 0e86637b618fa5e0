"""Pytest configuration and fixtures.

Provides environment isolation, shared test doubles, and small block-store
builders. Fixtures here are autouse unless noted.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import TYPE_CHECKING

import pytest

from promptblocks.errors import RetrievalError
from promptblocks.store import BlockStore

if TYPE_CHECKING:
    from pathlib import Path

    from promptblocks.store import Block
    from promptblocks.task import TaskContext

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeDelegate:
    """Delegate test double.

    Returns ``responses[name]`` (or ``"agent:<name>"``), raising it instead
    when the configured value is an exception. Records every call.
    """

    responses: dict[str, str | Exception] = field(default_factory=dict)
    delay_s: float = 0.0
    calls: list[str] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0

    async def retrieve(self, block: Block, task: TaskContext) -> str:
        del task
        self.calls.append(block.name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            value = self.responses.get(block.name, f"agent:{block.name}")
            if isinstance(value, Exception):
                raise value
            return value
        finally:
            self.in_flight -= 1


def failing(message: str = "agent down", **kwargs: object) -> RetrievalError:
    return RetrievalError(message, **kwargs)  # type: ignore[arg-type]


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "promptblocks.config.load_dotenv",
            lambda *_args, **_kwargs: False,
            raising=False,
        )


@pytest.fixture(autouse=True)
def isolate_env(request, monkeypatch):
    """Clear PROMPTBLOCKS_* variables so tests never see a developer's setup.

    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith("PROMPTBLOCKS_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_default_tracker():
    """The package-level tracker is process-wide; keep tests independent."""
    import promptblocks

    promptblocks.reset()
    yield
    promptblocks.reset()


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def fake_delegate() -> FakeDelegate:
    return FakeDelegate()


def make_rules_store() -> BlockStore:
    """A small mixed store: always, tag, path and delegated blocks."""
    return BlockStore.load(
        {
            "core": {"trigger": "always", "body": "Core rules."},
            "liveview": {"trigger": {"tags": ["liveview"]}, "body": "LiveView rules."},
            "tests": {"trigger": {"paths": ["test/**/*_test.exs"]}, "body": "Test rules."},
            "deploy": {
                "trigger": {"tags": ["deploy"]},
                "body": "Deploy checklist.",
                "delegated": True,
            },
        }
    )


@pytest.fixture
def rules_store() -> BlockStore:
    return make_rules_store()


@pytest.fixture
def rules_dir(tmp_path: Path) -> Path:
    """A directory of instruction files in both supported syntaxes."""
    root = tmp_path / "rules"
    (root / "standards").mkdir(parents=True)
    (root / "core.md").write_text("Always follow the core rules.\n", encoding="utf-8")
    (root / "standards" / "style.md").write_text(
        "---\n"
        "name: style-guide\n"
        "trigger:\n"
        "  tags: [style, formatting]\n"
        "---\n"
        "Format with the project formatter.\n",
        encoding="utf-8",
    )
    (root / "standards" / "best-practices.md").write_text(
        "# Best practices\n\n"
        '<conditional-block context-check="liveview-patterns" task-condition="liveview">\n'
        "Keep LiveView assigns small.\n"
        "</conditional-block>\n\n"
        '<conditional-block context-check="test-patterns" path-condition="test/**">\n'
        "Use async tests where possible.\n"
        "</conditional-block>\n",
        encoding="utf-8",
    )
    return root
