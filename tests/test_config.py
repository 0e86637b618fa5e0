"""Configuration boundary tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from promptblocks.config import Config
from promptblocks.errors import ConfigurationError
from promptblocks.retry import RetryPolicy

pytestmark = pytest.mark.unit


def test_defaults_are_lenient() -> None:
    cfg = Config()
    assert cfg.unsupported_trigger_policy == "skip"
    assert cfg.cancel_mode == "discard"
    assert cfg.separator == "\n\n"
    assert cfg.retrieval_concurrency >= 1


def test_blocks_dir_is_normalized_to_path() -> None:
    cfg = Config(blocks_dir="rules")  # type: ignore[arg-type]
    assert cfg.blocks_dir == Path("rules")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"unsupported_trigger_policy": "ignore"},
        {"cancel_mode": "maybe"},
        {"retrieval_concurrency": 0},
        {"delegate_timeout_s": 0},
        {"separator": None},
    ],
)
def test_invalid_values_raise_with_hint(kwargs: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError) as exc:
        Config(**kwargs)  # type: ignore[arg-type]
    assert exc.value.hint


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROMPTBLOCKS_BLOCKS_DIR", "/srv/rules")
    monkeypatch.setenv("PROMPTBLOCKS_STRICT_TRIGGERS", "yes")
    monkeypatch.setenv("PROMPTBLOCKS_RETRIEVAL_CONCURRENCY", "8")
    monkeypatch.setenv("PROMPTBLOCKS_DELEGATE_TIMEOUT_S", "off")
    monkeypatch.setenv("PROMPTBLOCKS_RETRY_MAX_ATTEMPTS", "3")

    cfg = Config.from_env()

    assert cfg.blocks_dir == Path("/srv/rules")
    assert cfg.unsupported_trigger_policy == "raise"
    assert cfg.retrieval_concurrency == 8
    assert cfg.delegate_timeout_s is None
    assert cfg.retry == RetryPolicy(max_attempts=3)


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROMPTBLOCKS_CANCEL_MODE", "partial")
    cfg = Config.from_env(cancel_mode="discard")
    assert cfg.cancel_mode == "discard"


def test_from_env_rejects_non_numeric(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROMPTBLOCKS_RETRIEVAL_CONCURRENCY", "many")
    with pytest.raises(ConfigurationError, match="RETRIEVAL_CONCURRENCY"):
        Config.from_env()


def test_from_env_rejects_invalid_retry_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROMPTBLOCKS_RETRY_MAX_ATTEMPTS", "0")
    with pytest.raises(ConfigurationError, match="max_attempts"):
        Config.from_env()
