"""Configuration: frozen Config with environment resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from promptblocks.errors import ConfigurationError
from promptblocks.retry import RetryPolicy

UnsupportedTriggerPolicy = Literal["skip", "raise"]
CancelMode = Literal["discard", "partial"]

ENV_PREFIX = "PROMPTBLOCKS_"

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Immutable configuration for context resolution.

    Example:
        config = Config(blocks_dir="rules", unsupported_trigger_policy="raise")
        # or, from PROMPTBLOCKS_* environment variables:
        config = Config.from_env()
    """

    #: Directory the CLI and ``Session.from_directory`` load blocks from.
    blocks_dir: Path | None = None
    #: Joins resolved block texts in ``AssembledOutput.text``.
    separator: str = "\n\n"
    #: ``"skip"`` treats unknown trigger kinds as non-matches; ``"raise"`` aborts.
    unsupported_trigger_policy: UnsupportedTriggerPolicy = "skip"
    #: Upper bound on delegated retrievals running at once within one call.
    retrieval_concurrency: int = 4
    #: Applied by agent delegates; *None* disables the timeout.
    delegate_timeout_s: float | None = 30.0
    #: What a cancelled resolve does with blocks already resolved.
    cancel_mode: CancelMode = "discard"
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Normalize paths and validate option shapes early."""
        if self.blocks_dir is not None and not isinstance(self.blocks_dir, Path):
            object.__setattr__(self, "blocks_dir", Path(self.blocks_dir))

        if self.unsupported_trigger_policy not in ("skip", "raise"):
            raise ConfigurationError(
                f"Unknown unsupported_trigger_policy: {self.unsupported_trigger_policy!r}",
                hint="Use 'skip' (treat as non-match) or 'raise' (abort the call).",
            )
        if self.cancel_mode not in ("discard", "partial"):
            raise ConfigurationError(
                f"Unknown cancel_mode: {self.cancel_mode!r}",
                hint="Use 'discard' or 'partial'.",
            )
        if not isinstance(self.separator, str):
            raise ConfigurationError(
                "separator must be a string",
                hint="Pass separator='\\n\\n' or similar.",
            )
        if self.retrieval_concurrency < 1:
            raise ConfigurationError(
                f"retrieval_concurrency must be ≥ 1, got {self.retrieval_concurrency}",
                hint="This controls how many delegated retrievals run in parallel.",
            )
        if self.delegate_timeout_s is not None and self.delegate_timeout_s <= 0:
            raise ConfigurationError(
                f"delegate_timeout_s must be > 0, got {self.delegate_timeout_s}",
                hint="Pass None to disable the delegate timeout.",
            )

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Build a Config from ``PROMPTBLOCKS_*`` variables, then *overrides*.

        A project ``.env`` file is honoured through python-dotenv.
        """
        load_dotenv()
        values: dict[str, object] = {}

        blocks_dir = os.environ.get(f"{ENV_PREFIX}BLOCKS_DIR")
        if blocks_dir:
            values["blocks_dir"] = Path(blocks_dir)

        policy = os.environ.get(f"{ENV_PREFIX}UNSUPPORTED_TRIGGER_POLICY")
        if policy:
            values["unsupported_trigger_policy"] = policy.strip().lower()
        strict = os.environ.get(f"{ENV_PREFIX}STRICT_TRIGGERS")
        if strict is not None and strict.strip().lower() in _TRUE:
            values["unsupported_trigger_policy"] = "raise"

        cancel_mode = os.environ.get(f"{ENV_PREFIX}CANCEL_MODE")
        if cancel_mode:
            values["cancel_mode"] = cancel_mode.strip().lower()

        concurrency = os.environ.get(f"{ENV_PREFIX}RETRIEVAL_CONCURRENCY")
        if concurrency:
            values["retrieval_concurrency"] = _parse_number(
                "RETRIEVAL_CONCURRENCY", concurrency, int
            )

        timeout = os.environ.get(f"{ENV_PREFIX}DELEGATE_TIMEOUT_S")
        if timeout:
            values["delegate_timeout_s"] = (
                None
                if timeout.strip().lower() in {"none", "off", "0"}
                else _parse_number("DELEGATE_TIMEOUT_S", timeout, float)
            )

        attempts = os.environ.get(f"{ENV_PREFIX}RETRY_MAX_ATTEMPTS")
        if attempts:
            values["retry"] = RetryPolicy(
                max_attempts=_parse_number("RETRY_MAX_ATTEMPTS", attempts, int)
            )

        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]


def _parse_number(name: str, raw: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(raw.strip())
    except ValueError as e:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be a number, got {raw!r}",
            hint=f"Unset {ENV_PREFIX}{name} or give it a numeric value.",
        ) from e
