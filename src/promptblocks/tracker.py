"""Inclusion-state tracker: which blocks a session has already emitted.

The tracker is the only shared mutable state in the engine. Every read and
write goes through one ``threading.Lock``; ``claim`` is the atomic
check-then-act that keeps a block from being emitted twice when overlapping
resolves race.

Lifecycle of a name within one resolve::

    claim(name) -> True   # reserved, other callers now see it as seen
    commit(name)          # emitted; stays seen until reset()
    release(name)         # or: dropped (failure/cancel), may be retried later

Claims are owned by the resolve that took them. ``reset()`` and
``mark_seen()`` never drop a claim; each claim remembers the session
(generation) it was taken in, and a commit only records the name when that
session is still current.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import TYPE_CHECKING

from promptblocks.errors import ConcurrencyViolation, LoadError

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class InclusionTracker:
    """Thread-safe record of emitted (and in-flight) block names."""

    def __init__(self, seen: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._seen: set[str] = set(seen)
        #: name -> generation the claim was taken in
        self._pending: dict[str, int] = {}
        self._generation = 0

    # --- Basic contract ---

    def mark_seen(self, name: str) -> None:
        """Record *name* as emitted. Idempotent; leaves any held claim alone."""
        with self._lock:
            self._seen.add(name)

    def is_seen(self, name: str) -> bool:
        """True when *name* was emitted or is claimed by an in-flight resolve."""
        with self._lock:
            return name in self._seen or name in self._pending

    def reset(self) -> None:
        """Forget everything emitted; starts a new session.

        In-flight claims stay held until their resolve settles them, but
        their commits no longer count toward the new session.
        """
        with self._lock:
            if self._pending:
                logger.debug(
                    "Reset while %d claim(s) in flight", len(self._pending)
                )
            self._seen.clear()
            self._generation += 1

    @property
    def generation(self) -> int:
        """Session counter; incremented by every ``reset()``."""
        with self._lock:
            return self._generation

    # --- Claim protocol ---

    def claim(self, name: str) -> bool:
        """Atomically reserve *name*; False if already seen or claimed."""
        with self._lock:
            if name in self._seen or name in self._pending:
                return False
            self._pending[name] = self._generation
            return True

    def commit(self, name: str) -> None:
        """Turn a held claim into a permanent inclusion.

        A claim taken before the latest ``reset()`` is settled without
        marking *name* seen in the new session.

        Raises:
            ConcurrencyViolation: If *name* is not currently claimed.
        """
        with self._lock:
            generation = self._pending.pop(name, None)
            if generation is None:
                raise ConcurrencyViolation(
                    f"commit({name!r}) without a held claim",
                    hint="This is a promptblocks internal error. Please report it.",
                )
            if generation != self._generation:
                logger.debug(
                    "Dropping commit of %r claimed before reset (generation %d != %d)",
                    name,
                    generation,
                    self._generation,
                )
                return
            self._seen.add(name)

    def release(self, name: str) -> None:
        """Drop a claim without marking *name* seen."""
        with self._lock:
            self._pending.pop(name, None)

    # --- Views ---

    @property
    def seen(self) -> frozenset[str]:
        """Snapshot of committed names."""
        with self._lock:
            return frozenset(self._seen)

    @property
    def pending(self) -> frozenset[str]:
        """Snapshot of names claimed by in-flight resolves."""
        with self._lock:
            return frozenset(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __repr__(self) -> str:
        with self._lock:
            return f"InclusionTracker(seen={sorted(self._seen)!r})"

    # --- Persistence ---

    def save(self, path: str | os.PathLike[str]) -> Path:
        """Write committed names to *path* as versioned JSON.

        Uses copy-on-write: write to a temp file and rename for atomicity.
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": STATE_VERSION, "seen": sorted(self.seen)}
        fd, tmp = tempfile.mkstemp(prefix=".promptblocks-", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved tracker state (%d names) to %s", len(payload["seen"]), target)
        return target

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> InclusionTracker:
        """Load a tracker saved by ``save``; a missing file yields an empty one.

        Raises:
            LoadError: If the file exists but is not a valid state document.
        """
        source = Path(path)
        if not source.exists():
            return cls()
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            raise LoadError(
                f"Failed to read tracker state: {e}",
                hint="Delete the state file or pass --reset to start a new session.",
                source=str(source),
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("seen"), list):
            raise LoadError(
                "Tracker state must be an object with a 'seen' list",
                source=str(source),
            )
        version = data.get("version", 0)
        if version != STATE_VERSION:
            logger.warning(
                "Tracker state version mismatch: %s != %s", version, STATE_VERSION
            )
        return cls(str(name) for name in data["seen"])
