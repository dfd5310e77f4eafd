"""JSON state store — persisted signal history between runs.

The file holds ``{"history": [...], "lastRun": <unix ms>}``.  Writes go
to a temporary sibling first and are swapped into place, so a crash
mid-write leaves the previous state intact.
"""

import json
import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Optional

from signaldesk.strategy.models import Signal

logger = logging.getLogger("signaldesk.repos.state_store")


@dataclass
class StoredState:
    history: list[Signal] = field(default_factory=list)
    last_run: Optional[int] = None


class JsonStateStore:
    """Load and save :class:`StoredState` at *path*."""

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path)

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def load(self) -> StoredState:
        """Read the persisted state.

        A missing or unreadable file yields an empty state.  Individual
        malformed signals are skipped.
        """
        if not self._path.exists():
            return StoredState()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load state from %s: %s", self._path, exc)
            return StoredState()
        if not isinstance(data, dict):
            logger.warning("Ignoring state file %s: not a JSON object", self._path)
            return StoredState()

        history: list[Signal] = []
        skipped = 0
        for row in data.get("history") or []:
            try:
                history.append(Signal.from_dict(row))
            except (KeyError, TypeError, ValueError):
                skipped += 1
        if skipped:
            logger.warning("Skipped %d malformed signal(s) in %s", skipped, self._path)

        history.sort(key=lambda s: s.timestamp)
        last_run = data.get("lastRun")
        return StoredState(
            history=history,
            last_run=int(last_run) if isinstance(last_run, (int, float)) else None,
        )

    def save(self, state: StoredState) -> None:
        """Write *state* atomically, creating parent directories."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "history": [s.to_dict() for s in state.history],
            "lastRun": state.last_run,
        }
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp, self._path)
