"""Flat-file JSON store and the usage ledger kept in it."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping

LOGGER = logging.getLogger(__name__)

USAGE_KEY = "agentStats"
HISTORY_LIMIT = 100


class JsonStore:
    """Read-whole-object / write-whole-object JSON document on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"JSON store must contain an object: {self.path}")
        return data

    def write(self, data: Mapping[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.path.parent, prefix=".tmp-", suffix=".json", delete=False
        ) as handle:
            json.dump(dict(data), handle, indent=2, sort_keys=True)
            temp_name = handle.name
        os.replace(temp_name, self.path)

    def update(self, mutate) -> Dict[str, Any]:
        """Apply ``mutate`` to the stored document under a process-local lock and persist it."""
        with self._lock:
            data = self.read()
            mutate(data)
            self.write(data)
            return data


def _empty_stats() -> Dict[str, Any]:
    return {
        "sessions": 0,
        "totalTokens": 0,
        "orchestratorTokens": 0,
        "subAgentTokens": 0,
        "filesGenerated": 0,
        "history": [],
    }


class UsageLedger:
    """Accumulates per-session token usage into a :class:`JsonStore`."""

    def __init__(self, store: JsonStore) -> None:
        self._store = store

    def record_session(
        self,
        *,
        orchestrator_model: str,
        sub_agent_model: str,
        orchestrator_tokens: int,
        sub_agent_tokens: int,
        files_generated: int = 0,
        session_id: str | None = None,
    ) -> None:
        """Add one session to the totals; failures are logged and ignored."""

        def _mutate(data: Dict[str, Any]) -> None:
            stats = data.get(USAGE_KEY)
            if not isinstance(stats, dict):
                stats = _empty_stats()
                data[USAGE_KEY] = stats
            for key, value in _empty_stats().items():
                stats.setdefault(key, value)
            stats["sessions"] += 1
            stats["totalTokens"] += orchestrator_tokens + sub_agent_tokens
            stats["orchestratorTokens"] += orchestrator_tokens
            stats["subAgentTokens"] += sub_agent_tokens
            stats["filesGenerated"] += files_generated
            entry = {
                "date": datetime.now(timezone.utc).isoformat(),
                "orchestratorModel": orchestrator_model,
                "subAgentModel": sub_agent_model,
                "orchestratorTokens": orchestrator_tokens,
                "subAgentTokens": sub_agent_tokens,
                "filesGenerated": files_generated,
            }
            if session_id:
                entry["sessionId"] = session_id
            stats["history"] = [*stats["history"], entry][-HISTORY_LIMIT:]

        try:
            self._store.update(_mutate)
        except (OSError, ValueError) as error:
            LOGGER.warning("Unable to record usage statistics: %s", error)

    def stats(self) -> Dict[str, Any]:
        try:
            data = self._store.read()
        except (OSError, ValueError) as error:
            LOGGER.warning("Unable to read usage statistics: %s", error)
            return _empty_stats()
        stats = data.get(USAGE_KEY)
        if not isinstance(stats, dict):
            return _empty_stats()
        merged = _empty_stats()
        merged.update(stats)
        return merged


__all__ = ["HISTORY_LIMIT", "JsonStore", "USAGE_KEY", "UsageLedger"]
