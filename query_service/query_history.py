"""
Bounded, deduplicated history of executed filter queries.

History lives in a small JSON key/value file (shared with other local
settings) under the ``query_history`` key.  Reading never fails: missing,
unreadable or corrupt storage is an empty history.  Write failures are
logged and otherwise ignored.
"""

import json
import os
import time
from typing import Any, Dict, List, Optional

from config import QUERY_HISTORY_PATH
from logger import logger

HISTORY_KEY = "query_history"
MAX_HISTORY_ITEMS = 20


def add_to_history_list(
    history: List[Dict[str, Any]],
    query: str,
    database: str,
    collection: str,
    timestamp_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Newest-first copy of ``history`` with ``query`` moved to the front."""
    entry = {
        "query": query,
        "collection": f"{database}.{collection}",
        "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
    }
    rest = [item for item in history if item.get("query") != query]
    return [entry] + rest[: MAX_HISTORY_ITEMS - 1]


class QueryHistoryStore:
    def __init__(self, path: str = QUERY_HISTORY_PATH):
        self.path = path

    def _read_storage(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        return data if isinstance(data, dict) else {}

    def load(self) -> List[Dict[str, Any]]:
        try:
            stored = self._read_storage().get(HISTORY_KEY)
        except (OSError, ValueError) as exc:
            logger.warning("[HISTORY] Could not read %s, starting empty: %s", self.path, exc)
            return []
        if not isinstance(stored, list):
            return []
        return [
            item for item in stored
            if isinstance(item, dict) and isinstance(item.get("query"), str)
        ][:MAX_HISTORY_ITEMS]

    def save(self, history: List[Dict[str, Any]]) -> None:
        try:
            try:
                storage = self._read_storage()
            except ValueError:
                storage = {}
            storage[HISTORY_KEY] = history[:MAX_HISTORY_ITEMS]

            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(storage, fh)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("[HISTORY] Failed to save query history to %s: %s", self.path, exc)

    def add(self, query: str, database: str, collection: str) -> List[Dict[str, Any]]:
        history = add_to_history_list(self.load(), query, database, collection)
        self.save(history)
        logger.debug("[HISTORY] Recorded query for %s.%s (%d entries)", database, collection, len(history))
        return history
