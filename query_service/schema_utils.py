"""
Schema utilities: type detection, schema inference, profiles and caching.

Schema inference produces the nested shape the editor and the projection
planner read::

    {
        "collection": "users",
        "sampleSize": 10,
        "totalDocs": 1200,
        "fields": {
            "name":    {"type": "String", "occurrence": 100.0},
            "address": {"type": "Object", "occurrence": 80.0,
                        "fields": {"city": {"type": "String", "occurrence": 100.0}}},
            "tags":    {"type": "Array<String> | Null", "occurrence": 40.0},
        },
    }

``occurrence`` is the percentage of sampled documents holding the field.
Mixed types are joined with `` | `` in sorted order.

``SchemaCache`` keeps one entry per ``connection:database:collection``
holding the inferred schema (possibly ``None``), the known field paths
and a timestamp, plus the last fetched ``DocumentProfile``.  Writes are
last-write-wins.
"""

import asyncio
import datetime as _dt
import re
import time
from typing import Any, Dict, Iterable, List, Optional, Set

from bson import Binary, Decimal128, Int64, ObjectId, Regex, Timestamp
from bson.max_key import MaxKey
from bson.min_key import MinKey

from logger import logger
from profile_estimator import DocumentProfile, profile_from_dict

VALIDATION_SAMPLE_SIZE = 10
PROFILE_SAMPLE_SIZE = 5
MAX_PROFILE_DEPTH = 20

_INT32_MIN = -(2 ** 31)
_INT32_MAX = 2 ** 31 - 1


# ---------------------- TYPE NAMES ----------------------

def _detect_type(value: Any) -> str:
    """BSON type name of a decoded value (``String``, ``Int32``, ``Array<Object>`` …)."""
    if value is None:
        return "Null"
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, ObjectId):
        return "ObjectId"
    if isinstance(value, Int64):
        return "Int64"
    if isinstance(value, int):
        return "Int32" if _INT32_MIN <= value <= _INT32_MAX else "Int64"
    if isinstance(value, float):
        return "Double"
    if isinstance(value, str):
        return "String"
    if isinstance(value, _dt.datetime):
        return "Date"
    if isinstance(value, Timestamp):
        return "Timestamp"
    if isinstance(value, dict):
        return "Object"
    if isinstance(value, list):
        return f"Array<{_detect_type(value[0])}>" if value else "Array"
    if isinstance(value, (Binary, bytes)):
        return "Binary"
    if isinstance(value, Decimal128):
        return "Decimal128"
    if isinstance(value, (Regex, re.Pattern)):
        return "Regex"
    if isinstance(value, MinKey):
        return "MinKey"
    if isinstance(value, MaxKey):
        return "MaxKey"
    return type(value).__name__


# ---------------------- SCHEMA INFERENCE ----------------------

def _build_fields(docs: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    counts: Dict[str, int] = {}
    types: Dict[str, Set[str]] = {}
    nested: Dict[str, List[Dict[str, Any]]] = {}
    array_items: Dict[str, List[Dict[str, Any]]] = {}

    for doc in docs:
        for key, value in doc.items():
            counts[key] = counts.get(key, 0) + 1
            types.setdefault(key, set()).add(_detect_type(value))
            if isinstance(value, dict):
                nested.setdefault(key, []).append(value)
            elif isinstance(value, list) and value and isinstance(value[0], dict):
                array_items.setdefault(key, []).append(value[0])

    fields: Dict[str, Dict[str, Any]] = {}
    for key, count in counts.items():
        field: Dict[str, Any] = {
            "type": " | ".join(sorted(types[key])),
            "occurrence": count / len(docs) * 100,
        }
        if nested.get(key):
            field["fields"] = _build_fields(nested[key])
        if array_items.get(key):
            item_fields = _build_fields(array_items[key])
            if item_fields:
                field["arrayType"] = {"type": "Object", "fields": item_fields}
        fields[key] = field
    return fields


def infer_schema(
    docs: List[Dict[str, Any]],
    collection: str,
    total_docs: Optional[int] = None,
) -> Dict[str, Any]:
    """Infer a nested schema from sampled documents."""
    return {
        "collection": collection,
        "sampleSize": len(docs),
        "totalDocs": total_docs if total_docs is not None else len(docs),
        "fields": _build_fields(docs) if docs else {},
    }


def schema_field_names(schema: Optional[Dict[str, Any]]) -> Set[str]:
    """Every dot-notation path in an inferred schema, array item fields included."""
    names: Set[str] = set()

    def _walk(fields: Optional[Dict[str, Any]], prefix: str) -> None:
        for name, field in (fields or {}).items():
            path = f"{prefix}.{name}" if prefix else name
            names.add(path)
            _walk(field.get("fields"), path)
            _walk((field.get("arrayType") or {}).get("fields"), path)

    if schema:
        _walk(schema.get("fields"), "")
    return names


# ---------------------- DOCUMENT PROFILE ----------------------

def _walk_paths(doc: Dict[str, Any], prefix: str, paths: Set[str], depth: int, max_depth: List[int]) -> None:
    if depth > max_depth[0]:
        max_depth[0] = depth
    if depth > MAX_PROFILE_DEPTH:
        return
    for key, value in doc.items():
        path = f"{prefix}.{key}" if prefix else key
        paths.add(path)
        if isinstance(value, dict):
            _walk_paths(value, path, paths, depth + 1, max_depth)
        elif isinstance(value, list) and value and isinstance(value[0], dict):
            _walk_paths(value[0], path + "[]", paths, depth + 1, max_depth)


def build_document_profile(stats: Dict[str, Any], sample: Iterable[Dict[str, Any]]) -> DocumentProfile:
    """Combine ``collStats`` numbers with a small document sample."""
    top_level: Set[str] = set()
    paths: Set[str] = set()
    max_depth = [0]

    for doc in sample:
        top_level.update(doc.keys())
        _walk_paths(doc, "", paths, 0, max_depth)

    return DocumentProfile(
        avgDocSizeBytes=float(stats.get("avgObjSize") or 0),
        docCount=int(stats.get("count") or 0),
        fieldCount=len(top_level),
        totalFieldPaths=len(paths),
        maxNestingDepth=max_depth[0],
        topFields=sorted(top_level),
    )


# ---------------------- CACHE ----------------------

def _cache_key(connection_id: str, database: str, collection: str) -> str:
    return f"{connection_id}:{database}:{collection}"


class SchemaCache:
    """Schema, field-name and profile cache shared by every view of a process.

    ``collaborator`` supplies ``infer_collection_schema`` and
    ``get_collection_profile`` (see ``collaborators.QueryCollaborator``).
    """

    def __init__(self, collaborator: Any):
        self._collaborator = collaborator
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._profiles: Dict[str, DocumentProfile] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    # ---- schema / field names ----

    def get_cached_schema(self, connection_id: str, database: str, collection: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(_cache_key(connection_id, database, collection))
        return entry["schema"] if entry else None

    def get_field_names(self, connection_id: str, database: str, collection: str) -> Optional[Set[str]]:
        entry = self._entries.get(_cache_key(connection_id, database, collection))
        return entry["field_names"] if entry else None

    def merge_field_names(
        self,
        connection_id: str,
        database: str,
        collection: str,
        names: Iterable[str],
    ) -> None:
        key = _cache_key(connection_id, database, collection)
        entry = self._entries.get(key)
        if entry is None:
            entry = {"schema": None, "field_names": set(), "timestamp": time.time()}
            self._entries[key] = entry
        before = len(entry["field_names"])
        entry["field_names"] = entry["field_names"] | set(names)
        entry["timestamp"] = time.time()
        logger.debug(
            "[SCHEMA] Merged %d new field names into %s",
            len(entry["field_names"]) - before, key,
        )

    async def fetch_schema(
        self,
        connection_id: str,
        database: str,
        collection: str,
        force_refresh: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Sample the collection and cache its schema; ``None`` on failure."""
        key = _cache_key(connection_id, database, collection)
        entry = self._entries.get(key)
        if not force_refresh and entry and entry["schema"] is not None:
            logger.info("[SCHEMA] Cache HIT for %s.%s", database, collection)
            return entry["schema"]

        logger.info("[SCHEMA] Cache MISS for %s.%s, sampling %d docs", database, collection, VALIDATION_SAMPLE_SIZE)
        try:
            schema = await self._collaborator.infer_collection_schema(
                connection_id, database, collection, VALIDATION_SAMPLE_SIZE,
            )
        except Exception as exc:
            logger.warning("[SCHEMA] Sampling %s.%s failed: %s", database, collection, exc)
            return None

        known = entry["field_names"] if entry else set()
        self._entries[key] = {
            "schema": schema,
            "field_names": known | schema_field_names(schema),
            "timestamp": time.time(),
        }
        return schema

    def prefetch_schema(self, connection_id: str, database: str, collection: str) -> Optional["asyncio.Task[Any]"]:
        """Start a background schema fetch unless one is already cached."""
        if self.get_cached_schema(connection_id, database, collection) is not None:
            return None
        task = asyncio.get_running_loop().create_task(
            self.fetch_schema(connection_id, database, collection)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ---- profiles ----

    def get_collection_profile(self, connection_id: str, database: str, collection: str) -> Optional[DocumentProfile]:
        return self._profiles.get(_cache_key(connection_id, database, collection))

    def set_collection_profile(
        self,
        connection_id: str,
        database: str,
        collection: str,
        profile: DocumentProfile,
    ) -> None:
        self._profiles[_cache_key(connection_id, database, collection)] = profile

    async def fetch_collection_profile(
        self,
        connection_id: str,
        database: str,
        collection: str,
    ) -> Optional[DocumentProfile]:
        """Fetch and cache a profile; any failure means "no profile"."""
        try:
            profile = await self._collaborator.get_collection_profile(connection_id, database, collection)
        except Exception as exc:
            logger.warning("[PROFILE] No profile for %s.%s: %s", database, collection, exc)
            return None
        if profile is None:
            return None
        profile = profile_from_dict(profile)
        self.set_collection_profile(connection_id, database, collection, profile)
        logger.info(
            "[PROFILE] %s.%s avg %.0f bytes, %d fields",
            database, collection, profile.avgDocSizeBytes, profile.fieldCount,
        )
        return profile

    # ---- invalidation ----

    def invalidate(self, connection_id: str, database: str, collection: str) -> None:
        key = _cache_key(connection_id, database, collection)
        self._entries.pop(key, None)
        self._profiles.pop(key, None)

    def invalidate_connection(self, connection_id: str) -> None:
        prefix = f"{connection_id}:"
        for store in (self._entries, self._profiles):
            for key in [k for k in store if k.startswith(prefix)]:
                del store[key]

    def clear(self) -> None:
        self._entries.clear()
        self._profiles.clear()
