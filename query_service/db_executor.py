"""
Database executor: the blocking pymongo calls behind the query surface.

- ``find_documents``: filtered, paged find returning relaxed Extended JSON rows
- ``get_collection_profile``: ``collStats`` plus a small document sample
- ``sample_collection_schema``: evenly spaced sample for schema inference
- ``explain_query``: ``executionStats`` explain with a readable plan summary

Every call opens its own client with a server-selection timeout and closes
it when done.  Filters, projections and sorts arrive as text (JSON or shell
notation) and are parsed here.
"""

import time
from typing import Any, Dict, List, Optional, Tuple

from bson import json_util
from bson.json_util import RELAXED_JSON_OPTIONS
from pymongo import MongoClient
from pymongo.errors import ExecutionTimeout, PyMongoError

from config import DEFAULT_PAGE_SIZE
from logger import logger
from mongo_json import loads_extended
from schema_utils import PROFILE_SAMPLE_SIZE, build_document_profile, infer_schema
from profile_estimator import DocumentProfile

# ---------------------- CONSTANTS ----------------------

MAX_FIND_LIMIT = 1000
QUERY_TIMEOUT_MS = 30000
SERVER_SELECTION_TIMEOUT_MS = 5000


# ---------------------- HELPERS ----------------------

def _safe_client(mongo_uri: str) -> MongoClient:
    """Create a MongoClient with timeout protection."""
    return MongoClient(
        mongo_uri,
        serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
    )


def _parse_document(text: Optional[str], what: str) -> Dict[str, Any]:
    try:
        return loads_extended(text)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {what}: {exc}") from exc


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    """``"-age,name"`` → ``[("age", -1), ("name", 1)]``."""
    keys = []
    for part in (sort or "").split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("-"):
            keys.append((part[1:], -1))
        else:
            keys.append((part, 1))
    return keys


def to_relaxed_json(doc: Dict[str, Any]) -> str:
    return json_util.dumps(doc, json_options=RELAXED_JSON_OPTIONS)


# ---------------------- FIND ----------------------

def find_documents(
    mongo_uri: str,
    database_name: str,
    collection_name: str,
    filter_text: str,
    skip: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
    sort: str = "",
    projection: str = "",
) -> Dict[str, Any]:
    """Run a paged find.

    Returns ``{documents: [relaxed Extended JSON str], total, queryTimeMs}``.
    A limit outside ``1..MAX_FIND_LIMIT`` falls back to the default page size.
    """
    mongo_filter = _parse_document(filter_text, "filter")
    projection_doc = None
    if projection and projection.strip() not in ("", "{}"):
        projection_doc = _parse_document(projection, "projection")

    if limit <= 0 or limit > MAX_FIND_LIMIT:
        limit = DEFAULT_PAGE_SIZE
    skip = max(0, skip)

    client = _safe_client(mongo_uri)
    try:
        collection = client[database_name][collection_name]
        started = time.monotonic()

        total = collection.count_documents(mongo_filter, maxTimeMS=QUERY_TIMEOUT_MS)

        cursor = collection.find(
            mongo_filter,
            projection_doc,
            max_time_ms=QUERY_TIMEOUT_MS,
        )
        sort_keys = parse_sort(sort)
        if sort_keys:
            cursor = cursor.sort(sort_keys)
        cursor = cursor.skip(skip).limit(limit)

        documents = [to_relaxed_json(doc) for doc in cursor]
        query_time_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "[FIND] %s.%s returned %d/%d docs in %dms",
            database_name, collection_name, len(documents), total, query_time_ms,
        )
        return {"documents": documents, "total": total, "queryTimeMs": query_time_ms}

    except ExecutionTimeout:
        raise TimeoutError("Query timed out after exceeding the time limit.")
    finally:
        client.close()


# ---------------------- PROFILE / SCHEMA ----------------------

def get_collection_profile(mongo_uri: str, database_name: str, collection_name: str) -> DocumentProfile:
    client = _safe_client(mongo_uri)
    try:
        db = client[database_name]
        stats = db.command("collStats", collection_name)
        sample: List[Dict[str, Any]] = []
        if stats.get("count"):
            try:
                sample = list(db[collection_name].find({}, limit=PROFILE_SAMPLE_SIZE))
            except PyMongoError as e:
                logger.warning("[PROFILE] Sampling %s.%s failed, keeping stats only: %s", database_name, collection_name, e)
        return build_document_profile(stats, sample)
    finally:
        client.close()


def sample_collection_schema(
    mongo_uri: str,
    database_name: str,
    collection_name: str,
    sample_size: int = 10,
) -> Dict[str, Any]:
    """Sample up to ``sample_size`` documents spread evenly across the collection."""
    if sample_size <= 0:
        sample_size = 10

    client = _safe_client(mongo_uri)
    try:
        collection = client[database_name][collection_name]
        total = collection.count_documents({})
        if total == 0:
            return infer_schema([], collection_name, 0)

        interval = max(1, total // sample_size)
        docs: List[Dict[str, Any]] = []
        position = 0
        while position < total and len(docs) < sample_size:
            doc = collection.find_one({}, skip=position)
            if doc is not None:
                docs.append(doc)
            position += interval
    finally:
        client.close()

    logger.info(
        "[SCHEMA] Sampled %d of %d docs from %s.%s",
        len(docs), total, database_name, collection_name,
    )
    return infer_schema(docs, collection_name, total)


# ---------------------- EXPLAIN ----------------------

_WRAPPING_STAGES = {
    "FETCH": "Fetch",
    "SORT": "Sort",
    "LIMIT": "Limit",
    "SKIP": "Skip",
    "PROJECTION_COVERED": "Covered Projection",
    "PROJECTION_SIMPLE": "Projection",
    "PROJECTION_DEFAULT": "Projection",
}


def summarize_plan(plan: Dict[str, Any]) -> str:
    """``FETCH → IXSCAN`` becomes ``"Fetch -> Index Scan using 'age_1'"``."""
    stage = plan.get("stage") or ""
    if stage == "COLLSCAN":
        return "Collection Scan (no index used)"
    if stage == "IXSCAN":
        return f"Index Scan using '{plan.get('indexName', '')}'"
    if stage == "IDHACK":
        return "ID Lookup (fast path)"
    if stage in _WRAPPING_STAGES:
        label = _WRAPPING_STAGES[stage]
        inner = plan.get("inputStage")
        return f"{label} -> {summarize_plan(inner)}" if isinstance(inner, dict) else label
    return stage or "Unknown"


def _find_index_name(plan: Dict[str, Any]) -> str:
    if plan.get("stage") == "IXSCAN" and plan.get("indexName"):
        return plan["indexName"]
    inner = plan.get("inputStage")
    return _find_index_name(inner) if isinstance(inner, dict) else ""


def _is_collection_scan(plan: Dict[str, Any]) -> bool:
    if plan.get("stage") == "COLLSCAN":
        return True
    inner = plan.get("inputStage")
    return _is_collection_scan(inner) if isinstance(inner, dict) else False


def build_explain_result(raw: Dict[str, Any]) -> Dict[str, Any]:
    planner = raw.get("queryPlanner") or {}
    stats = raw.get("executionStats") or {}
    winning = planner.get("winningPlan") or {}
    # slot-based engine explains nest the plan tree under "queryPlan"
    if "queryPlan" in winning and isinstance(winning["queryPlan"], dict):
        winning = winning["queryPlan"]

    parsed_query = planner.get("parsedQuery")
    return {
        "queryPlanner": {
            "namespace": planner.get("namespace", ""),
            "indexFilterSet": bool(planner.get("indexFilterSet", False)),
            "parsedQuery": json_util.dumps(parsed_query, json_options=RELAXED_JSON_OPTIONS) if parsed_query else "",
            "rejectedPlans": len(planner.get("rejectedPlans") or []),
            "winningPlanStage": winning.get("stage", ""),
        },
        "executionStats": {
            "executionSuccess": bool(stats.get("executionSuccess", False)),
            "nReturned": int(stats.get("nReturned", 0)),
            "executionTimeMs": int(stats.get("executionTimeMillis", 0)),
            "totalKeysExamined": int(stats.get("totalKeysExamined", 0)),
            "totalDocsExamined": int(stats.get("totalDocsExamined", 0)),
        },
        "winningPlan": summarize_plan(winning) if winning else "",
        "indexUsed": _find_index_name(winning) if winning else "",
        "isCollectionScan": _is_collection_scan(winning) if winning else False,
        "rawExplain": json_util.dumps(raw, json_options=RELAXED_JSON_OPTIONS, indent=2),
    }


def explain_query(mongo_uri: str, database_name: str, collection_name: str, filter_text: str) -> Dict[str, Any]:
    mongo_filter = _parse_document(filter_text, "filter")

    client = _safe_client(mongo_uri)
    try:
        raw = client[database_name].command(
            {
                "explain": {"find": collection_name, "filter": mongo_filter},
                "verbosity": "executionStats",
            },
        )
    finally:
        client.close()

    return build_explain_result(raw)
