"""
Output normalizer: turns both result shapes into one document list.

- structured path: the driver returns one Extended JSON string per document
- shell path: mongosh returns a single text blob in shell notation

Neither path ever raises on malformed content.  A bad document becomes a
``{"_parseError", "_raw"}`` placeholder and unparseable shell text becomes a
single ``{"_result": <text>}`` document.
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Set

from mongo_json import to_strict_json

EMPTY_OUTPUT_ERROR = "Empty or invalid output"
SCRIPT_FAILED_MESSAGE = "Script execution failed"


# ---------------------- STRUCTURED PATH ----------------------

def parse_document(raw: str) -> Dict[str, Any]:
    """Parse one driver row; failures become a placeholder document."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return {"_parseError": str(exc), "_raw": raw}
    if not isinstance(parsed, dict):
        return {"_parseError": f"Expected a document, got {type(parsed).__name__}", "_raw": raw}
    return parsed


def normalize_find_result(result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """``{documents: [str], total, queryTimeMs}`` → parsed documents.

    A missing or empty response normalizes to zero documents.
    """
    if not result or result.get("documents") is None:
        return {"documents": [], "total": 0, "query_time_ms": None}

    documents = [parse_document(raw) for raw in result["documents"]]
    return {
        "documents": documents,
        "total": result.get("total") or 0,
        "query_time_ms": result.get("queryTimeMs"),
    }


# ---------------------- SHELL PATH ----------------------

def _as_list(parsed: Any) -> List[Any]:
    return parsed if isinstance(parsed, list) else [parsed]


def _parse_ndjson(lines: Iterable[str]) -> List[Any]:
    return [json.loads(line) for line in lines]


def parse_shell_output(output: Any) -> Dict[str, Any]:
    """Best-effort parse of mongosh output.

    Tried in order: strict JSON, newline-delimited JSON, shell notation
    converted to JSON, then shell notation line by line (unparseable lines
    are skipped).  Returns ``{success, data, error}``.
    """
    if not isinstance(output, str):
        return {"success": False, "data": [], "error": EMPTY_OUTPUT_ERROR}

    trimmed = output.strip()
    if not trimmed:
        return {"success": True, "data": [], "error": None}

    try:
        return {"success": True, "data": _as_list(json.loads(trimmed)), "error": None}
    except ValueError:
        pass

    lines = [line for line in trimmed.split("\n") if line.strip()]

    if len(lines) > 1 and not trimmed.startswith("["):
        try:
            return {"success": True, "data": _parse_ndjson(lines), "error": None}
        except ValueError:
            pass

    try:
        converted = to_strict_json(trimmed)
        return {"success": True, "data": _as_list(json.loads(converted)), "error": None}
    except ValueError as exc:
        error = exc

    docs = []
    for line in lines:
        try:
            docs.append(json.loads(to_strict_json(line)))
        except ValueError:
            continue
    if docs:
        return {"success": True, "data": docs, "error": None}

    return {
        "success": False,
        "data": [],
        "error": f"Failed to parse mongosh output: {error}",
    }


def normalize_script_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """``{output, exitCode, error}`` → documents.

    Raises ``RuntimeError`` when the script itself failed.
    """
    if result.get("exitCode", 0) != 0 or result.get("error"):
        raise RuntimeError(
            result.get("error") or result.get("output") or SCRIPT_FAILED_MESSAGE
        )

    output = (result.get("output") or "").strip()
    if not output:
        return {"documents": [], "total": 0, "query_time_ms": None, "structured": True}

    parsed = parse_shell_output(output)
    if parsed["success"] and parsed["data"]:
        documents = [
            item if isinstance(item, dict) else {"_result": item}
            for item in parsed["data"]
        ]
        return {
            "documents": documents,
            "total": len(documents),
            "query_time_ms": None,
            "structured": True,
        }

    return {
        "documents": [{"_result": output}],
        "total": 1,
        "query_time_ms": None,
        "structured": False,
    }


# ---------------------- FIELD DISCOVERY ----------------------

def _is_extended_json(value: Dict[str, Any]) -> bool:
    return bool(value) and all(k.startswith("$") for k in value)


def extract_field_paths(docs: Iterable[Dict[str, Any]]) -> Set[str]:
    """Collect dot-notation field paths from documents.

    Arrays are terminal and Extended JSON wrappers (``{"$oid": …}``) are
    treated as leaf values.
    """
    paths: Set[str] = set()

    def _walk(obj: Dict[str, Any], prefix: str) -> None:
        for key, value in obj.items():
            if key.startswith("$"):
                continue
            path = f"{prefix}.{key}" if prefix else key
            paths.add(path)
            if isinstance(value, dict) and not _is_extended_json(value):
                _walk(value, path)

    for doc in docs:
        if isinstance(doc, dict):
            _walk(doc, "")
    return paths


def available_columns(docs: Iterable[Dict[str, Any]]) -> List[str]:
    """Top-level keys across ``docs``: ``_id`` first, the rest sorted."""
    keys: Set[str] = set()
    for doc in docs:
        if isinstance(doc, dict):
            keys.update(doc.keys())
    rest = sorted(k for k in keys if k != "_id")
    return (["_id"] if "_id" in keys else []) + rest
