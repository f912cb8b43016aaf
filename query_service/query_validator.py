"""
Editor diagnostics for query text.

Two independent sources, merged into one list:

- syntax: JSON well-formedness of the filter / pipeline argument, common
  shell-vs-JSON mistakes, unknown ``$operators`` (with typo suggestions)
  and unbalanced brackets or quotes
- field: filter keys that do not appear in the collection's sampled
  field names (simple queries only, and only when field names are cached)

Positions are 1-indexed ``(line, column)``; end columns are exclusive.
Validation is pure and never raises.  ``DebouncedValidator`` runs it on an
event-loop timer after the editor has been quiet for a while.
"""

import asyncio
import json
import re
from difflib import get_close_matches
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from config import VALIDATION_DEBOUNCE_MS
from logger import logger
from mongo_json import loads_relaxed, to_strict_json
from query_classifier import find_matching_bracket, is_simple_query, parse_filter_from_query

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

SOURCE_SYNTAX = "syntax"
SOURCE_FIELD = "field"


class Diagnostic(BaseModel):
    severity: str
    message: str
    start_line: int
    start_col: int
    end_line: int
    end_col: int
    source: str = SOURCE_SYNTAX


# ---------------------- OPERATORS ----------------------

VALID_QUERY_OPERATORS: Set[str] = {
    # comparison / logical / element
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin",
    "$and", "$or", "$not", "$nor", "$exists", "$type",
    # evaluation / array
    "$expr", "$jsonSchema", "$mod", "$regex", "$options", "$text", "$search", "$where",
    "$all", "$elemMatch", "$size",
    # geospatial
    "$geoIntersects", "$geoWithin", "$near", "$nearSphere", "$box", "$center",
    "$centerSphere", "$geometry", "$maxDistance", "$minDistance", "$polygon",
    # bitwise / misc
    "$bitsAllClear", "$bitsAllSet", "$bitsAnyClear", "$bitsAnySet",
    "$comment", "$meta", "$natural", "$rand", "$sampleRate", "$slice",
    # update
    "$set", "$unset", "$inc", "$push", "$pull", "$addToSet", "$pop", "$rename",
    "$bit", "$min", "$max", "$mul", "$currentDate", "$setOnInsert",
    "$each", "$position", "$sort",
    # aggregation stages
    "$match", "$project", "$group", "$limit", "$skip", "$unwind",
    "$lookup", "$graphLookup", "$facet", "$bucket", "$bucketAuto", "$count",
    "$addFields", "$replaceRoot", "$replaceWith", "$merge", "$out",
    "$sample", "$redact", "$sortByCount", "$unionWith", "$setWindowFields",
    # aggregation expressions
    "$abs", "$add", "$ceil", "$divide", "$exp", "$floor", "$ln", "$log", "$log10",
    "$multiply", "$pow", "$round", "$sqrt", "$subtract", "$trunc",
    "$sum", "$avg", "$first", "$last", "$stdDevPop", "$stdDevSamp",
    "$concat", "$indexOfBytes", "$indexOfCP", "$ltrim", "$rtrim", "$regexFind",
    "$regexFindAll", "$regexMatch", "$split", "$strLenBytes", "$strLenCP",
    "$strcasecmp", "$substrBytes", "$substrCP", "$toLower", "$toString", "$toUpper", "$trim",
    "$arrayElemAt", "$arrayToObject", "$concatArrays", "$filter",
    "$indexOfArray", "$isArray", "$map", "$objectToArray", "$range",
    "$reduce", "$reverseArray", "$zip",
    "$cond", "$ifNull", "$switch",
    "$convert", "$toBool", "$toDate", "$toDecimal", "$toDouble", "$toInt", "$toLong", "$toObjectId",
    "$year", "$month", "$dayOfMonth", "$dayOfWeek", "$dayOfYear", "$hour", "$minute",
    "$second", "$millisecond",
    "$dateFromParts", "$dateFromString", "$dateToParts", "$dateToString",
    # Extended JSON wrappers
    "$oid", "$binary", "$date", "$numberInt", "$numberLong", "$numberDouble", "$numberDecimal",
    "$timestamp", "$undefined", "$minKey", "$maxKey", "$uuid", "$regularExpression",
}

# keys are lower-cased
OPERATOR_TYPOS: Dict[str, str] = {
    "$eqq": "$eq",
    "$neq": "$ne",
    "$gtt": "$gt",
    "$ltt": "$lt",
    "$inn": "$in",
    "$ninn": "$nin",
    "$andd": "$and",
    "$orr": "$or",
    "$nott": "$not",
    "$norr": "$nor",
    "$exsits": "$exists",
    "$exisits": "$exists",
    "$exist": "$exists",
    "$tpye": "$type",
    "$typee": "$type",
    "$rege": "$regex",
    "$regx": "$regex",
    "$regexp": "$regex",
    "$elemmatch": "$elemMatch",
    "$elematch": "$elemMatch",
    "$eachh": "$each",
    "$pussh": "$push",
    "$pulll": "$pull",
    "$sett": "$set",
    "$unsett": "$unset",
    "$incc": "$inc",
    "$minn": "$min",
    "$maxx": "$max",
}

# Operators whose operand may hold further field conditions.
FIELD_TRAVERSAL_OPERATORS = {"$and", "$or", "$nor", "$not", "$elemMatch"}

_OPERATOR_KEY_RE = re.compile(r"([\"']?)(\$[A-Za-z_]\w*)\1\s*:")

_JSON_CALL_PATTERNS = [
    re.compile(r"\.%s\s*\(\s*" % name)
    for name in (
        "find", "aggregate", "findOne",
        "updateOne", "updateMany", "deleteOne", "deleteMany",
        "insertOne", "insertMany", "replaceOne",
    )
]

_BRACKET_NAMES = {"{": ("brace", "}"), "[": ("bracket", "]"), "(": ("parenthesis", ")")}
_CLOSING = {"}": "{", "]": "[", ")": "("}


# ---------------------- POSITIONS ----------------------

def position_at(text: str, index: int) -> Tuple[int, int]:
    """1-indexed ``(line, column)`` of ``index`` in ``text``."""
    index = max(0, min(index, len(text)))
    before = text[:index]
    line = before.count("\n") + 1
    column = index - (before.rfind("\n") + 1) + 1
    return line, column


def _diagnostic(
    text: str,
    start: int,
    end: int,
    message: str,
    severity: str,
    source: str = SOURCE_SYNTAX,
) -> Diagnostic:
    start_line, start_col = position_at(text, start)
    end_line, end_col = position_at(text, max(end, start + 1))
    return Diagnostic(
        severity=severity,
        message=message,
        start_line=start_line,
        start_col=start_col,
        end_line=end_line,
        end_col=end_col,
        source=source,
    )


# ---------------------- SYNTAX ----------------------

def _balanced_from(text: str, start: int) -> str:
    close = find_matching_bracket(text, start)
    return text[start:] if close == -1 else text[start:close + 1]


def extract_json_from_query(query: str) -> Tuple[Optional[str], int]:
    """The first JSON-ish argument of ``query`` and its offset in ``query``."""
    stripped = query.lstrip()
    lead = len(query) - len(stripped)
    if stripped[:1] in ("{", "["):
        return _balanced_from(query, lead), lead

    for pattern in _JSON_CALL_PATTERNS:
        match = pattern.search(query)
        if match and query[match.end():match.end() + 1] in ("{", "["):
            return _balanced_from(query, match.end()), match.end()
    return None, 0


def _json_error(text: str) -> Optional[Tuple[str, int]]:
    try:
        json.loads(text)
        return None
    except ValueError:
        pass
    converted = to_strict_json(text)
    try:
        json.loads(converted)
        return None
    except json.JSONDecodeError as exc:
        return exc.msg, min(exc.pos, len(text) - 1)


def _common_mistakes(query: str, json_text: str, offset: int) -> List[Diagnostic]:
    found: List[Diagnostic] = []

    def add(start: int, end: int, message: str, severity: str) -> None:
        found.append(_diagnostic(query, offset + start, offset + end, message, severity))

    for m in re.finditer(r",(\s*)[}\]]", json_text):
        add(m.start(), m.start() + 1,
            "Trailing comma before closing bracket (not valid in strict JSON)", SEVERITY_WARNING)

    for m in re.finditer(r":\s*(\"(true|false)\")", json_text, re.IGNORECASE):
        value = m.group(2)
        add(m.start(1), m.end(1),
            f'String "{value}" found - did you mean the boolean {value} (without quotes)?',
            SEVERITY_WARNING)

    for m in re.finditer(r":\s*(\"null\")", json_text, re.IGNORECASE):
        add(m.start(1), m.end(1),
            'String "null" found - did you mean null (without quotes)?', SEVERITY_WARNING)

    for m in re.finditer(r":\s*(ObjectId)\s*\(", json_text, re.IGNORECASE):
        add(m.start(1), m.end(1),
            'ObjectId() syntax requires mongosh. For JSON queries, use { "$oid": "..." }',
            SEVERITY_INFO)

    for m in re.finditer(r":\s*(ISODate)\s*\(", json_text, re.IGNORECASE):
        add(m.start(1), m.end(1),
            'ISODate() syntax requires mongosh. For JSON queries, use { "$date": "..." }',
            SEVERITY_INFO)

    for m in re.finditer(r"'(?:[^'\\]|\\.)*'", json_text):
        if "$regex" in json_text[max(0, m.start() - 10):m.start()]:
            continue
        add(m.start(), m.end(),
            "Single quotes are not valid JSON - use double quotes instead", SEVERITY_WARNING)

    return found


def suggest_operator(operator: str) -> Optional[str]:
    suggestion = OPERATOR_TYPOS.get(operator.lower())
    if suggestion:
        return suggestion
    matches = get_close_matches(operator, sorted(VALID_QUERY_OPERATORS), n=1, cutoff=0.8)
    return matches[0] if matches else None


def _unknown_operators(query: str, json_text: str, offset: int) -> List[Diagnostic]:
    found = []
    for m in _OPERATOR_KEY_RE.finditer(json_text):
        operator = m.group(2)
        if operator in VALID_QUERY_OPERATORS:
            continue
        suggestion = suggest_operator(operator)
        if suggestion:
            message = f'Unknown operator "{operator}" - did you mean "{suggestion}"?'
        else:
            message = f'Unknown operator "{operator}" - this may not be a valid MongoDB operator'
        start = offset + m.start(2)
        found.append(_diagnostic(query, start, start + len(operator), message, SEVERITY_WARNING))
    return found


def _bracket_balance(query: str) -> List[Diagnostic]:
    counts = {"{": 0, "[": 0, "(": 0}
    quote = None
    quote_start = 0
    escaped = False

    for i, ch in enumerate(query):
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'`":
            quote, quote_start = ch, i
        elif ch in counts:
            counts[ch] += 1
        elif ch in _CLOSING:
            counts[_CLOSING[ch]] -= 1

    found = []
    if quote is not None:
        found.append(_diagnostic(
            query, quote_start, quote_start + 1,
            f"Unclosed string - missing closing {quote}", SEVERITY_ERROR,
        ))
    for opener, count in counts.items():
        name, closer = _BRACKET_NAMES[opener]
        if count > 0:
            message = f"Unclosed {name} - missing {count} closing '{closer}'"
        elif count < 0:
            message = f"Extra closing {name} - {-count} unmatched '{closer}'"
        else:
            continue
        found.append(Diagnostic(
            severity=SEVERITY_ERROR, message=message,
            start_line=1, start_col=1, end_line=1, end_col=2,
        ))
    return found


def validate_query(query: Any) -> List[Diagnostic]:
    """Syntax diagnostics for ``query``; empty for empty or non-string input."""
    if not isinstance(query, str) or not query.strip():
        return []

    diagnostics: List[Diagnostic] = []
    json_text, offset = extract_json_from_query(query)

    if json_text:
        error = _json_error(json_text)
        if error is not None:
            message, index = error
            diagnostics.append(_diagnostic(
                query, offset + index, offset + index + 1,
                f"JSON syntax error: {message}", SEVERITY_ERROR,
            ))
        diagnostics.extend(_common_mistakes(query, json_text, offset))
        diagnostics.extend(_unknown_operators(query, json_text, offset))

    diagnostics.extend(_bracket_balance(query))
    return diagnostics


# ---------------------- FIELDS ----------------------

def extract_field_names(query_obj: Any, current_path: str = "") -> Set[str]:
    """Field paths referenced by a filter document.

    Logical operators are traversed; ``{field: {$op: ...}}`` only descends
    into ``$elemMatch`` (whose keys are relative to ``field``).
    """
    names: Set[str] = set()

    if isinstance(query_obj, list):
        for item in query_obj:
            names |= extract_field_names(item, current_path)
        return names
    if not isinstance(query_obj, dict):
        return names

    for key, value in query_obj.items():
        if key.startswith("$"):
            if key in FIELD_TRAVERSAL_OPERATORS and isinstance(value, (dict, list)):
                names |= extract_field_names(value, current_path)
            continue

        full_path = f"{current_path}.{key}" if current_path else key
        names.add(full_path)

        if isinstance(value, dict) and any(k.startswith("$") for k in value):
            nested = value.get("$elemMatch")
            if isinstance(nested, dict):
                names |= extract_field_names(nested, full_path)
    return names


def extract_field_names_from_filter(filter_text: Optional[str]) -> Set[str]:
    stripped = (filter_text or "").strip()
    if not stripped or stripped == "{}":
        return set()
    try:
        parsed = loads_relaxed(stripped)
    except ValueError:
        return set()
    return extract_field_names(parsed)


def validate_field_names(
    query_fields: Iterable[str],
    schema_fields: Optional[Set[str]],
) -> List[Dict[str, str]]:
    """``[{field, message}]`` for every field unknown to ``schema_fields``."""
    if not schema_fields:
        return []

    warnings = []
    for field in sorted(query_fields):
        if field in schema_fields:
            continue
        if any(known.startswith(field + ".") for known in schema_fields):
            continue

        parts = field.split(".")
        has_parent = any(".".join(parts[:i]) in schema_fields for i in range(len(parts) - 1, 0, -1))
        if has_parent:
            message = f"Unknown field '{field}' (not found in sampled documents)"
        else:
            message = f"Unknown field '{field}'"
        warnings.append({"field": field, "message": message})
    return warnings


def field_warnings_to_diagnostics(query: str, warnings: List[Dict[str, str]]) -> List[Diagnostic]:
    """Attach each warning to every place its field appears as a key."""
    diagnostics = []
    for warning in warnings:
        field = warning["field"]
        escaped = re.escape(field)
        spans = []
        for pattern in (
            r'"(%s)"\s*:' % escaped,
            r"'(%s)'\s*:" % escaped,
            r"[{,]\s*(%s)\s*:" % escaped,
        ):
            spans.extend(m.span(1) for m in re.finditer(pattern, query))

        if not spans:
            index = query.find(field)
            if index != -1:
                spans.append((index, index + len(field)))

        for start, end in spans:
            diagnostics.append(_diagnostic(
                query, start, end, warning["message"], SEVERITY_WARNING, SOURCE_FIELD,
            ))
    return diagnostics


def validate_fields(query: Any, field_names: Optional[Set[str]]) -> List[Diagnostic]:
    """Field diagnostics; empty unless the query is simple and fields are known."""
    if not isinstance(query, str) or not field_names or not is_simple_query(query):
        return []
    query_fields = extract_field_names_from_filter(parse_filter_from_query(query))
    return field_warnings_to_diagnostics(query, validate_field_names(query_fields, field_names))


def collect_diagnostics(query: Any, field_names: Optional[Set[str]] = None) -> List[Diagnostic]:
    return validate_query(query) + validate_fields(query, field_names)


# ---------------------- DEBOUNCE ----------------------

class DebouncedValidator:
    """Re-validates after ``delay_ms`` of quiet; every edit restarts the timer.

    ``field_names`` is called when the timer fires so the freshest cached
    field names are used.  Results are handed to ``on_diagnostics``.
    """

    def __init__(
        self,
        field_names: Callable[[], Optional[Set[str]]],
        on_diagnostics: Callable[[List[Diagnostic]], None],
        delay_ms: int = VALIDATION_DEBOUNCE_MS,
    ):
        self._field_names = field_names
        self._on_diagnostics = on_diagnostics
        self.delay_ms = delay_ms
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, query: str) -> None:
        """Restart the quiet-period timer; needs a running event loop."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_ms / 1000, self._fire, query)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def validate_now(self, query: str) -> List[Diagnostic]:
        self.cancel()
        return self._fire(query)

    def _fire(self, query: str) -> List[Diagnostic]:
        self._handle = None
        diagnostics = collect_diagnostics(query, self._field_names())
        logger.debug("[VALIDATE] %d diagnostics", len(diagnostics))
        self._on_diagnostics(diagnostics)
        return diagnostics
