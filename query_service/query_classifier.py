"""
Query classification and find() argument handling.

A query is *simple* when it can be run through the driver's structured
find path: an empty editor, a single filter object, or a single
``db.<coll>.find(<filter>[, <projection>])`` call.  Everything else
(aggregations, chained cursor methods, multi-statement scripts) is
*complex* and goes to the shell.  When in doubt, classify as complex.
"""

import json
import re
from enum import Enum
from typing import Iterator, List, Optional, Tuple

# ---------------------- CONSTANTS ----------------------

_OPENERS = "({["
_CLOSERS = ")}]"

_FIND_CALL_RE = re.compile(r"\.find\s*\(")

_COLLECTION_TARGET_RE = re.compile(
    r"""^db\s*\.\s*(?:
        getCollection\s*\(\s*(?P<q>["'`]).*?(?P=q)\s*\)
      | [A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*
    )\s*$""",
    re.VERBOSE | re.DOTALL,
)

# Calls that mutate data or metadata; matched case-insensitively.
WRITE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\.insert(?:One|Many)?\s*\(",
        r"\.update(?:One|Many)?\s*\(",
        r"\.delete(?:One|Many)?\s*\(",
        r"\.remove\s*\(",
        r"\.drop\s*\(",
        r"\.createIndex\s*\(",
        r"\.dropIndex\s*\(",
        r"\.replaceOne\s*\(",
        r"\.findOneAndUpdate\s*\(",
        r"\.findOneAndReplace\s*\(",
        r"\.findOneAndDelete\s*\(",
        r"\.bulkWrite\s*\(",
        r"\.save\s*\(",
    )
]

# Write calls that print nothing when run non-interactively.
SILENT_WRITE_OPERATIONS = [
    "insertOne", "insertMany",
    "updateOne", "updateMany",
    "deleteOne", "deleteMany",
    "replaceOne", "bulkWrite",
    "findOneAndUpdate", "findOneAndDelete", "findOneAndReplace",
    "drop", "createIndex", "dropIndex", "dropIndexes",
    "createCollection", "renameCollection",
]

_OUTPUT_MECHANISM_RE = re.compile(
    r"printjson\s*\(|print\s*\(|console\.log\s*\(|\.toArray\s*\(\s*\)"
)
_ENDS_WITH_WRITE_RE = re.compile(
    r"\.(?:%s)\s*\([\s\S]*\)\s*;?\s*$" % "|".join(SILENT_WRITE_OPERATIONS)
)
_CONTAINS_WRITE_RE = re.compile(r"\.(?:%s)\s*\(" % "|".join(SILENT_WRITE_OPERATIONS))
_ASSIGNMENT_RE = re.compile(r"^(?:var|let|const)\s+([A-Za-z_$][\w$]*)\s*=")


class QueryKind(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


# ---------------------- SCANNING HELPERS ----------------------


def iter_code_chars(text: str, start: int = 0) -> Iterator[Tuple[int, str]]:
    """Yield ``(index, char)`` for every character outside string literals."""
    quote = None
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'`":
            quote = ch
            continue
        yield i, ch


def find_matching_bracket(text: str, open_index: int) -> int:
    """Index of the bracket closing the one at ``open_index``, or -1."""
    depth = 0
    for i, ch in iter_code_chars(text, open_index):
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i
    return -1


def _strip_trailing_semicolons(text: str) -> str:
    return re.sub(r"[;\s]+$", "", text)


def _find_call(text: str) -> Optional[Tuple[int, int, int]]:
    """Locate the first ``.find(`` call.

    Returns ``(dot_index, open_paren_index, close_paren_index)``; the close
    index is -1 when the call is never closed.
    """
    match = _FIND_CALL_RE.search(text)
    if not match:
        return None
    open_index = match.end() - 1
    return match.start(), open_index, find_matching_bracket(text, open_index)


# ---------------------- CLASSIFICATION ----------------------


def classify_query(text: Optional[str]) -> QueryKind:
    trimmed = _strip_trailing_semicolons((text or "").strip())
    if not trimmed:
        return QueryKind.SIMPLE

    if any(ch == ";" for _, ch in iter_code_chars(trimmed)):
        return QueryKind.COMPLEX

    if trimmed.startswith("{"):
        close = find_matching_bracket(trimmed, 0)
        return QueryKind.SIMPLE if close == len(trimmed) - 1 else QueryKind.COMPLEX

    call = _find_call(trimmed)
    if call is None:
        return QueryKind.COMPLEX
    dot, _, close = call
    if close != len(trimmed) - 1:
        return QueryKind.COMPLEX
    if not _COLLECTION_TARGET_RE.match(trimmed[:dot]):
        return QueryKind.COMPLEX
    return QueryKind.SIMPLE


def is_simple_query(text: Optional[str]) -> bool:
    return classify_query(text) is QueryKind.SIMPLE


def is_write_query(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in WRITE_PATTERNS)


# ---------------------- FIND ARGUMENTS ----------------------


def split_find_arguments(args: str) -> Tuple[str, Optional[str]]:
    """Split ``find()`` arguments into ``(filter, projection)``."""
    trimmed = args.strip()
    if not trimmed:
        return "{}", None

    depth = 0
    for i, ch in iter_code_chars(trimmed):
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
        elif ch == "," and depth == 0:
            filter_text = trimmed[:i].strip() or "{}"
            projection = trimmed[i + 1:].strip() or None
            return filter_text, projection
    return trimmed, None


def _find_arguments(text: str) -> Optional[str]:
    call = _find_call(text)
    if call is None:
        return None
    _, open_index, close = call
    if close == -1:
        return text[open_index + 1:].strip()
    return text[open_index + 1:close].strip()


def parse_filter_from_query(text: Optional[str]) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        return "{}"
    if trimmed.startswith("{"):
        return _strip_trailing_semicolons(trimmed)

    args = _find_arguments(trimmed)
    if args is not None:
        return split_find_arguments(args)[0] if args else "{}"

    # ".find" without a call: let the driver reject the empty filter
    if ".find" in trimmed:
        return ""
    return trimmed


def parse_projection_from_query(text: Optional[str]) -> Optional[str]:
    trimmed = (text or "").strip()
    if not trimmed or trimmed.startswith("{"):
        return None
    args = _find_arguments(trimmed)
    if not args:
        return None
    return split_find_arguments(args)[1]


def build_full_query(collection: str, filter_text: str, projection: Optional[str] = None) -> str:
    args = filter_text or "{}"
    if projection:
        args = f"{args}, {projection}"
    return f"db.getCollection({json.dumps(collection)}).find({args})"


# ---------------------- SCRIPT OUTPUT WRAPPING ----------------------


def _split_statements(script: str) -> List[str]:
    statements = []
    last = 0
    for i, ch in iter_code_chars(script):
        if ch == ";":
            statements.append(script[last:i])
            last = i + 1
    statements.append(script[last:])
    return [s.strip() for s in statements if s.strip()]


def _write_result_variables(script: str) -> List[str]:
    names = []
    for statement in _split_statements(script):
        match = _ASSIGNMENT_RE.match(statement)
        if match and _CONTAINS_WRITE_RE.search(statement):
            names.append(match.group(1))
    return names


def wrap_script_for_output(script: Optional[str]) -> str:
    """Make a script that ends in a silent write print its result.

    - scripts that already print (printjson / print / console.log /
      toArray) are returned unchanged
    - write results assigned to variables are printed afterwards
    - a trailing bare write call is wrapped in ``printjson(...)``
    """
    trimmed = (script or "").strip()
    if not trimmed or _OUTPUT_MECHANISM_RE.search(trimmed):
        return trimmed

    variables = _write_result_variables(trimmed)
    if len(variables) > 1:
        return trimmed + "; printjson({ " + ", ".join(variables) + " })"
    if variables:
        return trimmed + "; printjson(" + variables[0] + ")"

    body = re.sub(r";\s*$", "", trimmed)
    last_semicolon = -1
    for i, ch in iter_code_chars(body):
        if ch == ";":
            last_semicolon = i
    prefix = body[: last_semicolon + 1] if last_semicolon >= 0 else ""
    last_statement = body[last_semicolon + 1:].strip()

    if last_statement and _ENDS_WITH_WRITE_RE.search(last_statement):
        if not _ASSIGNMENT_RE.match(last_statement):
            wrapped = f"printjson({last_statement})"
            return f"{prefix} {wrapped}" if prefix else wrapped
    return trimmed
