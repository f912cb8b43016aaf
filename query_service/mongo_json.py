"""
Relaxed MongoDB shell syntax → strict JSON.

The query editor and mongosh both speak JavaScript object notation rather
than JSON:

    { name: 'Ada', _id: ObjectId('65a1...'), n: NumberLong(3), }

This module rewrites that notation into Extended JSON text:

- shell constructors (``ObjectId``, ``ISODate``, ``NumberLong``, ``Long``,
  ``Int32``, ``Decimal128``, ``Timestamp``, ``BinData``, ``UUID``, …)
  become ``{"$oid": …}``-style wrappers
- result-type prefixes (``InsertManyResult { … }``) are dropped
- single-quoted strings become double-quoted
- bare object keys are quoted
- trailing commas before ``}`` / ``]`` are removed

The last three steps are done by a small scanner that never touches text
inside string literals.  Everything here is best-effort; callers fall back
to the raw text when the result still is not JSON.
"""

import json
import re
from typing import Any, Dict, Optional

from bson import json_util

# ---------------------- SHELL TYPE CONSTRUCTORS ----------------------

RESULT_TYPE_NAMES = (
    "InsertOneResult",
    "InsertManyResult",
    "UpdateResult",
    "DeleteResult",
    "BulkWriteResult",
    "ModifyResult",
)

_RESULT_TYPE_RE = re.compile(r"\b(?:%s)\s*\{" % "|".join(RESULT_TYPE_NAMES))

_Q = r"[\"']"  # either quote character

_SIMPLE_CONVERSIONS = [
    (re.compile(r"\bObjectId\s*\(\s*%s([a-fA-F0-9]{24})%s\s*\)" % (_Q, _Q)), r'{"$oid":"\1"}'),
    (re.compile(r"\bISODate\s*\(\s*%s([^\"']+)%s\s*\)" % (_Q, _Q)), r'{"$date":"\1"}'),
    (re.compile(r"\bnew\s+Date\s*\(\s*%s([^\"']+)%s\s*\)" % (_Q, _Q)), r'{"$date":"\1"}'),
    (
        re.compile(r"\bTimestamp\s*\(\s*\{\s*t\s*:\s*(\d+)\s*,\s*i\s*:\s*(\d+)\s*\}\s*\)"),
        r'{"$timestamp":{"t":\1,"i":\2}}',
    ),
    (re.compile(r"\bTimestamp\s*\(\s*(\d+)\s*,\s*(\d+)\s*\)"), r'{"$timestamp":{"t":\1,"i":\2}}'),
    (
        re.compile(r"\b(?:NumberLong|Long)\s*\(\s*[\"']?(-?\d+)[\"']?\s*\)"),
        r'{"$numberLong":"\1"}',
    ),
    (
        re.compile(r"\b(?:NumberInt|Int32)\s*\(\s*[\"']?(-?\d+)[\"']?\s*\)"),
        r'{"$numberInt":"\1"}',
    ),
    (
        re.compile(r"\bDouble\s*\(\s*[\"']?(-?[0-9.eE+-]+)[\"']?\s*\)"),
        r'{"$numberDouble":"\1"}',
    ),
    (
        re.compile(r"\b(?:NumberDecimal|Decimal128)\s*\(\s*%s([^\"']+)%s\s*\)" % (_Q, _Q)),
        r'{"$numberDecimal":"\1"}',
    ),
    (re.compile(r"\bUUID\s*\(\s*%s([^\"']+)%s\s*\)" % (_Q, _Q)), r'{"$uuid":"\1"}'),
    (re.compile(r"\bMinKey\s*\(\s*\)"), r'{"$minKey":1}'),
    (re.compile(r"\bMaxKey\s*\(\s*\)"), r'{"$maxKey":1}'),
]

_BINDATA_RE = re.compile(r"\bBinData\s*\(\s*(\d+)\s*,\s*%s([^\"']*)%s\s*\)" % (_Q, _Q))
_BINARY_B64_RE = re.compile(
    r"\bBinary\.createFromBase64\s*\(\s*%s([^\"']*)%s\s*(?:,\s*(\d+)\s*)?\)" % (_Q, _Q)
)

# /pattern/flags in value position (after ':', '[' or ',')
_REGEX_LITERAL_RE = re.compile(r"([:\[,]\s*)/((?:\\/|[^/\n])+)/([gimsuy]*)")


def _binary_json(base64: str, sub_type: Optional[str]) -> str:
    sub = format(int(sub_type or 0), "02x")
    return '{"$binary":{"base64":%s,"subType":"%s"}}' % (json.dumps(base64), sub)


def _regex_json(match: "re.Match[str]") -> str:
    prefix, pattern, flags = match.group(1), match.group(2), match.group(3)
    pattern = pattern.replace("\\/", "/")
    return '%s{"$regularExpression":{"pattern":%s,"options":"%s"}}' % (
        prefix,
        json.dumps(pattern),
        flags,
    )


def strip_result_type_wrappers(text: str) -> str:
    """``InsertManyResult { … }`` → ``{ … }``."""
    return _RESULT_TYPE_RE.sub("{", text)


def convert_shell_types(text: str) -> str:
    """Rewrite shell type constructors into Extended JSON wrappers."""
    result = strip_result_type_wrappers(text)
    for pattern, replacement in _SIMPLE_CONVERSIONS:
        result = pattern.sub(replacement, result)
    result = _BINDATA_RE.sub(lambda m: _binary_json(m.group(2), m.group(1)), result)
    result = _BINARY_B64_RE.sub(lambda m: _binary_json(m.group(1), m.group(2)), result)
    result = _REGEX_LITERAL_RE.sub(_regex_json, result)
    return result


# ---------------------- STRING-AWARE SCANNER ----------------------


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _skip_ws(text: str, index: int) -> int:
    while index < len(text) and text[index].isspace():
        index += 1
    return index


def relax_to_json(text: str) -> str:
    """Quote bare keys, normalise quotes and drop trailing commas.

    String contents are copied through untouched (apart from re-escaping
    double quotes that appear inside single-quoted strings).
    """
    out = []
    last_sig = ""
    quote: Optional[str] = None
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if quote is not None:
            if ch == "\\":
                nxt = text[i + 1] if i + 1 < n else ""
                out.append("'" if (quote == "'" and nxt == "'") else ch + nxt)
                i += 2
                continue
            if ch == quote:
                out.append('"')
                last_sig = '"'
                quote = None
            elif ch == '"':
                out.append('\\"')
            else:
                out.append(ch)
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            out.append('"')
            i += 1
            continue

        if ch == ",":
            j = _skip_ws(text, i + 1)
            if j < n and text[j] in "}]":
                i += 1
                continue

        if _is_ident_start(ch) and last_sig in ("{", ","):
            j = i
            while j < n and _is_ident_char(text[j]):
                j += 1
            word = text[i:j]
            k = _skip_ws(text, j)
            if k < n and text[k] == ":":
                out.append('"%s"' % word)
                last_sig = '"'
            else:
                out.append(word)
                last_sig = word[-1]
            i = j
            continue

        out.append(ch)
        if not ch.isspace():
            last_sig = ch
        i += 1

    return "".join(out)


def to_strict_json(text: str) -> str:
    """Full shell-notation → JSON rewrite (types first, then the scanner)."""
    return relax_to_json(convert_shell_types(text))


# ---------------------- LOADERS ----------------------


def loads_relaxed(text: str) -> Any:
    """Parse JSON or shell notation into plain Python values.

    Extended JSON wrappers (``{"$oid": …}``) are kept as dicts, which is
    what the result table renders.
    """
    try:
        return json.loads(text)
    except ValueError:
        return json.loads(to_strict_json(text))


def loads_extended(text: Optional[str]) -> Dict[str, Any]:
    """Parse a filter / projection / sort document into BSON-ready values.

    Extended JSON wrappers become real BSON types (``ObjectId``,
    ``datetime``, ``Int64``, …) so the result can be handed to pymongo.
    Raises ``ValueError`` when the text is not an object.
    """
    stripped = (text or "").strip()
    if not stripped or stripped == "{}":
        return {}
    try:
        parsed = json_util.loads(stripped)
    except ValueError:
        parsed = json_util.loads(to_strict_json(stripped))
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a document, got {type(parsed).__name__}: {stripped[:80]}")
    return parsed
