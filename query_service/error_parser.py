"""
Maps raw driver / shell error text to short user-facing summaries.

The full error text is always kept alongside the summary so it can be
shown on demand.
"""

import re
from typing import Any, Dict, List, Optional

ACTION_EDIT_CONNECTION = "editConnection"
ACTION_OPEN_SETTINGS = "openSettings"
ACTION_OPEN_LINK = "openLink"

MONGOSH_DOWNLOAD_URL = "https://www.mongodb.com/try/download/shell"


def _compile(*patterns: str) -> List["re.Pattern[str]"]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


ERROR_PATTERNS: List[Dict[str, Any]] = [
    # ---- connection ----
    {
        "patterns": _compile(
            r"connection.*refused", r"ECONNREFUSED", r"failed to connect",
            r"no reachable servers", r"server selection.*timeout", r"cannot connect to",
        ),
        "friendly_message": "Unable to connect to MongoDB server",
        "hint": "Check that MongoDB is running and the connection URI is correct. "
                "Verify the host and port are accessible.",
        "action": ACTION_EDIT_CONNECTION,
        "action_label": "Edit Connection",
    },
    {
        "patterns": _compile(
            r"authentication failed", r"auth.*failed", r"not authorized",
            r"authentication error", r"bad auth", r"invalid username/password",
            r"SCRAM.*authentication",
        ),
        "friendly_message": "Authentication failed",
        "hint": "Verify your username and password are correct. "
                "Check that the user has access to the specified database.",
        "action": ACTION_EDIT_CONNECTION,
        "action_label": "Edit Connection",
    },
    {
        "patterns": _compile(r"timeout", r"context deadline exceeded", r"(?:operation|query).*timed out"),
        "friendly_message": "Operation timed out",
        "hint": "The operation took too long to complete. Try again or increase the timeout in settings.",
        "action": ACTION_OPEN_SETTINGS,
        "action_label": "Open Settings",
    },
    {
        "patterns": _compile(
            r"network.*error", r"ENETUNREACH", r"EHOSTUNREACH",
            r"getaddrinfo.*ENOTFOUND", r"DNS.*resolution",
        ),
        "friendly_message": "Network error",
        "hint": "Check your network connection and verify the MongoDB server hostname is correct.",
        "action": ACTION_EDIT_CONNECTION,
        "action_label": "Edit Connection",
    },
    {
        "patterns": _compile(r"certificate", r"SSL", r"TLS", r"x509", r"handshake.*failed"),
        "friendly_message": "SSL/TLS connection error",
        "hint": "Check your SSL/TLS settings and certificate configuration.",
        "action": ACTION_EDIT_CONNECTION,
        "action_label": "Edit Connection",
    },
    # ---- permissions ----
    {
        "patterns": _compile(
            r"not authorized on", r"requires authentication", r"user is not allowed",
            r"permission denied", r"insufficient privileges", r"Unauthorized",
        ),
        "friendly_message": "Permission denied",
        "hint": "The current user does not have permission for this operation. "
                "Check the user's roles and database permissions.",
    },
    # ---- missing shell, matched ahead of query syntax ----
    {
        "patterns": _compile(r"mongosh.*not available", r"install mongosh", r"mongosh.*not found"),
        "friendly_message": "mongosh is not installed",
        "hint": "Complex queries and scripts require mongosh. "
                "Install it from mongodb.com/try/download/shell",
        "action": ACTION_OPEN_LINK,
        "action_label": "Download mongosh",
        "action_data": MONGOSH_DOWNLOAD_URL,
    },
    # ---- query syntax ----
    {
        "patterns": _compile(
            r"invalid JSON", r"Unexpected token", r"JSON\.parse", r"SyntaxError.*JSON",
            r"Expecting (?:value|property name|',' delimiter)",
        ),
        "friendly_message": "Invalid JSON syntax",
        "hint": "Check your JSON for syntax errors. Common issues include missing quotes "
                "around strings, trailing commas, or unescaped special characters.",
    },
    {
        "patterns": _compile(
            r"invalid query", r"query.*syntax", r"cannot parse", r"Expected.*find", r"Invalid.*filter",
        ),
        "friendly_message": "Invalid query syntax",
        "hint": "Use db.collection.find({}) format or a valid JSON filter object.",
    },
    {
        "patterns": _compile(
            r"operator.*not allowed", r"unknown.*operator", r"\$[a-z]+.*not recognized", r"bad query",
        ),
        "friendly_message": "Invalid query operator",
        "hint": "Check that you're using valid MongoDB query operators (e.g., $eq, $gt, $in).",
    },
    # ---- documents ----
    {
        "patterns": _compile(r"duplicate key", r"E11000"),
        "friendly_message": "Duplicate key error",
        "hint": "A document with this _id or unique index value already exists.",
    },
    {
        "patterns": _compile(r"document.*too large", r"object size.*exceeded", r"BSON.*too large", r"16MB"),
        "friendly_message": "Document too large",
        "hint": "MongoDB documents are limited to 16MB. Consider splitting large data "
                "into multiple documents or using GridFS for large files.",
    },
    # ---- shell ----
    {
        "patterns": _compile(r"script.*execution failed", r"ReferenceError", r"TypeError.*is not"),
        "friendly_message": "Script execution error",
        "hint": "There was an error in your script. Check for typos, undefined variables, "
                "or incorrect method calls.",
    },
    # ---- namespaces ----
    {
        "patterns": _compile(r"namespace.*not found", r"collection.*not found", r"ns not found"),
        "friendly_message": "Collection not found",
        "hint": "The specified collection does not exist. It may have been dropped or the name is incorrect.",
    },
    {
        "patterns": _compile(r"database.*not found", r"db.*doesn't exist"),
        "friendly_message": "Database not found",
        "hint": "The specified database does not exist. It may have been dropped or the name is incorrect.",
    },
]


def _raw_message(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    return str(error)


def parse_error(error: Any) -> Dict[str, Any]:
    """Match ``error`` against the pattern table.

    Returns ``raw``, ``friendly_message``, ``hint``, ``action``,
    ``action_label``, ``action_data`` and ``is_known``.
    """
    raw = _raw_message(error)
    for definition in ERROR_PATTERNS:
        if any(p.search(raw) for p in definition["patterns"]):
            return {
                "raw": raw,
                "friendly_message": definition["friendly_message"],
                "hint": definition["hint"],
                "action": definition.get("action"),
                "action_label": definition.get("action_label"),
                "action_data": definition.get("action_data"),
                "is_known": True,
            }
    return {
        "raw": raw,
        "friendly_message": "An error occurred",
        "hint": "Check the error details below for more information.",
        "action": None,
        "action_label": None,
        "action_data": None,
        "is_known": False,
    }


def get_error_summary(error: Any, max_length: int = 100) -> str:
    parsed = parse_error(error)
    if parsed["is_known"]:
        return parsed["friendly_message"]
    raw = parsed["raw"]
    if len(raw) <= max_length:
        return raw
    return raw[: max_length - 3] + "..."
