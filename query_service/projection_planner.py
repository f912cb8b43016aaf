"""
Automatic projection for wide collections.

When a collection's profile reports more top-level fields than the
configured threshold, the first simple query of a collection session is
narrowed to the most common fields.  The planner remembers what it did in
``marker``:

    ""            nothing applied yet
    "<json>"      the generated projection (applied once)
    "opted-out"   the user asked to see all fields
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from logger import logger
from profile_estimator import DocumentProfile
from query_classifier import build_full_query, parse_filter_from_query, parse_projection_from_query

OPTED_OUT = "opted-out"
MAX_AUTO_PROJECTION_FIELDS = 15


def rank_projection_fields(
    schema: Optional[Dict[str, Any]],
    profile: Optional[DocumentProfile],
) -> List[str]:
    """Fields to keep: schema fields by occurrence, else the profile's top fields."""
    fields = (schema or {}).get("fields")
    if fields:
        ranked = sorted(
            (name for name in fields if name != "_id"),
            key=lambda name: -(fields[name].get("occurrence") or 0),
        )
        return ranked[:MAX_AUTO_PROJECTION_FIELDS]
    if profile is not None and profile.topFields:
        return [f for f in profile.topFields if f != "_id"][:MAX_AUTO_PROJECTION_FIELDS]
    return []


def build_auto_projection(
    profile: Optional[DocumentProfile],
    schema: Optional[Dict[str, Any]],
    field_count_threshold: int,
) -> str:
    """Projection JSON, or ``""`` when the collection is not wide enough."""
    if profile is None or profile.fieldCount <= field_count_threshold:
        return ""
    names = rank_projection_fields(schema, profile)
    if not names:
        return ""
    return json.dumps({name: 1 for name in names})


class ProjectionPlanner:
    """Per-collection-session auto-projection state."""

    def __init__(self, field_count_threshold: int):
        self.field_count_threshold = field_count_threshold
        self.marker = ""

    def reset(self) -> None:
        self.marker = ""

    @property
    def opted_out(self) -> bool:
        return self.marker == OPTED_OUT

    def plan(
        self,
        collection: str,
        filter_text: str,
        user_projection: Optional[str],
        profile: Optional[DocumentProfile],
        schema: Optional[Dict[str, Any]],
    ) -> Optional[Tuple[str, str]]:
        """Return ``(projection, rewritten_query)`` or ``None``.

        Does nothing when the user wrote a projection or the marker is set.
        """
        if user_projection or self.marker:
            return None

        projection = build_auto_projection(profile, schema, self.field_count_threshold)
        if not projection:
            return None

        self.marker = projection
        logger.info(
            "[PROJECTION] Auto-projected %s to %d fields (collection has %d)",
            collection, len(json.loads(projection)), profile.fieldCount,
        )
        return projection, build_full_query(collection, filter_text, projection)

    def show_all_fields(self, collection: str, query: str) -> str:
        """Strip the projection from ``query`` and stop auto-projecting."""
        self.marker = OPTED_OUT
        return build_full_query(collection, parse_filter_from_query(query))

    def info(self, query: str, profile: Optional[DocumentProfile]) -> Optional[Dict[str, int]]:
        """``{fieldCount, totalFields}`` while an auto-projection is in effect."""
        if not self.marker or self.opted_out or profile is None:
            return None
        projection = parse_projection_from_query(query)
        if not projection:
            return None
        try:
            shown = json.loads(projection)
        except ValueError:
            return None
        if not isinstance(shown, dict):
            return None
        return {"fieldCount": len(shown), "totalFields": profile.fieldCount}
