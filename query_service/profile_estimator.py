"""
Profile-driven page sizing and response-size guard.

All megabyte figures are decimal (1 MB = 1,000,000 bytes) so a 10 MB page
budget over 300 KB documents yields 33 documents per page.
"""

import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

BYTES_PER_KB = 1_000
BYTES_PER_MB = 1_000_000


class DocumentProfile(BaseModel):
    """Per-collection statistics driving the size heuristics."""

    avgDocSizeBytes: float = 0
    docCount: int = 0
    fieldCount: int = 0
    totalFieldPaths: int = 0
    maxNestingDepth: int = 0
    topFields: List[str] = []


class ResponseSizeEstimate(BaseModel):
    estimatedMB: float
    suggestedPageSize: int


class EffectiveLimit(BaseModel):
    limit: int
    isAdaptive: bool = False
    adaptiveInfo: Optional[str] = None


def format_bytes(size: float) -> str:
    """Human size: ``1.2 MB``, ``300 KB`` or ``512 bytes``."""
    if size >= BYTES_PER_MB:
        return f"{size / BYTES_PER_MB:.1f} MB"
    if size >= BYTES_PER_KB:
        return f"{round(size / BYTES_PER_KB)} KB"
    return f"{int(size)} bytes"


def _usable(profile: Optional[DocumentProfile]) -> bool:
    return profile is not None and profile.avgDocSizeBytes > 0


def compute_effective_limit(
    user_limit: int,
    profile: Optional[DocumentProfile],
    max_payload_mb: float,
) -> EffectiveLimit:
    """Shrink ``user_limit`` so one page stays under ``max_payload_mb``.

    Never grows the page and never goes below 1.  Without a usable profile
    the user's limit is returned unchanged.
    """
    if not _usable(profile):
        return EffectiveLimit(limit=user_limit)

    avg = profile.avgDocSizeBytes
    recommended = max(1, math.floor(max_payload_mb * BYTES_PER_MB / avg))
    if recommended >= user_limit:
        return EffectiveLimit(limit=user_limit)

    return EffectiveLimit(
        limit=recommended,
        isAdaptive=True,
        adaptiveInfo=(
            f"Page size reduced to {recommended} "
            f"(documents average {format_bytes(avg)} each)."
        ),
    )


def estimate_response_size(
    profile: Optional[DocumentProfile],
    effective_limit: int,
    threshold_mb: float,
) -> Optional[ResponseSizeEstimate]:
    """Pre-flight estimate; ``None`` when the page is within ``threshold_mb``."""
    if not _usable(profile):
        return None

    avg = profile.avgDocSizeBytes
    estimated_mb = avg * effective_limit / BYTES_PER_MB
    if estimated_mb <= threshold_mb:
        return None

    return ResponseSizeEstimate(
        estimatedMB=round(estimated_mb, 1),
        suggestedPageSize=max(1, math.floor(threshold_mb * BYTES_PER_MB / avg)),
    )


def health_warnings(profile: Optional[DocumentProfile], threshold_kb: float) -> List[str]:
    if not _usable(profile):
        return []
    if profile.avgDocSizeBytes / BYTES_PER_KB <= threshold_kb:
        return []
    return [
        f"Documents average {format_bytes(profile.avgDocSizeBytes)} each. "
        "Consider reducing page size or adding a projection."
    ]


def profile_from_dict(raw: Optional[Dict[str, Any]]) -> Optional[DocumentProfile]:
    if raw is None:
        return None
    if isinstance(raw, DocumentProfile):
        return raw
    return DocumentProfile(**raw)
