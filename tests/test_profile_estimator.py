from profile_estimator import (
    DocumentProfile,
    compute_effective_limit,
    estimate_response_size,
    format_bytes,
    health_warnings,
    profile_from_dict,
)


def profile(avg, **kwargs):
    return DocumentProfile(avgDocSizeBytes=avg, **kwargs)


def test_effective_limit_shrinks_for_large_documents():
    limit = compute_effective_limit(50, profile(300_000), 10)
    assert limit.limit == 33
    assert limit.isAdaptive is True
    assert limit.adaptiveInfo == "Page size reduced to 33 (documents average 300 KB each)."


def test_effective_limit_never_grows_or_hits_zero():
    assert compute_effective_limit(20, profile(100), 10).limit == 20
    assert compute_effective_limit(20, profile(100), 10).isAdaptive is False
    assert compute_effective_limit(50, profile(50_000_000), 10).limit == 1


def test_effective_limit_without_usable_profile():
    assert compute_effective_limit(50, None, 10).limit == 50
    assert compute_effective_limit(50, profile(0), 10).limit == 50


def test_response_size_estimate():
    estimate = estimate_response_size(profile(300_000), 50, 10)
    assert estimate.estimatedMB == 15.0
    assert estimate.suggestedPageSize == 33
    assert estimate_response_size(profile(300_000), 33, 10) is None
    assert estimate_response_size(None, 50, 10) is None


def test_format_bytes():
    assert format_bytes(512) == "512 bytes"
    assert format_bytes(300_000) == "300 KB"
    assert format_bytes(2_500_000) == "2.5 MB"


def test_health_warnings():
    assert health_warnings(profile(100_000), 512) == []
    assert health_warnings(profile(1_200_000), 512) == [
        "Documents average 1.2 MB each. Consider reducing page size or adding a projection."
    ]


def test_profile_from_dict():
    assert profile_from_dict(None) is None
    assert profile_from_dict({"avgDocSizeBytes": 10, "fieldCount": 3}).fieldCount == 3
