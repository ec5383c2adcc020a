from datetime import datetime, timedelta, timezone

import pytest

from storetrust.services.rating_trust import (
    compute_rating_trust_score,
    freshness_score,
    round_half_up,
    sample_size_score,
    stability_score,
    trust_label,
)

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_thin_sample_at_extreme_rating_is_not_trusted():
    score = compute_rating_trust_score(4.95, 15, last_signal_at=None, now=NOW)
    assert score.sample_size.score == 22
    assert score.stability.score == 14
    assert score.freshness.score == 10
    assert score.total == 46
    assert score.label in ("suspect", "unreliable")


def test_stale_signal_pushes_thin_sample_lower():
    score = compute_rating_trust_score(4.95, 15, last_signal_at=NOW - timedelta(days=60), now=NOW)
    assert score.freshness.score == 4
    assert score.total == 40
    assert score.label == "suspect"


def test_large_fresh_sample_is_certain():
    score = compute_rating_trust_score(4.3, 800, last_signal_at=NOW - timedelta(hours=6), now=NOW)
    assert score.sample_size.score == 50
    assert score.stability.score == 25
    assert score.freshness.score == 25
    assert score.total == 100
    assert score.label == "certain"


def test_no_reviews():
    score = compute_rating_trust_score(None, 0, now=NOW)
    assert score.sample_size.score == 0
    assert score.stability.score == 6
    assert score.total == 16
    assert score.label == "unreliable"
    assert score.sample_size.description == "No reviews"


@pytest.mark.parametrize(
    "days,expected",
    [(0.5, 25), (1, 25), (2, 22), (5, 19), (10, 14), (20, 9), (31, 4)],
)
def test_freshness_steps(days, expected):
    assert freshness_score(NOW - timedelta(days=days), NOW) == expected


def test_naive_timestamps_are_treated_as_utc():
    naive = datetime(2026, 2, 28, 12, 0)
    assert freshness_score(naive, NOW) == 25


def test_component_bounds():
    assert sample_size_score(500) == pytest.approx(50.0)
    assert sample_size_score(100000) == 50.0
    assert stability_score(5.0, 1) == pytest.approx(6.475)
    assert stability_score(5.0, 100) == 25.0


def test_labels_and_rounding():
    assert [trust_label(t) for t in (85, 84, 70, 55, 40, 39)] == [
        "certain",
        "trustworthy",
        "trustworthy",
        "reference_only",
        "suspect",
        "unreliable",
    ]
    assert round_half_up(2.5) == 3
    assert round_half_up(40.5) == 41


def test_to_dict_shape():
    data = compute_rating_trust_score(4.5, 120, NOW - timedelta(days=3), now=NOW).to_dict()
    assert set(data) == {"totalScore", "label", "breakdown"}
    assert set(data["breakdown"]) == {"sampleSize", "stability", "freshness"}
    assert data["breakdown"]["sampleSize"]["maxScore"] == 50
