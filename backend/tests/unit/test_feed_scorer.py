from __future__ import annotations

from datetime import timedelta

import pytest

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig
from vroom_feed.feed.ranking import scorer as scoring
from vroom_feed.feed.ranking.scorer import Candidate, JitterSeed, Scorer


def test_freshness_decays_and_hits_floor_after_cliff(now):
    kwargs = {"tau_hours": 48.0, "cliff_hours": 14 * 24.0, "floor": 0.01}
    recent = scoring.freshness_factor(now - timedelta(hours=1), now, **kwargs)
    older = scoring.freshness_factor(now - timedelta(hours=72), now, **kwargs)
    ancient = scoring.freshness_factor(now - timedelta(days=15), now, **kwargs)
    assert 1.0 >= recent > older > ancient
    assert ancient == pytest.approx(0.01)


def test_freshness_ignores_future_timestamps(now):
    value = scoring.freshness_factor(now + timedelta(minutes=5), now, tau_hours=48.0, cliff_hours=336.0, floor=0.01)
    assert value == pytest.approx(1.0)


def test_jitter_is_deterministic_and_bounded():
    seed = JitterSeed("viewer", "session", 0)
    values = [scoring.seeded_jitter(seed, f"post-{i}", 0.02) for i in range(200)]
    assert all(-0.02 <= value <= 0.02 for value in values)
    assert values == [scoring.seeded_jitter(seed, f"post-{i}", 0.02) for i in range(200)]
    assert len(set(values)) > 150


def test_jitter_changes_with_refresh_nonce():
    first = JitterSeed("viewer", "session", 0)
    second = JitterSeed("viewer", "session", 1)
    changed = sum(
        1
        for i in range(50)
        if scoring.seeded_jitter(first, f"p{i}", 0.02) != scoring.seeded_jitter(second, f"p{i}", 0.02)
    )
    assert changed >= 45


def test_zero_epsilon_disables_jitter():
    assert scoring.seeded_jitter(JitterSeed("v", "s", 3), "p", 0.0) == 0.0


def test_diversity_factor_penalises_recent_author():
    assert scoring.diversity_factor("a", [], 3) == pytest.approx(1.0)
    assert scoring.diversity_factor("a", ["a", "b", "c"], 3) == pytest.approx(2 / 3)
    # Only the trailing window counts.
    assert scoring.diversity_factor("a", ["a", "a", "b", "c", "d"], 3) == pytest.approx(1.0)


def test_context_factor_prefers_matching_locale_and_low_res_on_slow_links(post_factory):
    post = post_factory("p1", "a1").model_copy(update={"locale": "en-US", "max_height": 1080})
    low_res = post.model_copy(update={"has_low_res": True})
    slow = models.ViewerContext(locale="en-US", connection=models.Connection.SLOW)
    other_locale = models.ViewerContext(locale="de-DE", connection=models.Connection.WIFI)
    same_language = models.ViewerContext(locale="en-GB", connection=models.Connection.WIFI)

    assert scoring.context_factor(low_res, slow) > scoring.context_factor(post, slow)
    assert scoring.context_factor(post, same_language) > scoring.context_factor(post, other_locale)


def test_engagement_factor_is_bounded_and_rewards_engagement(post_factory):
    neutral_viewer = models.InterestSignal.neutral("viewer")
    neutral_creator = models.CreatorQuality.neutral("a1")
    quiet = post_factory("quiet", "a1", views=1000)
    loud = post_factory("loud", "a1", views=1000, likes=200, comments=40, shares=30)
    quiet_score = scoring.engagement_factor(quiet, neutral_creator, neutral_viewer)
    loud_score = scoring.engagement_factor(loud, neutral_creator, neutral_viewer)
    assert 0.0 <= quiet_score < loud_score <= 1.0


def test_reported_creators_score_lower():
    clean = models.CreatorQuality(creator_id="a", watch_ratio=0.7, like_rate=0.08, report_rate=0.0)
    reported = clean.model_copy(update={"report_rate": 0.1})
    assert scoring.creator_quality_factor(reported) < scoring.creator_quality_factor(clean)


def test_prepare_orders_by_base_plus_jitter(post_factory, now):
    scorer = Scorer(FeedConfig())
    posts = [post_factory(f"p{i}", f"a{i}", age_hours=i * 10, likes=i) for i in range(8)]
    prepared = scorer.prepare(
        [Candidate(post=post, tier=models.SourceTier.FRESH) for post in posts],
        interests=models.InterestSignal.neutral("viewer"),
        quality={},
        context=models.ViewerContext(),
        seed=JitterSeed("viewer", "session", 0),
        now=now,
    )
    totals = [entry.base + entry.jitter for entry in prepared]
    assert totals == sorted(totals, reverse=True)
    assert {entry.post.id for entry in prepared} == {post.id for post in posts}


def test_slot_score_adds_diversity_and_jitter(post_factory, now):
    scorer = Scorer(FeedConfig())
    post = post_factory("p1", "a1")
    (entry,) = scorer.prepare(
        [Candidate(post=post, tier=models.SourceTier.FRESH)],
        interests=models.InterestSignal.neutral("viewer"),
        quality={},
        context=models.ViewerContext(),
        seed=JitterSeed("viewer", "session", 0),
        now=now,
    )
    original_alone, score_alone = scorer.slot_score(entry, [])
    original_after_same, _ = scorer.slot_score(entry, ["a1"])
    assert score_alone == pytest.approx(original_alone + entry.jitter)
    assert original_after_same < original_alone


def test_custom_weights_override_defaults():
    scorer = Scorer(FeedConfig(), weights={"freshness": 0.9, "unknown": 1.0})
    assert scorer.weights["freshness"] == 0.9
    assert "unknown" not in scorer.weights
