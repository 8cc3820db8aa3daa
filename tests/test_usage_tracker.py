"""
Tests for tier capabilities and the daily AI usage tracker
"""
import pytest

from core.schemas import SubscriptionTier, UsageKind
from core.tiers import (
    FEATURE_EXPORT, FEATURE_FULL_STORY_AI, FEATURE_PROJECTS,
    can_create_project, capability, is_feature_enabled,
)
from core.usage_tracker import UsageTracker, limit_source


class DayClock:
    def __init__(self, day: str):
        self.day = day

    def __call__(self) -> str:
        return self.day


class TestCapability:
    """Tests for the tier capability table"""

    @pytest.mark.parametrize("tier,kind,expected", [
        (SubscriptionTier.FREE, UsageKind.SINGLE_STAGE_GENERATIONS, 5),
        (SubscriptionTier.FREE, UsageKind.CLARIFYING_QUESTIONS, 3),
        (SubscriptionTier.FREE, UsageKind.FULL_STORY_DRAFTERS, 0),
        (SubscriptionTier.PRO, UsageKind.SINGLE_STAGE_GENERATIONS, 100),
        (SubscriptionTier.PRO, UsageKind.CLARIFYING_QUESTIONS, 50),
        (SubscriptionTier.PRO, UsageKind.FULL_STORY_DRAFTERS, 10),
    ])
    def test_daily_quotas(self, tier, kind, expected):
        assert capability(tier, kind) == expected

    def test_project_limits(self):
        assert capability(SubscriptionTier.FREE, FEATURE_PROJECTS) == 3
        assert capability(SubscriptionTier.PRO, FEATURE_PROJECTS) is None

    def test_feature_flags(self):
        assert not is_feature_enabled(SubscriptionTier.FREE, FEATURE_EXPORT)
        assert not is_feature_enabled(SubscriptionTier.FREE, FEATURE_FULL_STORY_AI)
        assert is_feature_enabled(SubscriptionTier.PRO, FEATURE_EXPORT)
        assert is_feature_enabled(SubscriptionTier.PRO, FEATURE_FULL_STORY_AI)

    def test_can_create_project(self):
        assert can_create_project(SubscriptionTier.FREE, 2)
        assert not can_create_project(SubscriptionTier.FREE, 3)
        assert can_create_project(SubscriptionTier.PRO, 500)

    def test_unknown_capability(self):
        with pytest.raises(KeyError):
            capability(SubscriptionTier.PRO, "teleportation")


class TestUsageTracker:
    """Tests for check_and_increment and daily rollover"""

    @pytest.mark.parametrize("tier", list(SubscriptionTier))
    @pytest.mark.parametrize("kind", list(UsageKind))
    def test_allows_exactly_quota_calls_per_day(self, tier, kind):
        tracker = UsageTracker(tier=tier, today=DayClock("2026-03-01"))
        quota = capability(tier, kind)

        results = [tracker.check_and_increment(kind) for _ in range(quota + 1)]

        assert results.count(True) == quota
        assert results[-1] is False
        assert tracker.state.count(kind) == quota

    def test_limit_triggers_upgrade_source(self):
        sources = []
        tracker = UsageTracker(tier=SubscriptionTier.FREE, today=DayClock("2026-03-01"), on_limit=sources.append)

        for _ in range(4):
            tracker.check_and_increment(UsageKind.CLARIFYING_QUESTIONS)

        assert sources == ["ai_limit_clarifying_questions"]
        assert tracker.state.clarifying_questions == 3

    def test_rollover_resets_counters(self):
        clock = DayClock("2026-03-01")
        tracker = UsageTracker(tier=SubscriptionTier.FREE, today=clock)
        for _ in range(5):
            assert tracker.check_and_increment(UsageKind.SINGLE_STAGE_GENERATIONS)
        assert not tracker.check_and_increment(UsageKind.SINGLE_STAGE_GENERATIONS)

        clock.day = "2026-03-02"

        assert tracker.check_and_increment(UsageKind.SINGLE_STAGE_GENERATIONS)
        assert tracker.state.single_stage_generations == 1
        assert tracker.state.last_reset_date == "2026-03-02"

    def test_stale_state_treated_as_zero(self):
        tracker = UsageTracker(tier=SubscriptionTier.FREE, today=DayClock("2026-03-05"))
        tracker.state.single_stage_generations = 5
        tracker.state.last_reset_date = "2026-03-04"

        assert tracker.check_and_increment(UsageKind.SINGLE_STAGE_GENERATIONS)

    def test_remaining_and_reset(self):
        tracker = UsageTracker(tier=SubscriptionTier.FREE, today=DayClock("2026-03-01"))
        tracker.check_and_increment(UsageKind.CLARIFYING_QUESTIONS)
        assert tracker.remaining(UsageKind.CLARIFYING_QUESTIONS) == 2

        tracker.reset()

        assert tracker.remaining(UsageKind.CLARIFYING_QUESTIONS) == 3

    def test_limit_source_tag(self):
        assert limit_source(UsageKind.FULL_STORY_DRAFTERS) == "ai_limit_full_story_drafters"
