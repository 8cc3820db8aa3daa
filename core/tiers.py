"""
订阅档位能力表 (Tier Capabilities)
所有档位相关的门控都通过 capability() 查询，避免各调用点各自判断。
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from core.schemas import SubscriptionTier, UsageKind

UNLIMITED = None

# 非配额类能力
FEATURE_EXPORT = "export"
FEATURE_FULL_STORY_AI = "full_story_ai"
FEATURE_PROJECTS = "projects"


@dataclass(frozen=True)
class TierLimits:
    """单个档位的配额与功能开关，None 表示不限"""
    single_stage_generations: int
    clarifying_questions: int
    full_story_drafters: int
    projects: Optional[int]
    feature_flags: Dict[str, bool] = field(default_factory=dict)


TIER_LIMITS = {
    SubscriptionTier.FREE: TierLimits(
        single_stage_generations=5,
        clarifying_questions=3,
        full_story_drafters=0,
        projects=3,
        feature_flags={FEATURE_EXPORT: False, FEATURE_FULL_STORY_AI: False},
    ),
    SubscriptionTier.PRO: TierLimits(
        single_stage_generations=100,
        clarifying_questions=50,
        full_story_drafters=10,
        projects=UNLIMITED,
        feature_flags={FEATURE_EXPORT: True, FEATURE_FULL_STORY_AI: True},
    ),
}


def capability(tier: SubscriptionTier, feature: Union[UsageKind, str]) -> Union[int, bool, None]:
    """
    查询档位能力。

    Args:
        tier: 订阅档位。
        feature: UsageKind（返回每日配额）、"projects"（返回项目上限，None 为不限）
            或功能开关名（返回 bool）。
    """
    limits = TIER_LIMITS[SubscriptionTier(tier)]
    if isinstance(feature, UsageKind):
        return getattr(limits, feature.value)
    if feature == FEATURE_PROJECTS:
        return limits.projects
    if feature in limits.feature_flags:
        return limits.feature_flags[feature]
    raise KeyError(f"未知的档位能力: {feature}")


def is_feature_enabled(tier: SubscriptionTier, feature: str) -> bool:
    return bool(capability(tier, feature))


def can_create_project(tier: SubscriptionTier, current_count: int) -> bool:
    limit = capability(tier, FEATURE_PROJECTS)
    return limit is UNLIMITED or current_count < limit
