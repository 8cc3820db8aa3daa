"""
AI 使用量追踪 (Usage Tracker)
按自然日 (UTC) 统计三类 AI 操作次数，并与档位配额比较。
仅为会话内的防滥用计数，不做持久化。
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from core.schemas import AIUsageState, SubscriptionTier, UsageKind
from core.tiers import capability

logger = logging.getLogger(__name__)


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def limit_source(kind: UsageKind) -> str:
    """升级提示的来源标签"""
    return f"ai_limit_{kind.value}"


class UsageTracker:
    def __init__(self, tier: SubscriptionTier = SubscriptionTier.FREE,
                 today: Callable[[], str] = utc_today,
                 on_limit: Optional[Callable[[str], None]] = None):
        self.tier = tier
        self._today = today
        self.on_limit = on_limit
        self.state = AIUsageState(last_reset_date=today())

    def _roll_over(self):
        today = self._today()
        if self.state.last_reset_date != today:
            logger.info(f"跨日重置 AI 使用量: {self.state.last_reset_date} -> {today}")
            self.state = AIUsageState(last_reset_date=today)

    def check_and_increment(self, kind: UsageKind) -> bool:
        """
        配额未用尽则计数 +1 并放行；否则返回 False 并触发升级提示（计数不变）。
        """
        kind = UsageKind(kind)
        self._roll_over()

        quota = capability(self.tier, kind)
        current = self.state.count(kind)
        if current < quota:
            setattr(self.state, kind.value, current + 1)
            return True

        logger.info(f"AI 配额已用尽: {kind.value} ({current}/{quota}, 档位 {self.tier.value})")
        if self.on_limit:
            self.on_limit(limit_source(kind))
        return False

    def remaining(self, kind: UsageKind) -> int:
        kind = UsageKind(kind)
        self._roll_over()
        return max(0, capability(self.tier, kind) - self.state.count(kind))

    def reset(self):
        """登出、升级时清零"""
        self.state = AIUsageState(last_reset_date=self._today())
