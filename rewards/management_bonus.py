# rewards/management_bonus.py
import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Any, List

from models import (
    ReferralHierarchy, ReferralLevel, TransactionType, UserStatus, MANAGEMENT_BONUS_TYPES,
)
from rewards.config import ManagementBonusConfig
from rewards.ledger import RewardLedger, UserLockManager, LedgerError
from rewards.referral_tree import ReferralHierarchyIndex
from utils import CENT, day_window, month_window, safe_decimal

logger = logging.getLogger(__name__)


class ManagementBonusDistributor:
    """
    Pays each upline level a percentage of a subordinate's task reward,
    clamped by the ancestor's daily and monthly management-bonus caps.
    Every ancestor is credited in its own committed ledger step.
    """

    @staticmethod
    def _paid_in_windows(ancestor_id: int, now: datetime):
        day_start, day_end = day_window(now)
        month_start, month_end = month_window(now)
        paid_today = RewardLedger.sum_amounts(ancestor_id, MANAGEMENT_BONUS_TYPES, day_start, day_end)
        paid_month = RewardLedger.sum_amounts(ancestor_id, MANAGEMENT_BONUS_TYPES, month_start, month_end)
        return paid_today, paid_month

    @staticmethod
    def headroom(ancestor_id: int, config: ManagementBonusConfig, now: datetime = None) -> Decimal:
        paid_today, paid_month = ManagementBonusDistributor._paid_in_windows(ancestor_id, now or datetime.now())
        room = min(config.daily_cap - paid_today, config.monthly_cap - paid_month)
        return max(Decimal("0.00"), room)

    @staticmethod
    def distribute_management_bonuses(user_id: int, task_reward_amount, timestamp: datetime = None,
                                      task_id: int = None,
                                      config: ManagementBonusConfig = None) -> Dict[str, Any]:
        now = timestamp or datetime.now()
        config = config or ManagementBonusConfig.current()
        reward = safe_decimal(task_reward_amount)

        breakdown: List[Dict[str, Any]] = []
        total = Decimal("0.00")

        for level, ancestor in ReferralHierarchyIndex.get_ancestors(user_id):
            rate = config.rate_for(level)
            calculated = (reward * rate).quantize(CENT, rounding=ROUND_DOWN)
            entry = {
                "level": level.value,
                "ancestorId": ancestor.id,
                "percentage": float(rate * 100),
                "calculatedAmount": float(calculated),
                "creditedAmount": 0.0,
                "capped": False,
                "status": "credited",
                "reason": None,
            }
            breakdown.append(entry)

            if ancestor.status != UserStatus.ACTIVE:
                entry.update(status="skipped", reason="Ancestor account is not active")
                continue
            if calculated <= 0:
                entry.update(status="skipped", reason="Bonus rounds to zero")
                continue

            with UserLockManager.hold(ancestor.id):
                payout = min(calculated, ManagementBonusDistributor.headroom(ancestor.id, config, now))
                if payout < calculated:
                    entry["capped"] = True
                if payout <= 0:
                    entry.update(status="capped", reason="Management bonus cap reached")
                    continue

                try:
                    RewardLedger.credit(
                        ancestor.id,
                        payout,
                        TransactionType.management_bonus(level),
                        description=f"Management bonus ({level.letter}-level)",
                        reference_id=f"MGMT_{task_id}_{ancestor.id}" if task_id else None,
                        related_user_id=user_id,
                        metadata={
                            "sourceUserId": user_id,
                            "taskId": task_id,
                            "taskReward": str(reward),
                            "rate": str(rate),
                            "calculatedAmount": str(calculated),
                        },
                    )
                except LedgerError as e:
                    logger.error(f"Management bonus to {ancestor.id} ({level.value}) failed: {e}")
                    entry.update(status="failed", reason=str(e))
                    continue

            entry["creditedAmount"] = float(payout)
            if entry["capped"]:
                entry.update(status="capped", reason="Clamped to remaining management bonus cap")
            total += payout

        if breakdown:
            logger.info(f"Distributed {total} in management bonuses for task reward {reward} of user {user_id}")

        return {
            "success": True,
            "totalBonusDistributed": float(total),
            "bonusBreakdown": breakdown,
        }

    @staticmethod
    def get_management_bonus_stats(user_id: int) -> Dict[str, Any]:
        config = ManagementBonusConfig.current()
        now = datetime.now()
        paid_today, paid_month = ManagementBonusDistributor._paid_in_windows(user_id, now)

        by_level = {}
        for level in ReferralLevel:
            by_level[level.value] = {
                "subordinates": ReferralHierarchy.query.filter_by(referrer_id=user_id, level=level).count(),
                "totalEarned": float(RewardLedger.sum_amounts(user_id, [TransactionType.management_bonus(level)])),
                "rate": float(config.rate_for(level) * 100),
            }

        return {
            "subordinateCount": sum(v["subordinates"] for v in by_level.values()),
            "todayTotal": float(paid_today),
            "monthTotal": float(paid_month),
            "totalEarned": float(RewardLedger.sum_amounts(user_id, MANAGEMENT_BONUS_TYPES)),
            "dailyCapRemaining": float(max(Decimal("0.00"), config.daily_cap - paid_today)),
            "monthlyCapRemaining": float(max(Decimal("0.00"), config.monthly_cap - paid_month)),
            "byLevel": by_level,
        }
