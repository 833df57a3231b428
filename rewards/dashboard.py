# rewards/dashboard.py
import json
import logging
import threading
import time
from typing import Dict, Any, Optional
from flask import current_app
from redis import Redis, RedisError

from extensions import db
from models import (
    User, UserVideoTask, TransactionType, REFERRAL_REWARD_TYPES, MANAGEMENT_BONUS_TYPES,
)
from rewards.ledger import RewardLedger
from rewards.management_bonus import ManagementBonusDistributor
from rewards.positions import PositionService
from rewards.referral_tree import ReferralHierarchyIndex
from utils import day_window

logger = logging.getLogger(__name__)


class DashboardCache:
    """Per-user dashboard payloads, kept for a short TTL."""

    def __init__(self, redis_url: Optional[str] = None, ttl: int = 30):
        self.ttl = ttl
        self.redis = Redis.from_url(redis_url) if redis_url else None
        self._local: Dict[int, tuple] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id: int) -> str:
        return f"dashboard:{user_id}"

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        if self.redis is not None:
            try:
                cached = self.redis.get(self._key(user_id))
            except RedisError as e:
                logger.warning(f"Dashboard cache read failed: {e}")
                return None
            return json.loads(cached) if cached else None

        with self._lock:
            entry = self._local.get(user_id)
            if not entry:
                return None
            expires_at, payload = entry
            if expires_at < time.monotonic():
                del self._local[user_id]
                return None
            return payload

    def set(self, user_id: int, payload: Dict[str, Any]):
        if self.redis is not None:
            try:
                self.redis.setex(self._key(user_id), self.ttl, json.dumps(payload))
            except RedisError as e:
                logger.warning(f"Dashboard cache write failed: {e}")
            return

        with self._lock:
            self._local[user_id] = (time.monotonic() + self.ttl, payload)

    def invalidate(self, user_id: int):
        if self.redis is not None:
            try:
                self.redis.delete(self._key(user_id))
            except RedisError as e:
                logger.warning(f"Dashboard cache invalidation failed: {e}")
            return

        with self._lock:
            self._local.pop(user_id, None)


def get_dashboard_cache() -> DashboardCache:
    cache = current_app.extensions.get("dashboard_cache")
    if cache is None:
        cache = DashboardCache(
            redis_url=current_app.config.get("REDIS_URL"),
            ttl=current_app.config.get("DASHBOARD_CACHE_TTL", 30),
        )
        current_app.extensions["dashboard_cache"] = cache
    return cache


class DashboardService:
    """Read-only rollups over the ledger for display."""

    @staticmethod
    def invalidate(user_id: int):
        get_dashboard_cache().invalidate(user_id)

    @staticmethod
    def get_dashboard(user_id: int, use_cache: bool = True) -> Optional[Dict[str, Any]]:
        cache = get_dashboard_cache()
        if use_cache:
            cached = cache.get(user_id)
            if cached is not None:
                return cached

        payload = DashboardService._build(user_id)
        if payload is not None:
            cache.set(user_id, payload)
        return payload

    @staticmethod
    def _build(user_id: int) -> Optional[Dict[str, Any]]:
        user = db.session.get(User, user_id)
        if not user:
            return None

        eligibility = PositionService.can_complete_task(user_id)
        position = eligibility.get("position")
        start, end = day_window()

        task_income = RewardLedger.sum_amounts(user_id, [TransactionType.TASK_INCOME], start, end)
        referral_rewards = RewardLedger.sum_amounts(user_id, REFERRAL_REWARD_TYPES, start, end)
        management_bonuses = RewardLedger.sum_amounts(user_id, MANAGEMENT_BONUS_TYPES, start, end)

        bonus_stats = ManagementBonusDistributor.get_management_bonus_stats(user_id)
        recent, _ = RewardLedger.get_transactions(user_id, limit=10)

        return {
            "user": {
                "id": user.id,
                "email": user.email,
                "name": user.username,
                "walletBalance": float(user.wallet_balance or 0),
                "totalEarnings": float(user.total_earnings or 0),
                "referralCode": user.referral_code,
            },
            "position": position.to_dict() if position else None,
            "taskStats": {
                "tasksCompletedToday": PositionService.get_daily_tasks_completed(user_id),
                "dailyTaskLimit": position.tasks_per_day if position else 0,
                "canCompleteTask": eligibility["canComplete"],
                "tasksRemaining": eligibility["tasksRemaining"],
                "totalVideosWatched": UserVideoTask.query.filter_by(user_id=user_id, is_verified=True).count(),
            },
            "earnings": {
                "totalEarningsToday": float(task_income + referral_rewards + management_bonuses),
                "taskIncome": float(task_income),
                "referralRewards": float(referral_rewards),
                "managementBonuses": float(management_bonuses),
            },
            "teamStats": {
                "subordinateCount": bonus_stats["subordinateCount"],
                "dailyManagementBonuses": bonus_stats["todayTotal"],
                "monthlyManagementBonuses": bonus_stats["monthTotal"],
                "referralHierarchy": ReferralHierarchyIndex.get_referral_hierarchy_stats(user_id),
            },
            "recentTransactions": [tx.to_dict() for tx in recent],
        }
