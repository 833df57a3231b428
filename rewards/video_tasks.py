# rewards/video_tasks.py
"""
Video watch flow: a watch moves AVAILABLE -> IN_PROGRESS (client side)
-> SUBMITTED -> ACCEPTED or REJECTED. Acceptance writes the task row and
the task income in one commit; upline bonuses and referral triggers run
afterwards and never undo an accepted watch.
"""
import enum
import logging
from datetime import datetime
from typing import Dict, Any, Optional, Sequence
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import User, Video, UserVideoTask
from rewards.anti_cheat import WatchValidator
from rewards.config import min_security_score
from rewards.dashboard import DashboardService
from rewards.ledger import RewardLedger, UserLockManager, LedgerError
from rewards.management_bonus import ManagementBonusDistributor
from rewards.positions import PositionService, REASON_NO_POSITION, REASON_LIMIT_REACHED
from rewards.referral_service import ReferralService, TRIGGER_HIGH_EARNER
from rewards.referral_tree import ReferralHierarchyIndex
from utils import day_window, safe_decimal

logger = logging.getLogger(__name__)


class WatchState(enum.Enum):
    AVAILABLE = "AVAILABLE"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


REASON_ALREADY_WATCHED = "Video already watched today"


def _rejected(status: int, error: str, **extra) -> Dict[str, Any]:
    result = {"success": False, "status": status, "error": error, "state": WatchState.REJECTED.value}
    result.update(extra)
    return result


class VideoTaskService:

    @staticmethod
    def _videos_watched_today(user_id: int, now: datetime):
        start, end = day_window(now)
        rows = UserVideoTask.query.filter(
            UserVideoTask.user_id == user_id,
            UserVideoTask.watched_at >= start,
            UserVideoTask.watched_at < end,
        ).all()
        return {row.video_id for row in rows}

    @staticmethod
    def get_available_videos(user_id: int, now: datetime = None) -> Dict[str, Any]:
        now = now or datetime.now()
        position = PositionService.get_user_current_position(user_id, now)
        if position is None:
            return {
                "videos": [],
                "position": None,
                "tasksCompletedToday": 0,
                "dailyTaskLimit": 0,
                "tasksRemaining": 0,
                "reason": REASON_NO_POSITION,
            }

        watched_ids = VideoTaskService._videos_watched_today(user_id, now)
        completed = PositionService.get_daily_tasks_completed(user_id, now)
        remaining = max(0, position.tasks_per_day - completed)

        videos = []
        if remaining:
            query = Video.query.filter(
                Video.is_active.is_(True),
                Video.available_from <= now,
                or_(Video.available_to.is_(None), Video.available_to >= now),
                or_(Video.position_id.is_(None), Video.position_id == position.id),
            )
            if watched_ids:
                query = query.filter(~Video.id.in_(watched_ids))
            videos = query.order_by(Video.created_at.desc(), Video.id.desc()).limit(remaining).all()

        return {
            "videos": [v.to_dict(reward_amount=position.unit_price) for v in videos],
            "position": position.to_dict(),
            "tasksCompletedToday": completed,
            "dailyTaskLimit": position.tasks_per_day,
            "tasksRemaining": remaining,
        }

    @staticmethod
    def get_video_details(user_id: int, video_id: int, now: datetime = None) -> Optional[Dict[str, Any]]:
        now = now or datetime.now()
        video = db.session.get(Video, video_id)
        if not video or not video.is_available(now):
            return None
        position = PositionService.get_user_current_position(user_id, now)
        details = video.to_dict(reward_amount=position.unit_price if position else None)
        details["watchedToday"] = video.id in VideoTaskService._videos_watched_today(user_id, now)
        details["minimumWatchTime"] = WatchValidator.minimum_watch_time(video.duration)
        return details

    @staticmethod
    def submit_video_watch(user_id: Optional[int], video_id: int, watch_duration,
                           interactions: Optional[Sequence] = None, ip_address: str = None,
                           device_id: str = None, user_agent: str = None,
                           now: datetime = None) -> Dict[str, Any]:
        now = now or datetime.now()

        if user_id is None:
            return _rejected(401, "Authentication required")
        user = db.session.get(User, user_id)
        if not user:
            return _rejected(401, "Authentication required")
        if not user.is_active:
            return _rejected(403, "Account is not active")

        video = db.session.get(Video, video_id)
        if not video or not video.is_available(now):
            return _rejected(404, "Video not found")

        with UserLockManager.hold(user_id):
            position = PositionService.get_user_current_position(user_id, now)
            if position is None:
                return _rejected(403, REASON_NO_POSITION)
            if video.position_id is not None and video.position_id != position.id:
                return _rejected(403, "Video not available for your position")

            user = (
                db.session.query(User)
                .filter(User.id == user_id)
                .with_for_update()
                .populate_existing()
                .first()
            )

            watch_date = now.date()
            if UserVideoTask.query.filter_by(user_id=user_id, video_id=video_id, watch_date=watch_date).first():
                db.session.rollback()
                return _rejected(400, REASON_ALREADY_WATCHED)

            completed = PositionService.get_daily_tasks_completed(user_id, now)
            if completed >= position.tasks_per_day:
                db.session.rollback()
                return _rejected(400, REASON_LIMIT_REACHED)

            verdict = WatchValidator.validate(watch_duration, video.duration, interactions, min_security_score())
            if not verdict.accepted:
                db.session.rollback()
                return _rejected(400, verdict.reason, securityScore=verdict.security_score)

            reward = safe_decimal(position.unit_price)
            videos_before = UserVideoTask.query.filter_by(user_id=user_id, is_verified=True).count()

            task = UserVideoTask(
                user_id=user_id,
                video_id=video_id,
                watched_at=now,
                watch_date=watch_date,
                watch_duration=safe_decimal(WatchValidator.parse_duration(watch_duration)),
                reward_earned=reward,
                position_level=position.name,
                ip_address=ip_address,
                device_id=device_id,
                user_agent=(user_agent or "")[:255] or None,
                security_score=verdict.security_score,
                is_verified=True,
            )
            db.session.add(task)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                return _rejected(400, REASON_ALREADY_WATCHED)

            try:
                if reward > 0:
                    credit = RewardLedger.credit_task_reward(
                        user_id, reward, video_id, task.id,
                        security_score=verdict.security_score,
                        watch_duration=task.watch_duration,
                        interactions=interactions,
                        verification={"deviceId": device_id, "userAgent": task.user_agent},
                        ip_address=ip_address,
                    )
                    new_balance = credit["newBalance"]
                else:
                    db.session.commit()
                    new_balance = user.wallet_balance
            except LedgerError as e:
                db.session.rollback()
                logger.error(f"Task reward for user {user_id} video {video_id} failed: {e}")
                return _rejected(500, "Failed to record reward")

            task_id = task.id

        logger.info(f"User {user_id} earned {reward} for video {video_id} (score {verdict.security_score})")

        bonus = {"totalBonusDistributed": 0.0, "bonusBreakdown": []}
        if reward > 0:
            try:
                bonus = ManagementBonusDistributor.distribute_management_bonuses(
                    user_id, reward, now, task_id=task_id
                )
            except Exception as e:
                db.session.rollback()
                logger.error(f"Management bonus distribution failed for task {task_id}: {e}")

        triggers = ReferralService.detect_task_triggers(videos_before, videos_before + 1)
        paid_triggers = ReferralService.process_task_triggers(user_id, triggers) if triggers else []
        try:
            high_earner = ReferralService.process_high_earner(user_id)
        except Exception as e:
            db.session.rollback()
            logger.error(f"High earner check failed for user {user_id}: {e}")
            high_earner = None
        if high_earner and high_earner.get("success"):
            paid_triggers.append(TRIGGER_HIGH_EARNER)

        DashboardService.invalidate(user_id)
        for _, ancestor in ReferralHierarchyIndex.get_ancestors(user_id):
            DashboardService.invalidate(ancestor.id)

        tasks_completed = completed + 1
        return {
            "success": True,
            "status": 200,
            "state": WatchState.ACCEPTED.value,
            "taskId": task_id,
            "rewardEarned": float(reward),
            "newBalance": float(new_balance),
            "tasksCompletedToday": tasks_completed,
            "dailyTaskLimit": position.tasks_per_day,
            "tasksRemaining": max(0, position.tasks_per_day - tasks_completed),
            "managementBonusDistributed": bonus["totalBonusDistributed"],
            "bonusBreakdown": bonus["bonusBreakdown"],
            "referralTriggers": paid_triggers,
            "securityScore": verdict.security_score,
        }
