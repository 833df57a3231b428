# rewards/positions.py
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional
from flask import current_app

from extensions import db
from models import Position, UserPosition, UserVideoTask, User
from rewards.ledger import RewardLedger, UserLockManager, InsufficientFundsError, LedgerError
from utils import day_window, safe_decimal

logger = logging.getLogger(__name__)


class NoActivePositionError(Exception):
    pass


REASON_NO_POSITION = "No active position"
REASON_LIMIT_REACHED = "Daily task limit reached"


class PositionService:

    # ----------------------------------------------------------------
    # Catalog
    # ----------------------------------------------------------------
    @staticmethod
    def list_positions() -> List[Position]:
        return Position.query.filter_by(is_active=True).order_by(Position.level.asc()).all()

    # ----------------------------------------------------------------
    # Current position
    # ----------------------------------------------------------------
    @staticmethod
    def get_active_assignment(user_id: int, now: datetime = None) -> Optional[UserPosition]:
        """Latest unexpired assignment. Expired rows are flipped to 'expired' here."""
        now = now or datetime.now()
        rows = (
            UserPosition.query.filter_by(user_id=user_id, status="active")
            .order_by(UserPosition.activated_at.desc(), UserPosition.id.desc())
            .all()
        )
        active = None
        expired = []
        for row in rows:
            if row.expires_at <= now:
                expired.append(row)
            elif active is None:
                active = row

        if expired:
            for row in expired:
                row.status = "expired"
            user = db.session.get(User, user_id)
            if user and active is None:
                user.current_position_id = None
            db.session.commit()
            logger.info(f"Expired {len(expired)} position(s) for user {user_id}")

        return active

    @staticmethod
    def get_user_current_position(user_id: int, now: datetime = None) -> Optional[Position]:
        assignment = PositionService.get_active_assignment(user_id, now)
        return assignment.position if assignment else None

    @staticmethod
    def require_position(user_id: int, now: datetime = None) -> Position:
        position = PositionService.get_user_current_position(user_id, now)
        if position is None:
            raise NoActivePositionError(f"User {user_id} has no active position")
        return position

    # ----------------------------------------------------------------
    # Eligibility
    # ----------------------------------------------------------------
    @staticmethod
    def get_daily_tasks_completed(user_id: int, now: datetime = None) -> int:
        start, end = day_window(now)
        return UserVideoTask.query.filter(
            UserVideoTask.user_id == user_id,
            UserVideoTask.watched_at >= start,
            UserVideoTask.watched_at < end,
        ).count()

    @staticmethod
    def can_complete_task(user_id: int, now: datetime = None) -> Dict[str, Any]:
        try:
            position = PositionService.require_position(user_id, now)
        except NoActivePositionError:
            return {"canComplete": False, "tasksRemaining": 0, "reason": REASON_NO_POSITION}

        completed = PositionService.get_daily_tasks_completed(user_id, now)
        limit = position.tasks_per_day
        result = {
            "canComplete": completed < limit,
            "tasksRemaining": max(0, limit - completed),
            "tasksCompleted": completed,
            "dailyTaskLimit": limit,
            "position": position,
        }
        if not result["canComplete"]:
            result["reason"] = REASON_LIMIT_REACHED
        return result

    # ----------------------------------------------------------------
    # Assignment
    # ----------------------------------------------------------------
    @staticmethod
    def assign_default_position(user_id: int) -> Optional[UserPosition]:
        """Give a new user the free entry tier, if the catalog has one."""
        level = current_app.config.get("DEFAULT_POSITION_LEVEL", 0)
        position = Position.query.filter_by(level=level, is_active=True).first()
        if not position or safe_decimal(position.price) > 0:
            logger.info(f"No free position at level {level}; user {user_id} starts without one")
            return None

        now = datetime.now()
        assignment = UserPosition(
            user_id=user_id,
            position_id=position.id,
            amount_paid=Decimal("0.00"),
            activated_at=now,
            expires_at=now + timedelta(days=position.validity_days),
            status="active",
        )
        db.session.add(assignment)
        user = db.session.get(User, user_id)
        user.current_position_id = position.id
        db.session.commit()
        return assignment

    @staticmethod
    def assign_position(user_id: int, position_id: int, now: datetime = None) -> Dict[str, Any]:
        """
        Subscribe a user to a position. The price is debited from the wallet;
        an existing active position is replaced, but only by a higher level.
        """
        now = now or datetime.now()
        position = db.session.get(Position, position_id)
        if not position or not position.is_active:
            return {"success": False, "error": "Position not found", "status": 404}

        user = db.session.get(User, user_id)
        if not user or not user.is_active:
            return {"success": False, "error": "Account is not active", "status": 403}

        price = safe_decimal(position.price)

        with UserLockManager.hold(user_id):
            current = PositionService.get_active_assignment(user_id, now)
            if current and current.position.level >= position.level:
                return {
                    "success": False,
                    "error": "You already have an active position at this level or higher",
                    "status": 400,
                }

            assignment = UserPosition(
                user_id=user_id,
                position_id=position.id,
                amount_paid=price,
                activated_at=now,
                expires_at=now + timedelta(days=position.validity_days),
                status="active",
            )
            db.session.add(assignment)
            db.session.flush()

            if price > 0:
                try:
                    RewardLedger.debit(
                        user_id,
                        price,
                        description=f"Position subscription: {position.name}",
                        reference_id=f"POSITION_{assignment.id}",
                        metadata={"positionId": position.id, "level": position.level},
                        commit=False,
                    )
                except InsufficientFundsError:
                    db.session.rollback()
                    return {"success": False, "error": "Insufficient balance", "status": 400}
                except LedgerError as e:
                    db.session.rollback()
                    logger.error(f"Position purchase failed for user {user_id}: {e}")
                    return {"success": False, "error": "Subscription failed", "status": 500}

            if current:
                current.status = "replaced"
            user.current_position_id = position.id
            db.session.commit()

        logger.info(f"User {user_id} subscribed to position {position.name} for {price}")

        triggers = []
        if price > 0 and PositionService._paid_assignment_count(user_id) == 1:
            from rewards.referral_service import ReferralService
            try:
                outcome = ReferralService.process_referral_qualification(user_id, "first_plan_purchase")
                if outcome.get("success"):
                    triggers.append("first_plan_purchase")
            except Exception as e:
                db.session.rollback()
                logger.error(f"first_plan_purchase trigger failed for user {user_id}: {e}")

        from rewards.dashboard import DashboardService
        DashboardService.invalidate(user_id)

        return {
            "success": True,
            "subscription": assignment.to_dict(),
            "referralTriggers": triggers,
        }

    @staticmethod
    def _paid_assignment_count(user_id: int) -> int:
        return UserPosition.query.filter(
            UserPosition.user_id == user_id,
            UserPosition.amount_paid > 0,
        ).count()
