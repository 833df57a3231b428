# rewards/referral_service.py
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import quote
from flask import current_app
from sqlalchemy import func

from extensions import db
from models import (
    User, ReferralActivity, ReferralReward, ReferralStatus, ReferralLevel,
    WalletTransaction, TransactionType, REFERRAL_REWARD_TYPES,
)
from rewards.ledger import (
    RewardLedger, DuplicateTransactionError, InactiveAccountError,
)
from rewards.config import high_earner_threshold
from rewards.referral_tree import ReferralHierarchyIndex, HierarchyCycleError
from utils import month_window, safe_decimal

logger = logging.getLogger(__name__)


TRIGGER_REGISTRATION = "registration"
TRIGGER_FIRST_VIDEO = "first_video"
TRIGGER_WEEKLY_ACTIVITY = "weekly_activity"
TRIGGER_FIRST_PLAN_PURCHASE = "first_plan_purchase"
TRIGGER_HIGH_EARNER = "high_earner"


class ReferralService:
    """Referral link tracking, registration and one-time trigger rewards."""

    # ----------------------------------------------------------------
    # Links
    # ----------------------------------------------------------------
    @staticmethod
    def generate_referral_link(referral_code: str) -> str:
        base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")
        return f"{base_url}/register?ref={quote(referral_code or '')}"

    @staticmethod
    def generate_social_links(referral_code: str) -> Dict[str, str]:
        link = ReferralService.generate_referral_link(referral_code)
        message = "Join me and earn money watching videos!"
        return {
            "whatsapp": f"https://wa.me/?text={quote(f'{message} {link}')}",
            "telegram": f"https://t.me/share/url?url={quote(link)}&text={quote(message)}",
            "twitter": f"https://twitter.com/intent/tweet?text={quote(message)}&url={quote(link)}",
            "facebook": f"https://www.facebook.com/sharer/sharer.php?u={quote(link)}",
            "email": f"mailto:?subject={quote('Join me')}&body={quote(f'{message} {link}')}",
        }

    # ----------------------------------------------------------------
    # Visits & registration
    # ----------------------------------------------------------------
    @staticmethod
    def _find_referrer(referral_code: str) -> Optional[User]:
        code = (referral_code or "").strip().upper()
        if not code:
            return None
        return User.query.filter_by(referral_code=code).first()

    @staticmethod
    def track_referral_visit(data: Dict[str, Any]) -> Dict[str, Any]:
        referrer = ReferralService._find_referrer(data.get("referralCode"))
        if not referrer:
            return {"success": False, "error": "Invalid referral code"}

        activity = ReferralActivity(
            referrer_id=referrer.id,
            referral_code=referrer.referral_code,
            status=ReferralStatus.VISITED,
            source=data.get("source") or "link",
            ip_address=data.get("ipAddress"),
            user_agent=(data.get("userAgent") or "")[:255],
            details=data.get("metadata"),
        )
        db.session.add(activity)
        db.session.commit()
        return {"success": True, "activityId": activity.id}

    @staticmethod
    def process_referral_registration(referral_code: str, new_user_id: int,
                                      ip_address: str = None) -> Dict[str, Any]:
        referrer = ReferralService._find_referrer(referral_code)
        if not referrer:
            return {"success": False, "error": "Invalid referral code"}
        if referrer.id == new_user_id:
            return {"success": False, "error": "Cannot use your own referral code"}

        new_user = db.session.get(User, new_user_id)
        if not new_user:
            return {"success": False, "error": "User not found"}
        if new_user.referred_by is None:
            new_user.referred_by = referrer.id
        elif new_user.referred_by != referrer.id:
            return {"success": False, "error": "User already has a referrer"}

        try:
            ReferralHierarchyIndex.build_hierarchy_for_new_user(new_user_id, referrer.id, commit=False)
        except HierarchyCycleError as e:
            db.session.rollback()
            logger.warning(f"Referral registration refused: {e}")
            return {"success": False, "error": "Invalid referral chain"}

        activity = (
            ReferralActivity.query.filter_by(referrer_id=referrer.id, referred_user_id=new_user_id)
            .order_by(ReferralActivity.id.asc())
            .first()
        )
        if activity is None and ip_address:
            activity = (
                ReferralActivity.query.filter_by(
                    referrer_id=referrer.id,
                    referred_user_id=None,
                    status=ReferralStatus.VISITED,
                    ip_address=ip_address,
                )
                .order_by(ReferralActivity.created_at.desc(), ReferralActivity.id.desc())
                .first()
            )
        if activity:
            activity.referred_user_id = new_user_id
            activity.advance_to(ReferralStatus.REGISTERED)
        else:
            activity = ReferralActivity(
                referrer_id=referrer.id,
                referred_user_id=new_user_id,
                referral_code=referrer.referral_code,
                status=ReferralStatus.REGISTERED,
                source="registration",
                ip_address=ip_address,
            )
            db.session.add(activity)
        db.session.commit()

        amount, error = ReferralService._pay_trigger(referrer.id, new_user_id, TRIGGER_REGISTRATION)
        if amount:
            ReferralService._record_activity_reward(activity, amount)
        elif error:
            logger.info(f"Registration reward for referrer {referrer.id} not paid: {error}")

        return {
            "success": True,
            "referrerId": referrer.id,
            "activityId": activity.id,
            "rewardAmount": float(amount or 0),
        }

    # ----------------------------------------------------------------
    # Triggers
    # ----------------------------------------------------------------
    @staticmethod
    def _reference_for(trigger_event: str, referrer_id: int, referred_user_id: int) -> str:
        return f"REFERRAL_{trigger_event.upper()}_{referrer_id}_{referred_user_id}"

    @staticmethod
    def _pay_trigger(referrer_id: int, referred_user_id: int, trigger_event: str) -> Tuple[Optional[Decimal], Optional[str]]:
        """Credit the direct referrer once for this trigger. Returns (amount, error)."""
        reward = ReferralReward.query.filter_by(trigger_event=trigger_event, is_active=True).first()
        if not reward:
            return None, "Reward trigger not active"

        reference_id = ReferralService._reference_for(trigger_event, referrer_id, referred_user_id)
        if WalletTransaction.query.filter_by(reference_id=reference_id).first():
            return None, "Reward already paid"

        referred = db.session.get(User, referred_user_id)
        referrer = db.session.get(User, referrer_id)
        try:
            RewardLedger.credit(
                referrer_id,
                reward.reward_amount,
                TransactionType.referral_reward(ReferralLevel.A_LEVEL),
                description=f"{reward.name} reward",
                reference_id=reference_id,
                related_user_id=referred_user_id,
                metadata={
                    "triggerEvent": trigger_event,
                    "referredUserId": referred_user_id,
                    "newUserPosition": _position_label(referred),
                    "referrerPosition": _position_label(referrer),
                },
            )
        except DuplicateTransactionError:
            logger.info(f"Concurrent duplicate for {reference_id} ignored")
            return None, "Reward already paid"
        except InactiveAccountError:
            return None, "Referrer account is not active"

        logger.info(f"Paid {trigger_event} reward {reward.reward_amount} to {referrer_id} for {referred_user_id}")
        return safe_decimal(reward.reward_amount), None

    @staticmethod
    def _record_activity_reward(activity: ReferralActivity, amount: Decimal):
        activity.reward_amount = safe_decimal(activity.reward_amount) + amount
        activity.reward_paid_at = datetime.now()
        db.session.commit()

    @staticmethod
    def process_referral_qualification(user_id: int, trigger_event: str) -> Dict[str, Any]:
        user = db.session.get(User, user_id)
        if not user or not user.referred_by:
            return {"success": False, "error": "User has no referrer"}

        amount, error = ReferralService._pay_trigger(user.referred_by, user_id, trigger_event)
        if error:
            return {"success": False, "error": error}

        activity = (
            ReferralActivity.query.filter_by(referrer_id=user.referred_by, referred_user_id=user_id)
            .order_by(ReferralActivity.created_at.desc(), ReferralActivity.id.desc())
            .first()
        )
        if activity is None:
            activity = ReferralActivity(
                referrer_id=user.referred_by,
                referred_user_id=user_id,
                referral_code=user.referrer.referral_code,
                status=ReferralStatus.REGISTERED,
                source="registration",
            )
            db.session.add(activity)
        activity.advance_to(ReferralStatus.QUALIFIED)
        activity.advance_to(ReferralStatus.REWARDED)
        ReferralService._record_activity_reward(activity, amount)

        return {"success": True, "triggerEvent": trigger_event, "rewardAmount": float(amount)}

    @staticmethod
    def detect_task_triggers(videos_before: int, videos_after: int) -> List[str]:
        """Video-count triggers crossed by one accepted task."""
        weekly_count = current_app.config.get("WEEKLY_ACTIVITY_VIDEO_COUNT", 7)

        triggers = []
        if videos_before == 0 and videos_after >= 1:
            triggers.append(TRIGGER_FIRST_VIDEO)
        if videos_before < weekly_count <= videos_after:
            triggers.append(TRIGGER_WEEKLY_ACTIVITY)
        return triggers

    @staticmethod
    def process_high_earner(user_id: int) -> Optional[Dict[str, Any]]:
        """
        Pay the high_earner reward once lifetime earnings have reached the
        threshold, whichever credit got them there. None when nothing is due.
        """
        user = db.session.get(User, user_id)
        if not user or not user.referred_by:
            return None
        if safe_decimal(user.total_earnings) < high_earner_threshold():
            return None
        reference_id = ReferralService._reference_for(TRIGGER_HIGH_EARNER, user.referred_by, user_id)
        if WalletTransaction.query.filter_by(reference_id=reference_id).first():
            return None
        return ReferralService.process_referral_qualification(user_id, TRIGGER_HIGH_EARNER)

    @staticmethod
    def process_task_triggers(user_id: int, triggers: List[str]) -> List[str]:
        """Pay each detected trigger; returns the ones actually rewarded."""
        paid = []
        for trigger_event in triggers:
            try:
                outcome = ReferralService.process_referral_qualification(user_id, trigger_event)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Referral trigger {trigger_event} failed for user {user_id}: {e}")
                continue
            if outcome.get("success"):
                paid.append(trigger_event)
        return paid

    # ----------------------------------------------------------------
    # Stats
    # ----------------------------------------------------------------
    @staticmethod
    def get_referral_stats(user_id: int) -> Dict[str, Any]:
        activities = (
            ReferralActivity.query.filter_by(referrer_id=user_id)
            .order_by(ReferralActivity.created_at.desc(), ReferralActivity.id.desc())
            .all()
        )

        def reached(status):
            return sum(1 for a in activities if a.status.rank >= status.rank)

        month_start, month_end = month_window()
        monthly = sum(
            1 for a in activities
            if a.referred_user_id is not None and a.created_at and month_start <= a.created_at < month_end
        )

        return {
            "totalReferrals": len(activities),
            "registeredReferrals": reached(ReferralStatus.REGISTERED),
            "qualifiedReferrals": reached(ReferralStatus.QUALIFIED),
            "rewardedReferrals": reached(ReferralStatus.REWARDED),
            "totalEarnings": float(RewardLedger.sum_amounts(user_id, REFERRAL_REWARD_TYPES)),
            "monthlyReferrals": monthly,
            "activities": [a.to_dict() for a in activities[:20]],
        }

    @staticmethod
    def get_referral_rewards(user_id: int, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        rows = (
            WalletTransaction.query.filter(
                WalletTransaction.user_id == user_id,
                WalletTransaction.type.in_(REFERRAL_REWARD_TYPES),
            )
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

        summary = dict(
            (tx_type, (count, amount))
            for tx_type, count, amount in db.session.query(
                WalletTransaction.type,
                func.count(WalletTransaction.id),
                func.coalesce(func.sum(WalletTransaction.amount), 0),
            )
            .filter(
                WalletTransaction.user_id == user_id,
                WalletTransaction.type.in_(REFERRAL_REWARD_TYPES),
            )
            .group_by(WalletTransaction.type)
            .all()
        )

        total_rewards, total_counts = {}, {}
        for tx_type in REFERRAL_REWARD_TYPES:
            key = f"{tx_type.value[-1].lower()}Level"
            count, amount = summary.get(tx_type, (0, 0))
            total_rewards[key] = float(amount)
            total_counts[key] = count
        total_rewards["total"] = sum(total_rewards.values())
        total_counts["total"] = sum(total_counts.values())

        history = []
        for tx in rows:
            details = tx.details or {}
            history.append({
                "id": tx.id,
                "tier": tx.type.value[-1].lower(),
                "amount": float(tx.amount),
                "description": tx.description,
                "triggerEvent": details.get("triggerEvent"),
                "createdAt": tx.created_at.isoformat() if tx.created_at else None,
                "referredUserPosition": details.get("newUserPosition") or "Unknown",
                "referrerPosition": details.get("referrerPosition") or "Unknown",
            })

        return {
            "rewardHistory": history,
            "totalRewards": total_rewards,
            "totalCounts": total_counts,
            "pagination": {"limit": limit, "offset": offset, "hasMore": len(rows) == limit},
        }


def _position_label(user: Optional[User]) -> str:
    if user is None or user.current_position is None:
        return "Unknown"
    return user.current_position.name
