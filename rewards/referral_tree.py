# rewards/referral_tree.py
import logging
from decimal import Decimal
from typing import Dict, Any, List, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import User, ReferralHierarchy, ReferralLevel, TransactionType
from rewards.ledger import RewardLedger

logger = logging.getLogger(__name__)

MAX_REFERRAL_DEPTH = 3  # A, B, C


class HierarchyCycleError(Exception):
    pass


class ReferralHierarchyIndex:
    """
    Materialized upline of every user, at most three levels deep.
    Rows are written once when the user registers and never change.
    """

    @staticmethod
    def _walk_upline(new_user_id: int, direct_referrer_id: int) -> List[Tuple[int, int]]:
        """Return [(ancestor_id, depth), ...] following referred_by from the direct referrer."""
        chain = []
        visited = {new_user_id}
        current_id = direct_referrer_id
        depth = 1
        while current_id is not None and depth <= MAX_REFERRAL_DEPTH:
            if current_id in visited:
                raise HierarchyCycleError(
                    f"Referral chain of user {new_user_id} revisits user {current_id}"
                )
            ancestor = db.session.get(User, current_id)
            if ancestor is None:
                break
            visited.add(current_id)
            chain.append((current_id, depth))
            current_id = ancestor.referred_by
            depth += 1
        return chain

    @staticmethod
    def build_hierarchy_for_new_user(new_user_id: int, direct_referrer_id: int, commit: bool = True) -> int:
        """
        Create the A/B/C rows for a newly registered user. Nothing is written
        when the chain contains a cycle. Returns the number of rows written.
        """
        chain = ReferralHierarchyIndex._walk_upline(new_user_id, direct_referrer_id)

        written = 0
        for ancestor_id, depth in chain:
            exists = ReferralHierarchy.query.filter_by(referrer_id=ancestor_id, user_id=new_user_id).first()
            if exists:
                continue
            db.session.add(ReferralHierarchy(
                referrer_id=ancestor_id,
                user_id=new_user_id,
                level=ReferralLevel.from_depth(depth),
            ))
            written += 1

        try:
            if commit:
                db.session.commit()
            else:
                db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.warning(f"Hierarchy for user {new_user_id} was written concurrently")
            return 0

        logger.info(f"Built {written} hierarchy row(s) for user {new_user_id} under {direct_referrer_id}")
        return written

    @staticmethod
    def get_ancestors(user_id: int) -> List[Tuple[ReferralLevel, User]]:
        """Upline ordered A, B, C."""
        rows = ReferralHierarchy.query.filter_by(user_id=user_id).all()
        rows.sort(key=lambda row: row.level.depth)
        return [(row.level, row.referrer) for row in rows]

    @staticmethod
    def get_subordinates(user_id: int) -> Dict[ReferralLevel, List[User]]:
        grouped = {level: [] for level in ReferralLevel}
        rows = (
            ReferralHierarchy.query.filter_by(referrer_id=user_id)
            .order_by(ReferralHierarchy.created_at.desc())
            .all()
        )
        for row in rows:
            grouped[row.level].append(row.user)
        return grouped

    @staticmethod
    def get_referral_hierarchy_stats(user_id: int) -> Dict[str, Any]:
        counts = dict(
            db.session.query(ReferralHierarchy.level, func.count(ReferralHierarchy.id))
            .filter(ReferralHierarchy.referrer_id == user_id)
            .group_by(ReferralHierarchy.level)
            .all()
        )

        stats = {}
        total_members = 0
        total_earnings = Decimal("0.00")
        for level in ReferralLevel:
            key = level.letter.lower()
            count = counts.get(level, 0)
            earnings = RewardLedger.sum_amounts(
                user_id,
                [TransactionType.referral_reward(level), TransactionType.management_bonus(level)],
            )
            stats[f"{key}LevelCount"] = count
            stats[f"{key}LevelEarnings"] = float(earnings)
            total_members += count
            total_earnings += earnings

        stats["totalTeamSize"] = total_members
        stats["totalEarnings"] = float(total_earnings)
        return stats
