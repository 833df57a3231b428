# rewards/ledger.py
"""
Reward ledger: the only code path that writes User.wallet_balance and
User.total_earnings. Every mutation appends a WalletTransaction whose
balance_after equals the user's balance right after the change.
"""
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Iterable, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from logger import ledger_logger
from models import (
    User, UserStatus, WalletTransaction, TransactionType, TransactionStatus,
    REFERRAL_REWARD_TYPES, MANAGEMENT_BONUS_TYPES,
)
from rewards.config import high_earner_threshold
from utils import CENT

logger = logging.getLogger(__name__)

# Credits that count as activity earnings for milestone triggers
EARNING_TYPES = (TransactionType.TASK_INCOME,) + tuple(REFERRAL_REWARD_TYPES) + tuple(MANAGEMENT_BONUS_TYPES)


# ==========================================================
#                  EXCEPTIONS
# ==========================================================
class LedgerError(Exception):
    """Base ledger exception"""
    pass

class InsufficientFundsError(LedgerError):
    pass

class InactiveAccountError(LedgerError):
    pass

class InvalidAmountError(LedgerError):
    pass

class LedgerIntegrityError(LedgerError):
    """The ledger step was aborted and the session rolled back."""
    pass

class DuplicateTransactionError(LedgerIntegrityError):
    pass


# ==========================================================
#                  PER-USER LOCKS
# ==========================================================
class UserLockManager:
    """
    Serializes wallet work per user inside one process. Re-entrant so the
    task flow can hold the lock while the ledger takes it again.
    """
    _locks: Dict[int, threading.RLock] = {}
    _guard = threading.Lock()

    @classmethod
    def lock_for(cls, user_id: int) -> threading.RLock:
        with cls._guard:
            lock = cls._locks.get(user_id)
            if lock is None:
                lock = cls._locks[user_id] = threading.RLock()
            return lock

    @classmethod
    @contextmanager
    def hold(cls, user_id: int):
        lock = cls.lock_for(user_id)
        with lock:
            yield


# ==========================================================
#                  LEDGER
# ==========================================================
class RewardLedger:

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        try:
            value = Decimal(str(amount)).quantize(CENT)
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmountError(f"Invalid amount: {amount!r}")
        if value <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {value}")
        return value

    @staticmethod
    def _lock_user(user_id: int) -> User:
        user = (
            db.session.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not user:
            raise LedgerError(f"User {user_id} not found")
        if user.status != UserStatus.ACTIVE:
            raise InactiveAccountError(f"User {user_id} is {user.status.value}")
        return user

    @staticmethod
    def _ensure_new_reference(reference_id: Optional[str]):
        if reference_id and WalletTransaction.query.filter_by(reference_id=reference_id).first():
            raise DuplicateTransactionError(f"Transaction {reference_id} already recorded")

    @staticmethod
    def _write(user: User, tx: WalletTransaction, commit: bool):
        """Flush (and optionally commit) the user update plus the new row as one step."""
        try:
            db.session.add(tx)
            db.session.flush()
            if commit:
                db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            if tx.reference_id and "reference_id" in str(e.orig).lower():
                raise DuplicateTransactionError(f"Transaction {tx.reference_id} already recorded") from e
            ledger_logger.error(f"Integrity error writing ledger row for user {user.id}: {e}")
            raise LedgerIntegrityError(str(e)) from e
        except SQLAlchemyError as e:
            db.session.rollback()
            ledger_logger.error(f"Database error writing ledger row for user {user.id}: {e}")
            raise LedgerIntegrityError(str(e)) from e

    @staticmethod
    def credit(user_id: int, amount, tx_type: TransactionType, description: str = None,
               reference_id: str = None, related_user_id: int = None,
               metadata: Dict[str, Any] = None, commit: bool = True,
               check_milestones: bool = True) -> WalletTransaction:
        """
        Add `amount` to the wallet and lifetime earnings of an ACTIVE user.

        After a committed earning credit the referral milestones that depend
        on lifetime earnings are re-checked for the credited user.
        """
        if tx_type.is_debit:
            raise InvalidAmountError("Use debit() for DEBIT transactions")
        value = RewardLedger._validate_amount(amount)

        with UserLockManager.hold(user_id):
            user = RewardLedger._lock_user(user_id)
            RewardLedger._ensure_new_reference(reference_id)

            new_balance = Decimal(str(user.wallet_balance or 0)) + value
            user.wallet_balance = new_balance
            new_earnings = Decimal(str(user.total_earnings or 0)) + value
            user.total_earnings = new_earnings

            tx = WalletTransaction(
                user_id=user_id,
                type=tx_type,
                amount=value,
                balance_after=new_balance,
                description=description,
                reference_id=reference_id,
                related_user_id=related_user_id,
                details=metadata,
                status=TransactionStatus.COMPLETED,
            )
            RewardLedger._write(user, tx, commit)

        ledger_logger.info(
            f"CREDIT user={user_id} type={tx_type.value} amount={value} "
            f"balance_after={new_balance} ref={reference_id}"
        )
        if commit and check_milestones and tx_type in EARNING_TYPES and new_earnings >= high_earner_threshold():
            RewardLedger._after_earnings_milestone(user_id)
        return tx

    @staticmethod
    def _after_earnings_milestone(user_id: int):
        from rewards.referral_service import ReferralService
        try:
            ReferralService.process_high_earner(user_id)
        except Exception as e:
            db.session.rollback()
            logger.error(f"High earner check for user {user_id} failed: {e}")

    @staticmethod
    def debit(user_id: int, amount, description: str = None, reference_id: str = None,
              metadata: Dict[str, Any] = None, commit: bool = True) -> WalletTransaction:
        """Remove `amount` from the wallet; lifetime earnings are untouched."""
        value = RewardLedger._validate_amount(amount)

        with UserLockManager.hold(user_id):
            user = RewardLedger._lock_user(user_id)
            RewardLedger._ensure_new_reference(reference_id)

            balance = Decimal(str(user.wallet_balance or 0))
            if value > balance:
                raise InsufficientFundsError(f"Balance {balance} is below {value}")

            new_balance = balance - value
            user.wallet_balance = new_balance

            tx = WalletTransaction(
                user_id=user_id,
                type=TransactionType.DEBIT,
                amount=value,
                balance_after=new_balance,
                description=description,
                reference_id=reference_id,
                details=metadata,
                status=TransactionStatus.COMPLETED,
            )
            RewardLedger._write(user, tx, commit)

        ledger_logger.info(
            f"DEBIT user={user_id} amount={value} balance_after={new_balance} ref={reference_id}"
        )
        return tx

    @staticmethod
    def credit_task_reward(user_id: int, amount, video_id: int, task_id: int,
                           security_score: int = None, watch_duration=None,
                           interactions: Iterable = None, verification: Dict[str, Any] = None,
                           ip_address: str = None, commit: bool = True) -> Dict[str, Any]:
        """
        Credit one accepted watch. The watch evidence travels in the row's
        metadata; milestone checks are left to the task flow.
        """
        tx = RewardLedger.credit(
            user_id,
            amount,
            TransactionType.TASK_INCOME,
            description=f"Video task reward (video {video_id})",
            reference_id=f"TASK_{task_id}",
            metadata={
                "videoId": video_id,
                "taskId": task_id,
                "securityScore": security_score,
                "watchDuration": str(watch_duration) if watch_duration is not None else None,
                "userInteractions": list(interactions or []),
                "verificationData": verification or {},
                "ipAddress": ip_address,
            },
            commit=commit,
            check_milestones=False,
        )
        return {"newBalance": tx.balance_after, "transactionId": tx.id}

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------
    @staticmethod
    def sum_amounts(user_id: int, types: Iterable[TransactionType], since=None, until=None) -> Decimal:
        query = db.session.query(func.coalesce(func.sum(WalletTransaction.amount), 0)).filter(
            WalletTransaction.user_id == user_id,
            WalletTransaction.type.in_(list(types)),
            WalletTransaction.status == TransactionStatus.COMPLETED,
        )
        if since is not None:
            query = query.filter(WalletTransaction.created_at >= since)
        if until is not None:
            query = query.filter(WalletTransaction.created_at < until)
        return Decimal(str(query.scalar() or 0)).quantize(CENT)

    @staticmethod
    def get_transactions(user_id: int, limit: int = 20, offset: int = 0, tx_type: TransactionType = None):
        query = WalletTransaction.query.filter_by(user_id=user_id)
        if tx_type is not None:
            query = query.filter_by(type=tx_type)
        total = query.count()
        rows = (
            query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return rows, total
