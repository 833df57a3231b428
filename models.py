# models.py: Flask-SQLAlchemy models for the rewards ledger
from datetime import datetime
from decimal import Decimal
import enum
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, Index, text
from sqlalchemy.orm import validates
from werkzeug.security import check_password_hash, generate_password_hash
from extensions import db

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class UserStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BANNED = "BANNED"


class ReferralLevel(enum.Enum):
    """Distance between a user and an upline member: A = 1 hop, B = 2, C = 3."""
    A_LEVEL = "A_LEVEL"
    B_LEVEL = "B_LEVEL"
    C_LEVEL = "C_LEVEL"

    @property
    def depth(self) -> int:
        return _LEVEL_DEPTHS[self]

    @property
    def letter(self) -> str:
        return self.value[0]

    @classmethod
    def from_depth(cls, depth: int) -> "ReferralLevel":
        for level, level_depth in _LEVEL_DEPTHS.items():
            if level_depth == depth:
                return level
        raise ValueError(f"No referral level for depth {depth}")


_LEVEL_DEPTHS = {
    ReferralLevel.A_LEVEL: 1,
    ReferralLevel.B_LEVEL: 2,
    ReferralLevel.C_LEVEL: 3,
}


class TransactionType(enum.Enum):
    TASK_INCOME = "TASK_INCOME"
    REFERRAL_REWARD_A = "REFERRAL_REWARD_A"
    REFERRAL_REWARD_B = "REFERRAL_REWARD_B"
    REFERRAL_REWARD_C = "REFERRAL_REWARD_C"
    MANAGEMENT_BONUS_A = "MANAGEMENT_BONUS_A"
    MANAGEMENT_BONUS_B = "MANAGEMENT_BONUS_B"
    MANAGEMENT_BONUS_C = "MANAGEMENT_BONUS_C"
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"

    @property
    def is_debit(self) -> bool:
        return self is TransactionType.DEBIT

    @classmethod
    def referral_reward(cls, level: ReferralLevel) -> "TransactionType":
        return cls[f"REFERRAL_REWARD_{level.letter}"]

    @classmethod
    def management_bonus(cls, level: ReferralLevel) -> "TransactionType":
        return cls[f"MANAGEMENT_BONUS_{level.letter}"]


REFERRAL_REWARD_TYPES = (
    TransactionType.REFERRAL_REWARD_A,
    TransactionType.REFERRAL_REWARD_B,
    TransactionType.REFERRAL_REWARD_C,
)

MANAGEMENT_BONUS_TYPES = (
    TransactionType.MANAGEMENT_BONUS_A,
    TransactionType.MANAGEMENT_BONUS_B,
    TransactionType.MANAGEMENT_BONUS_C,
)


class TransactionStatus(enum.Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class ReferralStatus(enum.Enum):
    VISITED = "VISITED"
    REGISTERED = "REGISTERED"
    QUALIFIED = "QUALIFIED"
    REWARDED = "REWARDED"

    @property
    def rank(self) -> int:
        return list(ReferralStatus).index(self)


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """created_at / updated_at in server-local time; daily windows are computed on the same clock."""
    created_at = db.Column(db.DateTime, default=datetime.now, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)


def _money(value) -> float:
    return float(value) if value is not None else 0.0


# ===========================================================
# USER MODEL
# ===========================================================

class User(UserMixin, db.Model, BaseMixin):
    """Core user entity. Owns the wallet balance that the ledger mutates."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(20), unique=True, nullable=True)
    role = db.Column(db.String(20), nullable=False, default="user")
    password_hash = db.Column(db.String(255), nullable=False)

    wallet_balance = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"),
                               server_default=text("0.00"))
    total_earnings = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"),
                               server_default=text("0.00"))

    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)

    status = db.Column(db.Enum(UserStatus), nullable=False, default=UserStatus.ACTIVE)
    current_position_id = db.Column(db.Integer, db.ForeignKey('positions.id'), nullable=True)

    # Owned by the auth blueprint
    failed_login_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime, nullable=True)

    member_since = db.Column(db.DateTime, default=datetime.now)

    referrer = db.relationship('User', remote_side=[id], backref='direct_referrals')
    current_position = db.relationship('Position')
    positions = db.relationship('UserPosition', back_populates='user', lazy='dynamic')
    transactions = db.relationship('WalletTransaction', back_populates='user', lazy='dynamic',
                                   foreign_keys='WalletTransaction.user_id')

    __table_args__ = (
        Index('idx_user_referral_code', 'referral_code'),
    )

    @validates("referral_code", "referred_by")
    def _validate_write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} cannot be changed once set")
        return value

    @property
    def is_active(self):
        return self.status == UserStatus.ACTIVE

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def is_locked(self, now=None) -> bool:
        now = now or datetime.now()
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "status": self.status.value if self.status else None,
            "referralCode": self.referral_code,
            "referredBy": self.referred_by,
            "walletBalance": _money(self.wallet_balance),
            "totalEarnings": _money(self.total_earnings),
            "currentPosition": self.current_position.to_dict() if self.current_position else None,
            "memberSince": self.member_since.isoformat() if self.member_since else None,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email}>"


# ===========================================================
# POSITION CATALOG & ASSIGNMENTS
# ===========================================================

class Position(db.Model, BaseMixin):
    """A subscription tier: daily task quota and reward per task."""
    __tablename__ = 'positions'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    level = db.Column(db.Integer, unique=True, nullable=False)
    tasks_per_day = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(18, 2), nullable=False)
    validity_days = db.Column(db.Integer, nullable=False, default=365)
    price = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "level": self.level,
            "tasksPerDay": self.tasks_per_day,
            "unitPrice": _money(self.unit_price),
            "validityDays": self.validity_days,
            "price": _money(self.price),
            "description": self.description,
        }


class UserPosition(db.Model, BaseMixin):
    """One assignment of a Position to a User for a bounded period."""
    __tablename__ = 'user_positions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    position_id = db.Column(db.Integer, db.ForeignKey('positions.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='active')  # active, expired, replaced
    amount_paid = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    activated_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    expires_at = db.Column(db.DateTime, nullable=False)

    user = db.relationship('User', back_populates='positions')
    position = db.relationship('Position')

    __table_args__ = (
        Index('idx_user_position_status', 'user_id', 'status'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "position": self.position.to_dict() if self.position else None,
            "status": self.status,
            "amountPaid": _money(self.amount_paid),
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


# ===========================================================
# VIDEOS & TASKS
# ===========================================================

class Video(db.Model, BaseMixin):
    __tablename__ = 'videos'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    url = db.Column(db.String(500), nullable=False)
    thumbnail_url = db.Column(db.String(500))
    duration = db.Column(db.Integer, nullable=False)  # seconds
    position_id = db.Column(db.Integer, db.ForeignKey('positions.id'), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    available_from = db.Column(db.DateTime, nullable=False, default=datetime.now)
    available_to = db.Column(db.DateTime, nullable=True)

    position = db.relationship('Position')

    def is_available(self, now=None) -> bool:
        now = now or datetime.now()
        if not self.is_active:
            return False
        if self.available_from and self.available_from > now:
            return False
        return self.available_to is None or self.available_to >= now

    def to_dict(self, reward_amount=None):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "thumbnailUrl": self.thumbnail_url,
            "duration": self.duration,
            "rewardAmount": _money(reward_amount) if reward_amount is not None else None,
        }


class UserVideoTask(db.Model):
    """One accepted watch. Never updated or deleted."""
    __tablename__ = 'user_video_tasks'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    video_id = db.Column(db.Integer, db.ForeignKey('videos.id'), nullable=False)
    watched_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    watch_date = db.Column(db.Date, nullable=False)
    watch_duration = db.Column(db.Numeric(10, 2), nullable=False)
    reward_earned = db.Column(db.Numeric(18, 2), nullable=False)
    position_level = db.Column(db.String(100))
    ip_address = db.Column(db.String(45))
    device_id = db.Column(db.String(128))
    user_agent = db.Column(db.String(255))
    security_score = db.Column(db.Integer)
    is_verified = db.Column(db.Boolean, nullable=False, default=True)

    video = db.relationship('Video')

    __table_args__ = (
        UniqueConstraint('user_id', 'video_id', 'watch_date', name='uq_task_user_video_day'),
        Index('idx_task_user_watched', 'user_id', 'watched_at'),
    )


# ===========================================================
# LEDGER
# ===========================================================

class WalletTransaction(db.Model):
    """Append-only ledger row. amount is always positive; type gives the direction."""
    __tablename__ = 'wallet_transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    type = db.Column(db.Enum(TransactionType), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    balance_after = db.Column(db.Numeric(18, 2), nullable=False)
    description = db.Column(db.String(255))
    reference_id = db.Column(db.String(120), unique=True, nullable=True, index=True)
    related_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    details = db.Column("metadata", db.JSON)
    status = db.Column(db.Enum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now, index=True)

    user = db.relationship('User', back_populates='transactions', foreign_keys=[user_id])
    related_user = db.relationship('User', foreign_keys=[related_user_id])

    __table_args__ = (
        Index('idx_wallet_tx_user_type_created', 'user_id', 'type', 'created_at'),
    )

    @property
    def signed_amount(self) -> Decimal:
        amount = Decimal(str(self.amount))
        return -amount if self.type.is_debit else amount

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": _money(self.amount),
            "balanceAfter": _money(self.balance_after),
            "description": self.description,
            "referenceId": self.reference_id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# REFERRALS
# ===========================================================

class ReferralHierarchy(db.Model):
    """Materialized upline edge, written once at registration."""
    __tablename__ = 'referral_hierarchy'

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    level = db.Column(db.Enum(ReferralLevel), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    referrer = db.relationship('User', foreign_keys=[referrer_id])
    user = db.relationship('User', foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint('referrer_id', 'user_id', name='uq_hierarchy_edge'),
        Index('idx_hierarchy_referrer_level', 'referrer_id', 'level'),
    )


class ReferralActivity(db.Model, BaseMixin):
    """Lifecycle of one referral from click-through to reward."""
    __tablename__ = 'referral_activities'

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    referred_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    referral_code = db.Column(db.String(20), nullable=False)
    status = db.Column(db.Enum(ReferralStatus), nullable=False, default=ReferralStatus.VISITED)
    source = db.Column(db.String(50), default='link')
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(255))
    reward_amount = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    reward_paid_at = db.Column(db.DateTime, nullable=True)
    details = db.Column("metadata", db.JSON)

    referrer = db.relationship('User', foreign_keys=[referrer_id])
    referred_user = db.relationship('User', foreign_keys=[referred_user_id])

    def advance_to(self, new_status: ReferralStatus) -> bool:
        """Move forward in the lifecycle; never backwards. Returns True if the status changed."""
        if new_status.rank <= self.status.rank:
            return False
        self.status = new_status
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "status": self.status.value,
            "source": self.source,
            "rewardAmount": _money(self.reward_amount),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "rewardPaidAt": self.reward_paid_at.isoformat() if self.reward_paid_at else None,
        }


class ReferralReward(db.Model, BaseMixin):
    """Named one-time reward paid to a referrer when a trigger event fires."""
    __tablename__ = 'referral_rewards'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    trigger_event = db.Column(db.String(50), unique=True, nullable=False)
    reward_amount = db.Column(db.Numeric(18, 2), nullable=False)
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
