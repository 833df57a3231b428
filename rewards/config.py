# rewards/config.py
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional, Tuple
from flask import current_app

from models import ReferralLevel


# Seeded referral triggers: (trigger_event, name, reward_amount, description)
DEFAULT_REFERRAL_REWARDS = (
    ("registration", "Referral sign-up", Decimal("2.00"), "Your referral created an account"),
    ("first_video", "First video watched", Decimal("3.00"), "Your referral watched their first video"),
    ("weekly_activity", "Weekly activity", Decimal("5.00"), "Your referral watched 7 videos"),
    ("first_plan_purchase", "First plan purchase", Decimal("10.00"), "Your referral bought their first paid position"),
    ("high_earner", "High earner", Decimal("20.00"), "Your referral earned $50 in total"),
)

# Seeded position catalog: (level, name, tasks_per_day, unit_price, price, validity_days)
DEFAULT_POSITIONS = (
    (0, "Intern", 3, Decimal("0.20"), Decimal("0.00"), 7),
    (1, "L1", 5, Decimal("0.50"), Decimal("20.00"), 365),
    (2, "L2", 10, Decimal("1.00"), Decimal("100.00"), 365),
    (3, "L3", 20, Decimal("1.50"), Decimal("300.00"), 365),
)


@dataclass(frozen=True)
class ManagementBonusConfig:
    """Rates and caps for upline management bonuses."""
    rates: Dict[ReferralLevel, Decimal] = field(default_factory=lambda: {
        ReferralLevel.A_LEVEL: Decimal("0.10"),
        ReferralLevel.B_LEVEL: Decimal("0.05"),
        ReferralLevel.C_LEVEL: Decimal("0.02"),
    })
    daily_cap: Decimal = Decimal("50.00")
    monthly_cap: Decimal = Decimal("1000.00")

    @classmethod
    def from_mapping(cls, config) -> "ManagementBonusConfig":
        raw_rates = config.get("MANAGEMENT_BONUS_RATES") or {}
        defaults = cls()
        rates = {
            level: Decimal(str(raw_rates.get(level.value, defaults.rates[level])))
            for level in ReferralLevel
        }
        return cls(
            rates=rates,
            daily_cap=Decimal(str(config.get("MANAGEMENT_BONUS_DAILY_CAP", defaults.daily_cap))),
            monthly_cap=Decimal(str(config.get("MANAGEMENT_BONUS_MONTHLY_CAP", defaults.monthly_cap))),
        )

    @classmethod
    def current(cls) -> "ManagementBonusConfig":
        return cls.from_mapping(current_app.config)

    def rate_for(self, level: ReferralLevel) -> Decimal:
        return self.rates[level]

    def validate(self) -> Tuple[bool, str]:
        """Check that the configuration is mathematically sound"""
        total = sum(self.rates.values(), Decimal("0"))
        for level, rate in self.rates.items():
            if rate < 0 or rate > 1:
                return False, f"Rate for {level.value} must be between 0 and 1, got {rate}"
        if total > Decimal("0.5"):
            return False, f"Total management bonus rate too high: {total * 100}%"
        if self.daily_cap < 0 or self.monthly_cap < 0:
            return False, "Management bonus caps must not be negative"
        if self.daily_cap > self.monthly_cap:
            return False, "Daily cap cannot exceed monthly cap"
        return True, f"Management bonus configuration valid: {total * 100:.1f}% total across {len(self.rates)} levels"

    def summary(self) -> Dict[str, Any]:
        return {
            "rates": {level.value: float(rate) for level, rate in self.rates.items()},
            "dailyCap": float(self.daily_cap),
            "monthlyCap": float(self.monthly_cap),
        }


def min_security_score() -> Optional[int]:
    return current_app.config.get("ANTI_CHEAT_MIN_SECURITY_SCORE")


def high_earner_threshold() -> Decimal:
    return Decimal(str(current_app.config.get("HIGH_EARNER_THRESHOLD", "50.00")))


def validate_reward_configuration(config) -> None:
    """Raise ValueError at start-up if any reward knob is unusable."""
    try:
        bonus_config = ManagementBonusConfig.from_mapping(config)
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid management bonus configuration: {e}") from e

    ok, message = bonus_config.validate()
    if not ok:
        raise ValueError(message)

    try:
        threshold = Decimal(str(config.get("HIGH_EARNER_THRESHOLD", "50.00")))
        min_withdrawal = Decimal(str(config.get("MIN_WITHDRAWAL", "10.00")))
        max_withdrawal = Decimal(str(config.get("MAX_WITHDRAWAL", "1000.00")))
    except InvalidOperation as e:
        raise ValueError(f"Invalid reward threshold configuration: {e}") from e

    if threshold <= 0:
        raise ValueError("HIGH_EARNER_THRESHOLD must be positive")
    if min_withdrawal > max_withdrawal:
        raise ValueError("MIN_WITHDRAWAL cannot exceed MAX_WITHDRAWAL")
    if int(config.get("WEEKLY_ACTIVITY_VIDEO_COUNT", 7)) < 1:
        raise ValueError("WEEKLY_ACTIVITY_VIDEO_COUNT must be at least 1")

    score = config.get("ANTI_CHEAT_MIN_SECURITY_SCORE")
    if score is not None and not 0 <= int(score) <= 100:
        raise ValueError("ANTI_CHEAT_MIN_SECURITY_SCORE must be between 0 and 100")
